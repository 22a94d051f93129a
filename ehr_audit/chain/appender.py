"""
Hash-chain appender.

Writes redacted records to `{log_dir}/{channel}.log` as JSON Lines, each
carrying SHA-256(canonical record || previous hash). Audit logging is
best-effort relative to business logic: append() reports failures in its
AppendResult and never raises.
"""

import json
import logging
import os
from typing import Optional

from ehr_audit.chain.exceptions import AppendFailure, AuditChainError
from ehr_audit.chain.models import AppendResult, LogRecord, validate_channel
from ehr_audit.chain.redactor import Redactor
from ehr_audit.chain.serialization import compute_hash, to_line
from ehr_audit.chain.state import ChainStateStore

logger = logging.getLogger(__name__)

# Last-resort sink for records that could not be written. With no handlers
# configured, warnings and above still reach stderr via logging.lastResort.
fallback_logger = logging.getLogger("ehr_audit.fallback")


class Appender:
    """
    Appends records to per-channel hash chains.

    Usage:
        appender = Appender(ChainStateStore(Path("./logs")))
        result = appender.append("audit", LogRecord(channel="audit", operation="READ"))
        if not result.written:
            ...  # the business operation carries on regardless
    """

    def __init__(
        self,
        state: ChainStateStore,
        redactor: Optional[Redactor] = None,
        channel_redactors: Optional[dict[str, Redactor]] = None,
        fsync: bool = True,
    ):
        """
        Initialize Appender.

        Args:
            state: Chain state store (paths, locks, last-hash cursor)
            redactor: Default redactor for every channel
            channel_redactors: Per-channel redactors overriding the default
            fsync: fsync the log after each record
        """
        self.state = state
        self.redactor = redactor or Redactor()
        self.channel_redactors = channel_redactors or {}
        self.fsync = fsync

    def redactor_for(self, channel: str) -> Redactor:
        return self.channel_redactors.get(channel, self.redactor)

    def append(self, channel: str, record: LogRecord) -> AppendResult:
        """
        Append a record to a channel.

        Args:
            channel: Target channel (overrides record.channel)
            record: Record to write; its hash field is ignored

        Returns:
            AppendResult with written=False and an error on any failure
        """
        # Redact before anything else touches the payload
        redactor = self.redactor_for(channel)
        record = record.model_copy(update={
            "details": redactor.redact(record.details),
            "result": record.result.model_copy(update={
                "error_message": redactor.redact_text(record.result.error_message),
            }),
            "hash": None,
        })

        try:
            validate_channel(channel)
        except AuditChainError as e:
            self._fallback(str(channel), record, str(e))
            return AppendResult(channel=str(channel), written=False, error=str(e))

        record = record.model_copy(update={"channel": channel})

        try:
            with self.state.lock(channel):
                previous_hash = self.state.read(channel)
                record_hash = compute_hash(record, previous_hash)
                self._write_line(channel, to_line(record, record_hash))

                try:
                    self.state.write(channel, record_hash)
                except OSError as e:
                    # Record is durable but the cursor is stale; dropping the
                    # sidecar makes the next read recover from the log tail.
                    logger.error(f"Chain state update failed for channel={channel}: {e}")
                    try:
                        self.state.reset(channel)
                    except OSError:
                        logger.critical(f"Stale chain state for channel={channel}, next append will break the chain")
                    return AppendResult(
                        channel=channel,
                        written=True,
                        hash=record_hash,
                        error=f"chain state not advanced: {e}",
                    )

        except (AppendFailure, OSError) as e:
            self._fallback(channel, record, str(e))
            return AppendResult(channel=channel, written=False, error=str(e))
        except Exception as e:
            self._fallback(channel, record, f"{type(e).__name__}: {e}")
            return AppendResult(channel=channel, written=False, error=f"{type(e).__name__}: {e}")

        logger.debug(f"Appended {record.operation} to channel={channel} hash={record_hash[:12]}")
        return AppendResult(channel=channel, written=True, hash=record_hash)

    def _write_line(self, channel: str, line: str) -> None:
        """Write one complete line in a single call, then flush it to disk."""
        log_path = self.state.log_path(channel)
        data = line.encode("utf-8")
        try:
            with open(log_path, "ab", buffering=0) as f:
                start = f.tell()
                try:
                    written = f.write(data)
                    f.flush()
                    if written != len(data):
                        raise AppendFailure(f"short write to {log_path.name}: {written}/{len(data)} bytes")
                    if self.fsync:
                        os.fsync(f.fileno())
                except (AppendFailure, OSError):
                    # Never leave a partial line for the next record to extend
                    f.truncate(start)
                    raise
        except OSError as e:
            raise AppendFailure(f"write to {log_path.name} failed: {e}") from e

    def _fallback(self, channel: str, record: LogRecord, error: str) -> None:
        """Emit the already-redacted record to the fallback sink."""
        try:
            payload = json.dumps(record.model_dump(mode="json", exclude={"hash"}), ensure_ascii=True)
        except Exception:
            payload = f"<unserializable {record.operation} record>"
        fallback_logger.error(f"Audit append failed | channel={channel} | error={error} | record={payload}")
