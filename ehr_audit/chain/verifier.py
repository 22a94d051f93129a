"""
Hash-chain verifier.

Replays a channel's records in append order, recomputing every hash, and
reports the first point where the chain diverges. Verification never
repairs anything: a broken chain needs an operator's judgment.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional

from ehr_audit.chain.models import BreakReason, VerificationResult
from ehr_audit.chain.serialization import GENESIS_HASH, HASH_FIELD, compute_hash, parse_line
from ehr_audit.chain.state import ChainStateStore

logger = logging.getLogger(__name__)


def iter_lines(path: Path, size: Optional[int] = None) -> Iterator[bytes]:
    """
    Yield raw lines of a log file without their trailing newline.

    Only "\\n" separates records, so the file is read in binary mode.
    When size is given, bytes past it are ignored.
    """
    remaining = size
    with open(path, "rb") as f:
        for raw in f:
            if remaining is not None:
                if remaining <= 0:
                    return
                raw = raw[:remaining]
                remaining -= len(raw)
            yield raw[:-1] if raw.endswith(b"\n") else raw


class Verifier:
    """
    Verifies per-channel hash chains.

    Usage:
        verifier = Verifier(ChainStateStore(Path("./logs")))
        result = verifier.verify("audit")
        if not result.valid:
            print(result.broken_at_index, result.reason)
    """

    def __init__(self, state: ChainStateStore):
        self.state = state

    def verify(self, channel: str) -> VerificationResult:
        """
        Verify a channel's chain against its log file and ChainState anchor.

        A channel with neither a log file nor ChainState is a valid,
        empty chain.

        Raises:
            InvalidChannelError: If the channel name is invalid
        """
        # Snapshot under the lock; appends only ever extend the file, so
        # the first `size` bytes stay stable once the lock is released.
        with self.state.lock(channel):
            anchor, size = self._snapshot(channel)
        return self._evaluate(channel, anchor, size)

    def verify_held(self, channel: str) -> VerificationResult:
        """Same as verify(), for a caller already holding the channel lock."""
        anchor, size = self._snapshot(channel)
        return self._evaluate(channel, anchor, size)

    def _snapshot(self, channel: str) -> tuple[Optional[str], Optional[int]]:
        log_path = self.state.log_path(channel)
        anchor = self.state.read_anchor(channel)
        size = log_path.stat().st_size if log_path.exists() else None
        return anchor, size

    def _evaluate(self, channel: str, anchor: Optional[str], size: Optional[int]) -> VerificationResult:
        log_path = self.state.log_path(channel)

        if size is None:
            if anchor:
                logger.warning(f"Log file missing for channel={channel} but chain state exists")
                return VerificationResult(
                    channel=channel,
                    valid=False,
                    broken_at_index=1,
                    entries_checked=0,
                    reason=BreakReason.TRUNCATED,
                    message="log file is missing but chain state names a last record",
                )
            return VerificationResult(channel=channel, valid=True, entries_checked=0)

        result = self._replay(channel, log_path, size)
        if not result.valid:
            logger.warning(
                f"Chain broken: channel={channel} index={result.broken_at_index} reason={result.reason.value}"
            )
            return result

        if anchor is not None and anchor != (result.last_hash or GENESIS_HASH):
            logger.warning(f"Chain truncated: channel={channel} entries={result.entries_checked}")
            return result.model_copy(update={
                "valid": False,
                "broken_at_index": result.entries_checked + 1,
                "reason": BreakReason.TRUNCATED,
                "message": "chain state names a record that is not the last one in the log",
            })

        logger.info(f"Chain verified: channel={channel} entries={result.entries_checked}")
        return result

    def verify_file(self, path: Path, channel: Optional[str] = None) -> VerificationResult:
        """
        Verify a standalone log file, e.g. an archive.

        There is no ChainState for such a file, so truncation at the end
        cannot be detected here; compare last_hash with the archive manifest.
        """
        path = Path(path)
        name = channel or path.stem
        if not path.exists():
            return VerificationResult(
                channel=name,
                valid=False,
                broken_at_index=1,
                reason=BreakReason.TRUNCATED,
                message=f"{path.name} does not exist",
            )
        return self._replay(name, path, None)

    def _replay(self, channel: str, path: Path, size: Optional[int]) -> VerificationResult:
        previous = GENESIS_HASH
        grandparent: Optional[str] = None
        index = 0

        for raw in iter_lines(path, size):
            index += 1

            try:
                entry = parse_line(raw.decode("utf-8"))
            except ValueError as e:
                # UnicodeDecodeError and JSONDecodeError are both ValueErrors
                return self._broken(
                    channel, index, BreakReason.CORRUPT_RECORD,
                    f"record {index} is unreadable: {type(e).__name__}", previous,
                )

            stored = entry.pop(HASH_FIELD)
            if compute_hash(entry, previous) != stored:
                if grandparent is not None and compute_hash(entry, grandparent) == stored:
                    return self._broken(
                        channel, index, BreakReason.DUPLICATE_PARENT,
                        f"record {index} chains to the same parent as record {index - 1}", previous,
                    )
                return self._broken(
                    channel, index, BreakReason.HASH_MISMATCH,
                    f"record {index} does not match its stored hash", previous,
                )

            grandparent, previous = previous, stored

        return VerificationResult(
            channel=channel,
            valid=True,
            entries_checked=index,
            last_hash=previous if index else None,
        )

    @staticmethod
    def _broken(
        channel: str,
        index: int,
        reason: BreakReason,
        message: str,
        last_valid_hash: str,
    ) -> VerificationResult:
        return VerificationResult(
            channel=channel,
            valid=False,
            broken_at_index=index,
            entries_checked=index,
            reason=reason,
            message=message,
            last_hash=last_valid_hash or None,
        )
