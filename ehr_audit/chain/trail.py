"""
Audit trail composition root.

AuditTrail bundles the chain components for one log directory so that the
application builds them once and passes the trail to whatever logs.
"""

import logging
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from ehr_audit.chain.appender import Appender, fallback_logger
from ehr_audit.chain.archive import ChainArchiver
from ehr_audit.chain.models import (
    Actor,
    AppendResult,
    ArchiveResult,
    Channel,
    ChannelStatistics,
    LogLevel,
    LogRecord,
    Operation,
    Outcome,
    RecordQuery,
    Subject,
    VerificationResult,
)
from ehr_audit.chain.redactor import DASHBOARD_RULESET, Redactor
from ehr_audit.chain.state import ChainStateStore
from ehr_audit.chain.statistics import DEFAULT_SLOW_OPERATION_MS, ChannelReader
from ehr_audit.chain.verifier import Verifier

logger = logging.getLogger(__name__)


class AuditTrail:
    """
    Hash-chained audit trail over a log directory.

    Usage:
        trail = AuditTrail(Path("./logs"))
        trail.append("audit", operation="READ", actor={"user_id": 7, "role": "clinician"})
        assert trail.verify("audit").valid
    """

    def __init__(
        self,
        log_dir: Path,
        archive_dir: Optional[Path] = None,
        redactor: Optional[Redactor] = None,
        channel_redactors: Optional[dict[str, Redactor]] = None,
        fsync: bool = True,
        slow_operation_ms: int = DEFAULT_SLOW_OPERATION_MS,
    ):
        self.log_dir = Path(log_dir)
        self.state = ChainStateStore(self.log_dir)
        self.appender = Appender(
            self.state,
            redactor=redactor,
            channel_redactors=channel_redactors,
            fsync=fsync,
        )
        self.verifier = Verifier(self.state)
        self.reader = ChannelReader(self.state, slow_operation_ms=slow_operation_ms)
        self.archiver = ChainArchiver(
            self.state,
            Path(archive_dir) if archive_dir else self.log_dir / "archive",
            verifier=self.verifier,
        )

    # ==================================
    # Write
    # ==================================

    def append(
        self,
        channel: Union[Channel, str],
        operation: Union[Operation, str],
        level: Union[LogLevel, str] = LogLevel.INFO,
        actor: Union[Actor, Mapping, None] = None,
        subject: Union[Subject, Mapping, None] = None,
        details: Any = None,
        result: Union[Outcome, Mapping, str, None] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> AppendResult:
        """
        Build a record and append it. Never raises.

        Args:
            channel: Target channel
            operation: Symbolic action name
            level: Severity/category tag
            actor: Acting user, absent for system events
            subject: Entity acted upon
            details: Supplementary fields, redacted before storage
            result: Outcome, or just its status string
            request_id: Correlation id
            ip_address: Client IP
            user_agent: Client user agent
            duration_ms: Operation duration

        Returns:
            AppendResult
        """
        if isinstance(channel, Enum):
            channel = channel.value
        if isinstance(result, str):
            result = Outcome(status=result)

        # Redaction also normalizes keys to str and wraps non-mapping payloads
        details = self.appender.redactor_for(str(channel)).redact(details)

        try:
            record = LogRecord(
                channel=channel,
                level=level,
                operation=operation,
                actor=actor,
                subject=subject,
                details=details,
                result=result or Outcome(),
                request_id=request_id,
                ip_address=ip_address,
                user_agent=user_agent,
                duration_ms=duration_ms,
            )
        except ValidationError as e:
            # Details may carry PHI, so only the shape of the failure is logged
            error = f"invalid record: {e.error_count()} validation errors"
            fallback_logger.error(
                f"Audit append failed | channel={channel} | operation={operation} | error={error}"
            )
            return AppendResult(channel=str(channel), written=False, error=error)

        return self.appender.append(record.channel, record)

    def append_record(self, record: LogRecord) -> AppendResult:
        """Append a prebuilt record to its own channel."""
        return self.appender.append(record.channel, record)

    # ==================================
    # Read
    # ==================================

    def verify(self, channel: str) -> VerificationResult:
        return self.verifier.verify(channel)

    def verify_all(self) -> dict[str, VerificationResult]:
        """Verify every channel that has a log file."""
        return {channel: self.verifier.verify(channel) for channel in self.channels()}

    def statistics(self, channel: str) -> ChannelStatistics:
        return self.reader.statistics(channel)

    def query(self, channel: str, query: Optional[RecordQuery] = None) -> list[LogRecord]:
        return self.reader.query(channel, query)

    def channels(self) -> list[str]:
        return self.state.channels()

    # ==================================
    # Maintenance
    # ==================================

    def archive(self, channel: str) -> ArchiveResult:
        return self.archiver.archive(channel)


def build_audit_trail(settings) -> AuditTrail:
    """
    Create an AuditTrail from application settings.

    Args:
        settings: ehr_audit.config.Settings

    Returns:
        Configured AuditTrail
    """
    logger.info(f"Audit trail at {settings.log_dir_path} (fsync={settings.fsync_writes})")
    return AuditTrail(
        log_dir=settings.log_dir_path,
        archive_dir=settings.archive_dir_path,
        channel_redactors={Channel.DASHBOARD.value: Redactor(DASHBOARD_RULESET)},
        fsync=settings.fsync_writes,
        slow_operation_ms=settings.slow_operation_ms,
    )
