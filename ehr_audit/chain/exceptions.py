"""Exceptions raised by the hash-chained audit log."""

from typing import Optional


class AuditChainError(Exception):
    """Base class for audit chain errors."""
    pass


class InvalidChannelError(AuditChainError, ValueError):
    """Raised when a channel name is not a safe file stem."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Invalid audit channel name: {channel!r}")


class RedactionFailure(AuditChainError):
    """Raised inside the redactor when a payload cannot be walked.

    Never escapes Redactor.redact(); it triggers coarse redaction instead.
    """
    pass


class AppendFailure(AuditChainError):
    """Raised inside the appender when a record could not be made durable.

    Converted to an AppendResult with written=False before reaching callers.
    """
    pass


class ChainBroken(AuditChainError):
    """Raised by VerificationResult.raise_for_status() for a broken chain."""

    def __init__(
        self,
        channel: str,
        broken_at_index: Optional[int],
        reason: Optional[str] = None,
    ):
        self.channel = channel
        self.broken_at_index = broken_at_index
        self.reason = reason
        super().__init__(
            f"Audit chain '{channel}' broken at record {broken_at_index} ({reason})"
        )


class ConcurrencyViolation(ChainBroken):
    """A record chained against the same parent as the record before it."""
    pass
