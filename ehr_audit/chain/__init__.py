"""
Hash-Chained Audit Log

Redactor -> LogRecord -> ChainState -> Appender -> Verifier, plus
read-only statistics/query helpers and channel archival.
"""

from ehr_audit.chain.exceptions import (
    AuditChainError,
    InvalidChannelError,
    RedactionFailure,
    AppendFailure,
    ChainBroken,
    ConcurrencyViolation,
)

from ehr_audit.chain.models import (
    # Enums
    LogLevel,
    Operation,
    Channel,
    BreakReason,

    # Models
    Actor,
    Subject,
    Outcome,
    LogRecord,
    AppendResult,
    VerificationResult,
    CacheStatistics,
    ChannelStatistics,
    RecordQuery,
    ArchiveResult,
)

from ehr_audit.chain.redactor import (
    REDACTION_MARKER,
    PHI_FIELDS,
    PHI_PATTERNS,
    ContentPattern,
    RedactionRuleset,
    DEFAULT_RULESET,
    DASHBOARD_RULESET,
    Redactor,
)

from ehr_audit.chain.serialization import (
    GENESIS_HASH,
    serialize,
    compute_hash,
)

from ehr_audit.chain.state import ChainStateStore
from ehr_audit.chain.appender import Appender
from ehr_audit.chain.verifier import Verifier
from ehr_audit.chain.statistics import ChannelReader
from ehr_audit.chain.archive import ChainArchiver
from ehr_audit.chain.trail import AuditTrail, build_audit_trail

__all__ = [
    # Exceptions
    "AuditChainError",
    "InvalidChannelError",
    "RedactionFailure",
    "AppendFailure",
    "ChainBroken",
    "ConcurrencyViolation",

    # Enums
    "LogLevel",
    "Operation",
    "Channel",
    "BreakReason",

    # Models
    "Actor",
    "Subject",
    "Outcome",
    "LogRecord",
    "AppendResult",
    "VerificationResult",
    "CacheStatistics",
    "ChannelStatistics",
    "RecordQuery",
    "ArchiveResult",

    # Redaction
    "REDACTION_MARKER",
    "PHI_FIELDS",
    "PHI_PATTERNS",
    "ContentPattern",
    "RedactionRuleset",
    "DEFAULT_RULESET",
    "DASHBOARD_RULESET",
    "Redactor",

    # Hashing
    "GENESIS_HASH",
    "serialize",
    "compute_hash",

    # Components
    "ChainStateStore",
    "Appender",
    "Verifier",
    "ChannelReader",
    "ChainArchiver",
    "AuditTrail",
    "build_audit_trail",
]
