"""
Audit chain data models.

Pydantic models for log records, append/verification results,
channel statistics and archive results.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator

from ehr_audit.chain.exceptions import ChainBroken, ConcurrencyViolation, InvalidChannelError


# Channel names become file stems, so keep them to a safe alphabet
CHANNEL_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]{0,63}$")

# Canonical on-disk field order; "hash" is always appended last
RECORD_FIELDS = (
    "timestamp",
    "channel",
    "level",
    "operation",
    "actor",
    "subject",
    "details",
    "result",
    "request_id",
    "ip_address",
    "user_agent",
    "duration_ms",
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Open map of supplementary fields: str -> primitive | list | nested map
DetailValue = Union[None, bool, int, float, str, list["DetailValue"], dict[str, "DetailValue"]]
Details = dict[str, Any]


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def validate_channel(channel: str) -> str:
    """Return the channel name or raise InvalidChannelError."""
    if not isinstance(channel, str) or not CHANNEL_PATTERN.match(channel):
        raise InvalidChannelError(str(channel))
    return channel


def to_valid_utf8(value: Any) -> Any:
    """
    Replace lone surrogates in a string so it can be encoded as UTF-8.

    Text decoded with surrogateescape would otherwise fail serialization
    and the record could not be written. Non-strings pass through.
    """
    if isinstance(value, str):
        return value.encode("utf-8", "replace").decode("utf-8")
    return value


Text = Annotated[str, AfterValidator(to_valid_utf8)]


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime in UTC with fixed microsecond precision."""
    return _as_utc(value).strftime(TIMESTAMP_FORMAT)


# ==================================
# Enums
# ==================================

class LogLevel(str, Enum):
    """Severity/category tags for log records."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    AUDIT = "AUDIT"
    CRITICAL = "CRITICAL"
    PERF = "PERF"


class Operation(str, Enum):
    """Symbolic action names."""

    # Record lifecycle
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SEARCH = "SEARCH"

    # Clinical workflow
    FINALIZE = "FINALIZE"
    SIGN = "SIGN"
    AMEND = "AMEND"
    STATUS_TRANSITION = "STATUS_TRANSITION"
    SEND_EMAIL = "SEND_EMAIL"
    SEND_SMS = "SEND_SMS"

    # Access & security
    PHI_ACCESS = "PHI_ACCESS"
    ACCESS_DENIED = "ACCESS_DENIED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    SECURITY_EVENT = "SECURITY_EVENT"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"

    # Dashboards
    DASHBOARD_LOAD = "DASHBOARD_LOAD"
    METRIC_REQUEST = "METRIC_REQUEST"
    METRIC_CALCULATE = "METRIC_CALCULATE"
    CACHE_READ = "CACHE_READ"
    CACHE_WRITE = "CACHE_WRITE"
    QUERY_EXECUTE = "QUERY_EXECUTE"
    DATA_AGGREGATE = "DATA_AGGREGATE"

    ERROR = "ERROR"


class Channel(str, Enum):
    """Well-known channels. Any name matching CHANNEL_PATTERN is accepted."""
    AUDIT = "audit"
    EHR = "ehr"
    ENCOUNTER = "encounter"
    VITALS = "vitals"
    ASSESSMENT = "assessment"
    TREATMENT = "treatment"
    SIGNATURE = "signature"
    FINALIZATION = "finalization"
    PHI_ACCESS = "phi_access"
    AUTH = "auth"
    SECURITY = "security"
    DASHBOARD = "dashboard"


class BreakReason(str, Enum):
    """Why verification stopped."""
    HASH_MISMATCH = "hash_mismatch"
    CORRUPT_RECORD = "corrupt_record"
    DUPLICATE_PARENT = "duplicate_parent"
    TRUNCATED = "truncated"


# ==================================
# Record Models
# ==================================

class Actor(BaseModel):
    """The user performing an action."""
    user_id: Optional[Union[int, Text]] = None
    role: Optional[Text] = None


class Subject(BaseModel):
    """The entity acted upon, e.g. Patient/<uuid>."""
    type: Text
    id: Optional[Union[int, Text]] = None


class Outcome(BaseModel):
    """Result of the logged operation."""
    status: Text = "success"
    error_message: Optional[Text] = None


class LogRecord(BaseModel):
    """
    A single structured audit record.

    `hash` is computed by the appender and must not be supplied by callers.
    """

    timestamp: datetime = Field(default_factory=_utcnow)
    channel: str
    level: Text = LogLevel.INFO.value
    operation: Text
    actor: Optional[Actor] = None
    subject: Optional[Subject] = None
    details: Details = Field(default_factory=dict)
    result: Outcome = Field(default_factory=Outcome)

    request_id: Optional[Text] = None
    ip_address: Optional[Text] = None
    user_agent: Optional[Text] = None
    duration_ms: Optional[int] = None

    hash: Optional[str] = None

    @field_validator("level", "operation", mode="before")
    @classmethod
    def _unwrap_enum(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @field_validator("channel", mode="before")
    @classmethod
    def _check_channel(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            value = value.value
        return validate_channel(value)

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def to_chain_dict(self) -> dict[str, Any]:
        """Every hashed field, in canonical order, as JSON-native values."""
        return {
            "timestamp": format_timestamp(self.timestamp),
            "channel": self.channel,
            "level": self.level,
            "operation": self.operation,
            "actor": self.actor.model_dump() if self.actor else None,
            "subject": self.subject.model_dump() if self.subject else None,
            "details": self.details,
            "result": self.result.model_dump(),
            "request_id": self.request_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "duration_ms": self.duration_ms,
        }


# ==================================
# Result Models
# ==================================

class AppendResult(BaseModel):
    """Outcome of an append. Appends report failure here instead of raising."""
    channel: str
    written: bool
    hash: Optional[str] = None
    error: Optional[str] = None


class VerificationResult(BaseModel):
    """Outcome of replaying a channel's hash chain."""
    channel: str
    valid: bool
    broken_at_index: Optional[int] = None
    entries_checked: int = 0
    reason: Optional[BreakReason] = None
    message: Optional[str] = None
    last_hash: Optional[str] = None

    def raise_for_status(self) -> None:
        """Raise ChainBroken (or ConcurrencyViolation) if the chain is invalid."""
        if self.valid:
            return
        reason = self.reason.value if self.reason else None
        if self.reason == BreakReason.DUPLICATE_PARENT:
            raise ConcurrencyViolation(self.channel, self.broken_at_index, reason)
        raise ChainBroken(self.channel, self.broken_at_index, reason)


class CacheStatistics(BaseModel):
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class ChannelStatistics(BaseModel):
    """Aggregates over a channel's records."""
    channel: str
    total_entries: int = 0
    corrupt_entries: int = 0
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_level: dict[str, int] = Field(default_factory=dict)
    by_result: dict[str, int] = Field(default_factory=dict)
    by_actor: dict[str, int] = Field(default_factory=dict)
    slow_operations: int = 0
    avg_duration_ms: float = 0.0
    cache: CacheStatistics = Field(default_factory=CacheStatistics)
    file_size_bytes: int = 0


class RecordQuery(BaseModel):
    """Filters for reading records back from a channel."""
    operation: Optional[str] = None
    level: Optional[str] = None
    user_id: Optional[str] = None
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    status: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    newest_first: bool = True

    def matches(self, record: "LogRecord") -> bool:
        """Check a record against every filter that is set."""
        if self.operation and record.operation != self.operation:
            return False
        if self.level and record.level != self.level:
            return False
        if self.status and record.result.status != self.status:
            return False
        if self.user_id is not None:
            if record.actor is None or str(record.actor.user_id) != self.user_id:
                return False
        if self.subject_type or self.subject_id is not None:
            if record.subject is None:
                return False
            if self.subject_type and record.subject.type != self.subject_type:
                return False
            if self.subject_id is not None and str(record.subject.id) != self.subject_id:
                return False
        if self.start_time and record.timestamp < _as_utc(self.start_time):
            return False
        if self.end_time and record.timestamp > _as_utc(self.end_time):
            return False
        return True


class ArchiveResult(BaseModel):
    """Outcome of archiving a channel."""
    channel: str
    archived: bool
    entries: int = 0
    final_hash: Optional[str] = None
    chain_valid: bool = True
    archive_path: Optional[str] = None
    manifest_path: Optional[str] = None
    archived_at: datetime = Field(default_factory=_utcnow)
