"""
Dashboard Performance Logger

Per-request tracker for dashboard metric requests, cache lookups and
query timings. Each record lands on the dashboard channel with its
duration_ms (and cache_hit for cache lookups), so channel statistics
report slow operations and the cache hit rate.

Create one DashboardLogger per request; the running counters are not
shared between requests.
"""

import logging
import re
import time
from typing import Any, Optional, Union

from ehr_audit.chain.models import (
    Actor,
    AppendResult,
    Channel,
    LogLevel,
    Operation,
    Outcome,
    Subject,
)
from ehr_audit.chain.trail import AuditTrail
from ehr_audit.context import get_request_context

logger = logging.getLogger(__name__)


# ==================================
# Thresholds
# ==================================

SLOW_QUERY_MS = 100
SLOW_DASHBOARD_MS = 500
MAX_QUERIES = 10
CACHE_MISS_RATE_THRESHOLD = 0.5
# Cache lookups needed before the miss rate is judged
MIN_CACHE_SAMPLES = 5

MAX_CACHE_KEY_LENGTH = 200
MAX_QUERY_DESCRIPTION_LENGTH = 500
MAX_FILTER_VALUE_LENGTH = 100

# Literal values in query descriptions
_QUOTED_VALUE = re.compile(r"= '[^']*'")
_NUMERIC_VALUE = re.compile(r"= \d+")


def describe_query(query: str) -> str:
    """Keep a query description's structure, drop its literal values."""
    described = _QUOTED_VALUE.sub("= '[VALUE]'", query)
    described = _NUMERIC_VALUE.sub("= [NUMBER]", described)
    return described[:MAX_QUERY_DESCRIPTION_LENGTH]


def _trim_filters(filters: dict) -> dict:
    trimmed: dict[str, Any] = {}
    for key, value in filters.items():
        if isinstance(value, dict):
            trimmed[key] = _trim_filters(value)
        elif isinstance(value, str):
            trimmed[key] = value[:MAX_FILTER_VALUE_LENGTH]
        else:
            trimmed[key] = value
    return trimmed


class DashboardLogger:
    """
    Dashboard performance logging for one request.

    Usage:
        perf = DashboardLogger(trail)
        perf.log_cache_operation("kpi:clinic:7", hit=False)
        perf.log_query_performance("SELECT encounters WHERE clinic = 7", 0.142, 380)
        perf.log_dashboard_load("clinical_provider", ["encounters_today"])
        summary = perf.performance_summary()
    """

    def __init__(self, trail: AuditTrail, channel: Union[Channel, str] = Channel.DASHBOARD):
        self.trail = trail
        self.channel = channel.value if isinstance(channel, Channel) else channel
        self.start_request()

    def start_request(self) -> None:
        """Reset the per-request counters."""
        self.request_start = time.monotonic()
        self.query_log: list[dict[str, Any]] = []
        self.cache_hits = 0
        self.cache_misses = 0

    # ==================================
    # Counters
    # ==================================

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0.0
        return round(self.cache_hits / total, 2)

    @property
    def cache_miss_rate_exceeded(self) -> bool:
        if self.cache_hits + self.cache_misses < MIN_CACHE_SAMPLES:
            return False
        return self.cache_hit_rate < 1 - CACHE_MISS_RATE_THRESHOLD

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self.request_start) * 1000)

    # ==================================
    # Logging
    # ==================================

    def _log(
        self,
        operation: Union[Operation, str],
        level: LogLevel,
        details: dict,
        status: str = "success",
        error_message: Optional[str] = None,
        subject: Optional[Subject] = None,
        duration_ms: Optional[int] = None,
        user_id: Any = None,
    ) -> AppendResult:
        try:
            context = get_request_context()
            actor = context.actor if context else None
            if user_id is not None:
                actor = Actor(user_id=user_id, role=context.role if context else None)

            return self.trail.append(
                self.channel,
                operation=operation,
                level=level,
                actor=actor,
                subject=subject,
                details=details,
                result=Outcome(status=status, error_message=error_message),
                request_id=context.request_id if context else None,
                ip_address=context.ip_address if context else None,
                user_agent=context.user_agent if context else None,
                duration_ms=duration_ms,
            )
        except Exception as e:
            logger.error(f"Dashboard event {getattr(operation, 'value', operation)} not logged: {type(e).__name__}")
            return AppendResult(channel=self.channel, written=False, error=f"{type(e).__name__}: {e}")

    def log_metric_request(
        self,
        dashboard: str,
        metric: str,
        user_id: Any = None,
        filters: Optional[dict] = None,
    ) -> AppendResult:
        """Log a dashboard metric request and its filters."""
        return self._log(
            Operation.METRIC_REQUEST,
            LogLevel.INFO,
            subject=Subject(type="Dashboard", id=dashboard),
            details={
                "dashboard_type": dashboard,
                "metric": metric,
                "filters": _trim_filters(filters or {}),
            },
            status="initiated",
            user_id=user_id,
        )

    def log_metric_calculation(
        self,
        metric: str,
        execution_time: float,
        query_count: int = 1,
        row_count: int = 0,
    ) -> AppendResult:
        """
        Log a metric calculation.

        Args:
            metric: Metric calculated
            execution_time: Seconds taken
            query_count: Queries executed for it
            row_count: Rows read
        """
        execution_ms = int(execution_time * 1000)
        slow = execution_ms > SLOW_QUERY_MS
        self.query_log.append({"metric": metric, "execution_time_ms": execution_ms})

        return self._log(
            Operation.METRIC_CALCULATE,
            LogLevel.WARNING if slow else LogLevel.INFO,
            details={
                "metric": metric,
                "query_count": query_count,
                "row_count": row_count,
                "threshold_exceeded": slow,
            },
            duration_ms=execution_ms,
        )

    def log_cache_operation(self, key: str, hit: bool, ttl: Optional[int] = None) -> AppendResult:
        """Log a cache lookup; warns once the running miss rate is too high."""
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

        details = {
            "cache_key": key[:MAX_CACHE_KEY_LENGTH],
            "cache_hit": hit,
            "ttl_seconds": ttl,
            "session_hits": self.cache_hits,
            "session_misses": self.cache_misses,
            "session_hit_rate": self.cache_hit_rate,
        }
        level = LogLevel.DEBUG
        if self.cache_miss_rate_exceeded:
            level = LogLevel.WARNING
            details["warning"] = "High cache miss rate detected"

        return self._log(
            Operation.CACHE_READ if hit else Operation.CACHE_WRITE,
            level,
            details=details,
        )

    def log_query_performance(self, query: str, execution_time: float, row_count: int) -> Optional[AppendResult]:
        """
        Track a query; only slow or large ones are written.

        Args:
            query: Query description, not the SQL itself
            execution_time: Seconds taken
            row_count: Rows returned

        Returns:
            AppendResult, or None when the query was only tracked
        """
        execution_ms = int(execution_time * 1000)
        self.query_log.append({
            "query": query,
            "execution_time_ms": execution_ms,
            "row_count": row_count,
        })

        if execution_ms < SLOW_QUERY_MS and row_count < 100:
            return None

        slow = execution_ms > SLOW_QUERY_MS
        return self._log(
            Operation.QUERY_EXECUTE,
            LogLevel.PERF if slow else LogLevel.DEBUG,
            details={
                "query_description": describe_query(query),
                "row_count": row_count,
                "is_slow_query": slow,
            },
            duration_ms=execution_ms,
        )

    def log_data_aggregation(
        self,
        aggregation_type: str,
        execution_time: float,
        data_points: int = 0,
        source_tables: Optional[list[str]] = None,
    ) -> AppendResult:
        execution_ms = int(execution_time * 1000)
        return self._log(
            Operation.DATA_AGGREGATE,
            LogLevel.WARNING if execution_ms > SLOW_QUERY_MS else LogLevel.INFO,
            details={
                "aggregation_type": aggregation_type,
                "data_points": data_points,
                "source_tables": list(source_tables or []),
            },
            duration_ms=execution_ms,
        )

    def log_dashboard_load(
        self,
        dashboard_type: str,
        metrics: list[str],
        user_id: Any = None,
    ) -> AppendResult:
        """Log a full dashboard load, flagging slow loads, query storms and cache misses."""
        total_ms = self._elapsed_ms()
        query_count = len(self.query_log)

        warnings = []
        if total_ms > SLOW_DASHBOARD_MS:
            warnings.append(f"Dashboard load exceeded {SLOW_DASHBOARD_MS}ms threshold")
        if query_count > MAX_QUERIES:
            warnings.append(f"Query count ({query_count}) exceeded threshold of {MAX_QUERIES}")
        if self.cache_miss_rate_exceeded:
            warnings.append(f"Cache miss rate exceeded {int(CACHE_MISS_RATE_THRESHOLD * 100)}%")

        return self._log(
            Operation.DASHBOARD_LOAD,
            LogLevel.WARNING if warnings else LogLevel.INFO,
            subject=Subject(type="Dashboard", id=dashboard_type),
            details={
                "dashboard_type": dashboard_type,
                "metrics_requested": list(metrics),
                "metrics_count": len(metrics),
                "cache_status": "hit" if self.cache_hits > 0 else "miss",
                "cache_hit_rate": self.cache_hit_rate,
                "query_count": query_count,
                "total_query_time_ms": sum(q["execution_time_ms"] for q in self.query_log),
                "warnings": warnings,
            },
            duration_ms=total_ms,
            user_id=user_id,
        )

    def log_error(self, operation: Union[Operation, str], error_message: str, context: Optional[dict] = None) -> AppendResult:
        return self._log(
            operation,
            LogLevel.ERROR,
            details={"context": context or {}},
            status="failure",
            error_message=error_message,
        )

    def performance_summary(self) -> dict[str, Any]:
        """Timing, query and cache figures for the current request."""
        total_ms = self._elapsed_ms()
        query_count = len(self.query_log)
        return {
            "total_time_ms": total_ms,
            "query_count": query_count,
            "total_query_time_ms": sum(q["execution_time_ms"] for q in self.query_log),
            "slow_query_count": sum(1 for q in self.query_log if q["execution_time_ms"] > SLOW_QUERY_MS),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
            "thresholds_exceeded": {
                "slow_dashboard": total_ms > SLOW_DASHBOARD_MS,
                "max_queries": query_count > MAX_QUERIES,
                "cache_miss_rate": self.cache_miss_rate_exceeded,
            },
        }
