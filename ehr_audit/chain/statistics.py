"""
Read-only reducers over a channel's records.

Neither statistics nor queries check the chain; run the verifier for that.
Unreadable lines are skipped and counted.
"""

import logging
from collections import Counter
from typing import Any, Iterator, Optional

from pydantic import ValidationError

from ehr_audit.chain.models import CacheStatistics, ChannelStatistics, LogRecord, RecordQuery
from ehr_audit.chain.serialization import parse_line
from ehr_audit.chain.state import ChainStateStore
from ehr_audit.chain.verifier import iter_lines

logger = logging.getLogger(__name__)

# Operations longer than this duration count as slow
DEFAULT_SLOW_OPERATION_MS = 100


class ChannelReader:
    """
    Statistics and filtered reads for channel logs.

    Usage:
        reader = ChannelReader(ChainStateStore(Path("./logs")))
        stats = reader.statistics("dashboard")
        failures = reader.query("audit", RecordQuery(status="failure"))
    """

    def __init__(self, state: ChainStateStore, slow_operation_ms: int = DEFAULT_SLOW_OPERATION_MS):
        self.state = state
        self.slow_operation_ms = slow_operation_ms

    def entries(self, channel: str) -> Iterator[Optional[dict[str, Any]]]:
        """Parsed entries in append order; None for each unreadable line."""
        log_path = self.state.log_path(channel)
        if not log_path.exists():
            return
        for raw in iter_lines(log_path):
            if not raw.strip():
                continue
            try:
                yield parse_line(raw.decode("utf-8"))
            except ValueError:
                yield None

    def records(self, channel: str) -> Iterator[LogRecord]:
        """Entries that validate as LogRecords, in append order."""
        for entry in self.entries(channel):
            if entry is None:
                continue
            try:
                yield LogRecord.model_validate(entry)
            except ValidationError as e:
                logger.debug(f"Skipping malformed record in channel={channel}: {e.error_count()} errors")

    def statistics(self, channel: str) -> ChannelStatistics:
        """
        Aggregate a channel's records.

        Args:
            channel: Channel to reduce

        Returns:
            ChannelStatistics (all zero for a channel without a log)
        """
        log_path = self.state.log_path(channel)

        by_operation: Counter = Counter()
        by_level: Counter = Counter()
        by_result: Counter = Counter()
        by_actor: Counter = Counter()
        total = 0
        corrupt = 0
        slow = 0
        durations: list[int] = []
        hits = 0
        misses = 0

        for entry in self.entries(channel):
            if entry is None:
                corrupt += 1
                continue
            total += 1

            by_operation[str(entry.get("operation") or "unknown")] += 1
            by_level[str(entry.get("level") or "unknown")] += 1

            result = entry.get("result")
            status = result.get("status") if isinstance(result, dict) else None
            by_result[str(status or "unknown")] += 1

            actor = entry.get("actor")
            user_id = actor.get("user_id") if isinstance(actor, dict) else None
            by_actor["anonymous" if user_id is None else str(user_id)] += 1

            duration = entry.get("duration_ms")
            if isinstance(duration, (int, float)) and not isinstance(duration, bool):
                durations.append(duration)
                if duration > self.slow_operation_ms:
                    slow += 1

            details = entry.get("details")
            cache_hit = details.get("cache_hit") if isinstance(details, dict) else None
            if cache_hit is True:
                hits += 1
            elif cache_hit is False:
                misses += 1

        lookups = hits + misses
        return ChannelStatistics(
            channel=channel,
            total_entries=total,
            corrupt_entries=corrupt,
            by_operation=dict(by_operation),
            by_level=dict(by_level),
            by_result=dict(by_result),
            by_actor=dict(by_actor),
            slow_operations=slow,
            avg_duration_ms=round(sum(durations) / len(durations), 2) if durations else 0.0,
            cache=CacheStatistics(
                hits=hits,
                misses=misses,
                hit_rate=round(hits / lookups, 4) if lookups else 0.0,
            ),
            file_size_bytes=log_path.stat().st_size if log_path.exists() else 0,
        )

    def query(self, channel: str, query: Optional[RecordQuery] = None) -> list[LogRecord]:
        """
        Read back records matching a query.

        Args:
            channel: Channel to read
            query: Filters, ordering and paging (defaults to the newest 100)

        Returns:
            Matching records, hash included
        """
        query = query or RecordQuery()
        matched = [record for record in self.records(channel) if query.matches(record)]
        if query.newest_first:
            matched.reverse()
        return matched[query.offset:query.offset + query.limit]
