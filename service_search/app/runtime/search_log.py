"""Search log sinks and readers.

Every search request is recorded once, success or failure. Recording runs as
a fire-and-forget task: sink failures are logged and never reach the caller.
Sinks that also implement ``SearchLogReader`` serve the query analytics
(popular queries, latency summary) over a trailing time window.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import structlog

from libs.common.db import PostgresPool

logger = structlog.get_logger("search_service.search_log")

DEFAULT_WINDOW = timedelta(hours=24)
SLOWEST_QUERIES = 5


class SearchLogSink(ABC):

    @abstractmethod
    async def record(
        self,
        query: str,
        mode: str,
        count: int,
        latency_ms: int,
        error: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> None:
        pass


class SearchLogReader(ABC):
    """Analytics over recorded searches newer than ``since`` ago."""

    @abstractmethod
    async def popular_queries(self, since: timedelta = DEFAULT_WINDOW, limit: int = 10) -> List[Dict[str, Any]]:
        """``[{"query", "count"}]``, most frequent first, ties by query text."""
        pass

    @abstractmethod
    async def performance_stats(self, since: timedelta = DEFAULT_WINDOW) -> Dict[str, Any]:
        """Search count, failure count, mean latency, per-mode counts and the slowest queries."""
        pass


class StructlogSearchLogSink(SearchLogSink):
    """Writes search log entries as structured log events."""

    async def record(self, query, mode, count, latency_ms, error=None, filters=None):
        logger.info(
            "Search logged",
            query=query,
            search_type=mode,
            results_count=count,
            execution_time_ms=latency_ms,
            error=error,
            filters=filters or {},
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySearchLogSink(StructlogSearchLogSink, SearchLogReader):
    """Logs entries like ``StructlogSearchLogSink`` and keeps the latest ones for analytics."""

    def __init__(self, max_entries: int = 10000, clock: Callable[[], datetime] = _utcnow):
        self.entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self.clock = clock

    async def record(self, query, mode, count, latency_ms, error=None, filters=None):
        await super().record(query, mode, count, latency_ms, error=error, filters=filters)
        self.entries.append({
            "query": query,
            "search_type": mode,
            "results_count": count,
            "execution_time_ms": latency_ms,
            "error": error,
            "created_at": self.clock(),
        })

    def _window(self, since: timedelta) -> List[Dict[str, Any]]:
        cutoff = self.clock() - since
        return [entry for entry in self.entries if entry["created_at"] > cutoff]

    async def popular_queries(self, since: timedelta = DEFAULT_WINDOW, limit: int = 10) -> List[Dict[str, Any]]:
        counts = Counter(entry["query"] for entry in self._window(since) if entry["query"])
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [{"query": query, "count": count} for query, count in ranked[:limit]]

    async def performance_stats(self, since: timedelta = DEFAULT_WINDOW) -> Dict[str, Any]:
        entries = self._window(since)
        latencies = [entry["execution_time_ms"] for entry in entries]
        slowest = sorted(entries, key=lambda entry: -entry["execution_time_ms"])[:SLOWEST_QUERIES]
        return {
            "total_searches": len(entries),
            "failed_searches": sum(1 for entry in entries if entry["error"]),
            "average_latency_ms": round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            "searches_by_mode": dict(Counter(entry["search_type"] for entry in entries)),
            "slowest_queries": [
                {
                    "query": entry["query"],
                    "search_type": entry["search_type"],
                    "execution_time_ms": entry["execution_time_ms"],
                }
                for entry in slowest
            ],
        }


class PostgresSearchLogSink(SearchLogSink, SearchLogReader):
    """Appends entries to the ``search_logs`` table and aggregates over it."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def record(self, query, mode, count, latency_ms, error=None, filters=None):
        payload = dict(filters or {})
        if error:
            payload["error"] = error
        await self.pool.execute(
            """
            INSERT INTO search_logs (query, search_type, execution_time_ms, results_count, filters, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, CURRENT_TIMESTAMP)
            """,
            query,
            mode,
            latency_ms,
            count,
            json.dumps(payload, default=str),
            backend="search_log",
        )

    async def popular_queries(self, since: timedelta = DEFAULT_WINDOW, limit: int = 10) -> List[Dict[str, Any]]:
        rows = await self.pool.fetch(
            """
            SELECT query, COUNT(*) AS count
            FROM search_logs
            WHERE created_at > CURRENT_TIMESTAMP - $1::interval AND query <> ''
            GROUP BY query
            ORDER BY count DESC, query ASC
            LIMIT $2
            """,
            since,
            limit,
            backend="search_log",
        )
        return [{"query": row["query"], "count": int(row["count"])} for row in rows]

    async def performance_stats(self, since: timedelta = DEFAULT_WINDOW) -> Dict[str, Any]:
        by_mode = await self.pool.fetch(
            """
            SELECT search_type,
                   COUNT(*) AS count,
                   COUNT(*) FILTER (WHERE filters ? 'error') AS failed,
                   SUM(execution_time_ms) AS total_ms
            FROM search_logs
            WHERE created_at > CURRENT_TIMESTAMP - $1::interval
            GROUP BY search_type
            """,
            since,
            backend="search_log",
        )
        slowest = await self.pool.fetch(
            """
            SELECT query, search_type, execution_time_ms
            FROM search_logs
            WHERE created_at > CURRENT_TIMESTAMP - $1::interval
            ORDER BY execution_time_ms DESC NULLS LAST
            LIMIT $2
            """,
            since,
            SLOWEST_QUERIES,
            backend="search_log",
        )

        total = sum(int(row["count"]) for row in by_mode)
        total_ms = sum(float(row["total_ms"] or 0) for row in by_mode)
        return {
            "total_searches": total,
            "failed_searches": sum(int(row["failed"]) for row in by_mode),
            "average_latency_ms": round(total_ms / total, 2) if total else 0.0,
            "searches_by_mode": {row["search_type"]: int(row["count"]) for row in by_mode},
            "slowest_queries": [
                {
                    "query": row["query"],
                    "search_type": row["search_type"],
                    "execution_time_ms": row["execution_time_ms"],
                }
                for row in slowest
            ],
        }


class SearchLogRecorder:
    """Schedules sink writes without awaiting them.

    Pending tasks are tracked so they are not garbage collected mid-flight
    and can be drained on shutdown.
    """

    def __init__(self, sink: SearchLogSink):
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    async def _record_safely(self, query: str, mode: str, **kwargs: Any) -> None:
        try:
            await self.sink.record(query, mode, **kwargs)
        except Exception as e:
            logger.warning("Failed to record search log", error=str(e), query=query)

    def record(
        self,
        query: str,
        mode: str,
        count: int,
        latency_ms: int,
        error: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._record_safely(
                query, mode, count=count, latency_ms=latency_ms, error=error, filters=filters
            )
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
