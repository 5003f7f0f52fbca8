"""Tests for search log sinks and the fire-and-forget recorder."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from service_search.app.runtime.search_log import (
    InMemorySearchLogSink,
    PostgresSearchLogSink,
    SearchLogReader,
    SearchLogRecorder,
    StructlogSearchLogSink,
)

from .conftest import FailingSink, RecordingSink


class FakePool:

    def __init__(self, rows=None):
        self.executed = []
        self.rows = list(rows or [])

    async def execute(self, query, *args, backend="postgres"):
        self.executed.append((query, args, backend))
        return "INSERT 0 1"

    async def fetch(self, query, *args, backend="postgres"):
        self.executed.append((query, args, backend))
        return self.rows.pop(0) if self.rows else []


class FakeClock:

    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_recorder_schedules_write():
    sink = RecordingSink()
    recorder = SearchLogRecorder(sink)

    task = recorder.record("neural", "hybrid", count=3, latency_ms=12)
    await task

    assert sink.entries == [{
        "query": "neural",
        "mode": "hybrid",
        "count": 3,
        "latency_ms": 12,
        "error": None,
        "filters": None,
    }]


@pytest.mark.asyncio
async def test_recorder_swallows_sink_failures():
    sink = FailingSink()
    recorder = SearchLogRecorder(sink)

    recorder.record("neural", "hybrid", count=0, latency_ms=1, error="boom")
    recorder.record("neural", "vector", count=0, latency_ms=1)
    await recorder.drain()

    assert sink.attempts == 2


@pytest.mark.asyncio
async def test_drain_without_pending_writes():
    await SearchLogRecorder(RecordingSink()).drain()


@pytest.mark.asyncio
async def test_structlog_sink_accepts_entries():
    await StructlogSearchLogSink().record("neural", "hybrid", 2, 5, filters={"document_ids": [1]})


@pytest.mark.asyncio
async def test_postgres_sink_inserts_row_with_error_in_filters():
    pool = FakePool()
    sink = PostgresSearchLogSink(pool)

    await sink.record("neural", "fulltext", 4, 20, error="vector: down", filters={"tag_ids": [3]})

    query, args, backend = pool.executed[0]
    assert "INSERT INTO search_logs" in query
    assert args[:4] == ("neural", "fulltext", 20, 4)
    assert json.loads(args[4]) == {"tag_ids": [3], "error": "vector: down"}
    assert backend == "search_log"


@pytest.mark.asyncio
async def test_in_memory_sink_popular_queries():
    clock = FakeClock()
    sink = InMemorySearchLogSink(clock=clock)
    await sink.record("old query", "hybrid", 1, 5)
    clock.now += timedelta(hours=30)
    for query in ["neural", "pasta", "neural", ""]:
        await sink.record(query, "hybrid", 1, 5)

    assert isinstance(sink, SearchLogReader)
    assert await sink.popular_queries() == [
        {"query": "neural", "count": 2},
        {"query": "pasta", "count": 1},
    ]
    assert await sink.popular_queries(limit=1) == [{"query": "neural", "count": 2}]
    assert len(await sink.popular_queries(since=timedelta(hours=48))) == 3


@pytest.mark.asyncio
async def test_in_memory_sink_performance_stats():
    sink = InMemorySearchLogSink(clock=FakeClock())
    await sink.record("neural", "hybrid", 2, 10)
    await sink.record("pasta", "fulltext", 0, 30, error="All search sources failed")
    await sink.record("deep learning", "hybrid", 3, 20)

    stats = await sink.performance_stats()
    assert stats["total_searches"] == 3
    assert stats["failed_searches"] == 1
    assert stats["average_latency_ms"] == 20.0
    assert stats["searches_by_mode"] == {"hybrid": 2, "fulltext": 1}
    assert [entry["query"] for entry in stats["slowest_queries"]] == ["pasta", "deep learning", "neural"]


@pytest.mark.asyncio
async def test_in_memory_sink_is_bounded():
    sink = InMemorySearchLogSink(max_entries=2, clock=FakeClock())
    for query in ["a1", "b2", "c3"]:
        await sink.record(query, "hybrid", 1, 1)
    assert [entry["query"] for entry in sink.entries] == ["b2", "c3"]
    assert (await sink.performance_stats())["total_searches"] == 2


@pytest.mark.asyncio
async def test_empty_window_performance_stats():
    stats = await InMemorySearchLogSink().performance_stats()
    assert stats["total_searches"] == 0
    assert stats["average_latency_ms"] == 0.0
    assert stats["slowest_queries"] == []


@pytest.mark.asyncio
async def test_postgres_sink_popular_queries():
    pool = FakePool(rows=[[{"query": "neural", "count": 3}, {"query": "pasta", "count": 1}]])
    sink = PostgresSearchLogSink(pool)

    assert await sink.popular_queries(since=timedelta(hours=6), limit=2) == [
        {"query": "neural", "count": 3},
        {"query": "pasta", "count": 1},
    ]
    query, args, backend = pool.executed[0]
    assert "GROUP BY query" in query
    assert args == (timedelta(hours=6), 2)
    assert backend == "search_log"


@pytest.mark.asyncio
async def test_postgres_sink_performance_stats():
    pool = FakePool(rows=[
        [
            {"search_type": "hybrid", "count": 3, "failed": 1, "total_ms": 60},
            {"search_type": "vector", "count": 1, "failed": 0, "total_ms": 20},
        ],
        [{"query": "neural", "search_type": "hybrid", "execution_time_ms": 40}],
    ])
    sink = PostgresSearchLogSink(pool)

    stats = await sink.performance_stats()
    assert stats == {
        "total_searches": 4,
        "failed_searches": 1,
        "average_latency_ms": 20.0,
        "searches_by_mode": {"hybrid": 3, "vector": 1},
        "slowest_queries": [{"query": "neural", "search_type": "hybrid", "execution_time_ms": 40}],
    }
    assert "filters ? 'error'" in pool.executed[0][0]
    assert pool.executed[1][1] == (timedelta(hours=24), 5)
