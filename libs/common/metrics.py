"""Metrics collection for the search services.

Provides a thin convenience wrapper around ``prometheus_client`` so services
can consistently record HTTP, search, per-source, and embedding metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry; services create one at startup and
  inject it where needed
- Decorators are provided for quick timing instrumentation
"""

import time
from typing import Any, Callable, Optional
from functools import wraps
from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for search services.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.search_requests = Counter(
            'kb_search_requests_total',
            'Total search requests',
            ['mode', 'status'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'kb_search_duration_seconds',
            'Search duration',
            ['mode'],
            registry=self.registry
        )

        self.source_results = Histogram(
            'kb_search_source_results',
            'Candidates returned per search source',
            ['source'],
            buckets=(0, 1, 5, 10, 20, 50, 100, 200),
            registry=self.registry
        )

        self.degraded_sources = Counter(
            'kb_search_degraded_sources_total',
            'Search sources degraded to empty results',
            ['source', 'error_type'],
            registry=self.registry
        )

        self.relaxed_queries = Counter(
            'kb_search_relaxed_queries_total',
            'Searches retried with a relaxed query',
            registry=self.registry
        )

        self.embedding_requests = Counter(
            'kb_embedding_requests_total',
            'Total query embedding requests',
            ['status'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'kb_embedding_duration_seconds',
            'Query embedding duration',
            registry=self.registry
        )

        self.embedding_retries = Counter(
            'kb_embedding_retries_total',
            'Query embedding attempts retried after a failure',
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_search(self, mode: str, duration: float, status: str = "success") -> None:
        """Record search metrics."""
        self.search_requests.labels(mode=mode, status=status).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_source_results(self, source: str, count: int) -> None:
        """Record how many candidates a source produced."""
        self.source_results.labels(source=source).observe(count)

    def record_degraded_source(self, source: str, error_type: str) -> None:
        """Record a source that failed and was degraded to empty."""
        self.degraded_sources.labels(source=source, error_type=error_type).inc()

    def record_relaxed_query(self) -> None:
        """Record a relaxed-query retry."""
        self.relaxed_queries.inc()

    def record_embedding(self, duration: float, status: str = "success") -> None:
        """Record query embedding metrics."""
        self.embedding_requests.labels(status=status).inc()
        self.embedding_duration.observe(duration)

    def record_embedding_retry(self) -> None:
        """Record a retried embedding attempt."""
        self.embedding_retries.inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure coroutine execution time.

    Example
    >>> @measure_time("lexical_index")
    ... async def index(...):
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
                duration = time.time() - start_time
                logger.debug(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    **labels
                )
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    error=str(e),
                    **labels
                )
                raise
        return wrapper
    return decorator
