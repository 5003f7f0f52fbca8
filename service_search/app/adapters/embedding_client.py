"""Query embedding providers.

``HttpEmbeddingProvider`` talks to the embedding service; it is normally
wrapped in ``RetryingEmbeddingProvider``, which adds a per-attempt timeout,
exponential backoff and an optional circuit breaker. Every failure that
survives the wrapper surfaces as ``EmbeddingError``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, List, Optional

import httpx
import structlog

from libs.common.errors import EmbeddingError, ValidationError
from libs.common.metrics import MetricsCollector

from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .retry_handler import RetryConfig, RetryHandler, Sleep

logger = structlog.get_logger("search_service.embedding_client")

RETRYABLE_EXCEPTIONS = (EmbeddingError, asyncio.TimeoutError)


class EmbeddingProvider(ABC):
    """Turns query text into a dense vector."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        pass

    async def close(self) -> None:
        pass


class HttpEmbeddingProvider(EmbeddingProvider):
    """Client for the embedding service ``POST /api/v1/embed`` endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str = "default",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def embed(self, text: str) -> List[float]:
        payload = {"items": [{"text": text}], "model": self.model}
        try:
            response = await self._client.post(f"{self.base_url}/api/v1/embed", json=payload)
            response.raise_for_status()
            data: Any = response.json()
        except httpx.HTTPError as e:
            raise EmbeddingError(
                f"Embedding request failed: {e}", context={"url": self.base_url}
            ) from e
        except ValueError as e:
            raise EmbeddingError(f"Invalid embedding response: {e}") from e

        vectors = data.get("vectors") if isinstance(data, dict) else None
        if not vectors or not isinstance(vectors[0], list) or not vectors[0]:
            raise EmbeddingError("Embedding response contained no vectors")
        return [float(value) for value in vectors[0]]

    async def close(self) -> None:
        await self._client.aclose()


class RetryingEmbeddingProvider(EmbeddingProvider):
    """Resilience wrapper around another provider.

    Each attempt is bounded by ``attempt_timeout``. Timeouts and
    ``EmbeddingError`` are retried per ``retry_config``; an open circuit is
    not retried.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        retry_config: Optional[RetryConfig] = None,
        attempt_timeout: Optional[float] = 2.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Optional[Sleep] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.provider = provider
        self.attempt_timeout = attempt_timeout
        self.circuit_breaker = circuit_breaker
        self.metrics = metrics

        self.retry_handler = RetryHandler(
            replace(retry_config or RetryConfig(), retryable_exceptions=RETRYABLE_EXCEPTIONS),
            sleep=sleep,
            on_retry=metrics.record_embedding_retry if metrics else None,
        )

    async def _attempt(self, text: str) -> List[float]:
        if self.attempt_timeout is None:
            return await self.provider.embed(text)
        return await asyncio.wait_for(self.provider.embed(text), timeout=self.attempt_timeout)

    async def _guarded_attempt(self, text: str) -> List[float]:
        if self.circuit_breaker is None:
            return await self._attempt(text)
        return await self.circuit_breaker.call(self._attempt, text)

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")

        start_time = time.time()
        try:
            vector = await self.retry_handler.execute_with_retry(
                self._guarded_attempt, text, operation_name="embed_query"
            )
        except CircuitBreakerError as e:
            self._record(start_time, "circuit_open")
            raise EmbeddingError("Embedding circuit breaker is open", context=e.context) from e
        except asyncio.TimeoutError as e:
            self._record(start_time, "timeout")
            raise EmbeddingError(
                "Embedding request timed out", context={"timeout": self.attempt_timeout}
            ) from e
        except EmbeddingError:
            self._record(start_time, "error")
            raise

        self._record(start_time, "success")
        return vector

    def _record(self, start_time: float, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_embedding(time.time() - start_time, status)

    async def close(self) -> None:
        await self.provider.close()
