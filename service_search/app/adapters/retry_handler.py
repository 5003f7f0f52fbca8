"""Exponential backoff retries for the query embedding call."""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

from libs.common.config import SearchConfig

logger = structlog.get_logger("retry_handler")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    """Attempt count and backoff curve.

    The delay before retry ``n`` (0-based) is
    ``min(base_delay * exponential_base ** n, max_delay)``, optionally
    spread by +/-10% when ``jitter`` is set.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    @classmethod
    def from_config(cls, config: SearchConfig) -> "RetryConfig":
        return cls(
            max_attempts=config.kb_embedding_retry_attempts,
            base_delay=config.kb_embedding_retry_base_delay,
            max_delay=config.kb_embedding_retry_max_delay,
            exponential_base=config.kb_embedding_retry_multiplier,
            jitter=config.kb_embedding_retry_jitter,
        )

    @property
    def attempts(self) -> int:
        return max(1, self.max_attempts)

    def delay_for(self, retry_index: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** retry_index), self.max_delay)
        if self.jitter:
            delay += random.uniform(-0.1 * delay, 0.1 * delay)
        return max(delay, 0.0)


class RetryHandler:
    """Runs a coroutine function until it succeeds or attempts run out.

    ``sleep`` is injectable so tests can observe backoff without waiting;
    ``on_retry`` fires once per scheduled retry.
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep: Optional[Sleep] = None,
        on_retry: Optional[Callable[[], None]] = None
    ):
        self.config = config
        self.sleep = sleep or asyncio.sleep
        self.on_retry = on_retry

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Exceptions outside ``retryable_exceptions`` propagate on the first attempt."""
        attempts = self.config.attempts
        attempt = 1
        while True:
            try:
                result = await func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                error = str(e) or type(e).__name__
                if attempt >= attempts:
                    logger.error("Giving up", operation=operation_name, attempts=attempts, error=error)
                    raise

                delay = self.config.delay_for(attempt - 1)
                logger.warning(
                    "Attempt failed, backing off",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay_seconds=delay,
                    error=error
                )
                if self.on_retry is not None:
                    self.on_retry()
                await self.sleep(delay)
                attempt += 1
                continue

            if attempt > 1:
                logger.info("Recovered after retry", operation=operation_name, attempt=attempt)
            return result
