"""Circuit breaker in front of the embedding service.

After ``failure_threshold`` consecutive failures the breaker opens and calls
fail fast with ``CircuitBreakerError``. Once ``recovery_timeout`` seconds have
passed, one probe call is let through (half-open): success closes the
breaker, failure opens it again.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

import structlog

from libs.common.errors import SearchError

logger = structlog.get_logger("circuit_breaker")

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(SearchError):
    """Raised instead of calling through an open breaker."""
    pass


class CircuitBreaker:

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: ExceptionTypes = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` unless the breaker is open.

        Only ``expected_exception`` counts as a failure; other exceptions
        propagate without touching the breaker state.
        """
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            if self.state != CircuitBreakerState.OPEN:
                return
            if not self._recovery_due():
                logger.warning("Rejecting call, breaker open", breaker=self.name)
                raise CircuitBreakerError(f"Circuit breaker {self.name} is open", context=self.get_stats())
            self._transition(CircuitBreakerState.HALF_OPEN)

    def _recovery_due(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self.clock() - self.last_failure_time >= self.recovery_timeout

    async def _record_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            if self.state == CircuitBreakerState.HALF_OPEN:
                self._transition(CircuitBreakerState.CLOSED)

    async def _record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()
            probe_failed = self.state == CircuitBreakerState.HALF_OPEN
            if probe_failed or self.failure_count >= self.failure_threshold:
                self._transition(CircuitBreakerState.OPEN)

    def _transition(self, state: CircuitBreakerState) -> None:
        if state == self.state:
            return
        logger.info(
            "Circuit breaker state changed",
            breaker=self.name,
            from_state=self.state.value,
            to_state=state.value,
            failure_count=self.failure_count
        )
        self.state = state

    def get_state(self) -> CircuitBreakerState:
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "recovery_timeout": self.recovery_timeout,
        }
