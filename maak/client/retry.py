from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from maak.client.errors import (
    ApiError,
    AuthenticationFailed,
    CircuitOpenError,
    RequestRejected,
)
from maak.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Hard ceiling on attempts regardless of configuration
MAX_RETRIES_HARD_CAP = 10


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.retryable


def _auth_retry_condition(exc: BaseException) -> bool:
    if isinstance(exc, AuthenticationFailed):
        return False
    if isinstance(exc, RequestRejected) and exc.status_code == 403:
        return False
    return _is_retryable(exc)


def _data_retry_condition(exc: BaseException) -> bool:
    if isinstance(exc, RequestRejected) and exc.status_code == 404:
        return False
    return _is_retryable(exc)


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retry_condition: Callable[[BaseException], bool] = field(default=_is_retryable)
    on_retry: Optional[Callable[[int, BaseException], None]] = None

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)


DEFAULT_RETRY_OPTIONS = RetryOptions()
AUTH_RETRY_OPTIONS = RetryOptions(
    max_retries=2, base_delay=0.5, backoff_factor=1.5, retry_condition=_auth_retry_condition
)
DATA_RETRY_OPTIONS = RetryOptions(
    max_retries=3, base_delay=1.0, backoff_factor=2.0, retry_condition=_data_retry_condition
)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions = DEFAULT_RETRY_OPTIONS,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with exponential backoff for transient failures.

    Only errors accepted by ``options.retry_condition`` are retried; anything
    else propagates on the first failure.
    """
    max_retries = min(max(options.max_retries, 0), MAX_RETRIES_HARD_CAP)
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= max_retries or not options.retry_condition(exc):
                raise
            if options.on_retry is not None:
                options.on_retry(attempt + 1, exc)
            delay = options.delay_for(attempt)
            logger.info(
                "retry_scheduled",
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            await sleep(delay)
            attempt += 1


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stop calling a failing endpoint until ``recovery_timeout`` has passed.

    Only errors accepted by ``failure_condition`` count toward the threshold,
    so auth failures and other 4xx answers never open the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "api",
        failure_condition: Callable[[BaseException], bool] = _is_retryable,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.name = name
        self.failure_condition = failure_condition
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitState.CLOSED

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.state == CircuitState.OPEN:
            if self.clock() - self.last_failure_time > self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", circuit=self.name)
            else:
                raise CircuitOpenError(
                    "Circuit breaker is open - service temporarily unavailable"
                )
        try:
            result = await operation()
        except Exception as exc:
            if self.failure_condition(exc):
                self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("circuit_closed", circuit=self.name)
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(
                    "circuit_opened", circuit=self.name, failures=self.failure_count
                )
            self.state = CircuitState.OPEN

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitState.CLOSED


def api_circuit_breaker(**overrides) -> CircuitBreaker:
    """Breaker tuned for the MÄÄK API: 3 failures, 15 second cool-down."""
    return CircuitBreaker(**{"failure_threshold": 3, "recovery_timeout": 15.0, **overrides})


__all__ = [
    "AUTH_RETRY_OPTIONS",
    "DATA_RETRY_OPTIONS",
    "DEFAULT_RETRY_OPTIONS",
    "CircuitBreaker",
    "CircuitState",
    "RetryOptions",
    "api_circuit_breaker",
    "with_retry",
]
