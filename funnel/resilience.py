from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from funnel.errors import CircuitOpenError, IntegrationError, OperationTimeout
from funnel.models.enums import CircuitState

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


def _discard_result(task: asyncio.Future) -> None:
    # late results and errors of a timed-out call are dropped
    if not task.cancelled():
        task.exception()


async def with_timeout(operation: Awaitable[T], timeout: float, label: str) -> T:
    # the operation keeps running after the deadline; only the caller stops waiting
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        if task.done() and not task.cancelled():
            # the operation itself raised a TimeoutError
            raise
        task.add_done_callback(_discard_result)
        logger.warning("operation_timeout", label=label, timeout=timeout)
        raise OperationTimeout(label, timeout) from None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, IntegrationError) and not exc.recoverable:
        return False
    return isinstance(exc, Exception)


def _log_retry(label: str):
    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "retrying_operation",
            label=label,
            attempt=retry_state.attempt_number,
            delay=round(delay, 3),
            error=str(exc),
            error_type=type(exc).__name__,
        )

    return _before_sleep


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    # retry n waits base_delay * 2 ** (n - 1) plus up to 10% jitter
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2) + wait_random(0, base_delay * 0.1),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry(label),
        reraise=True,
        **kwargs,
    )
    return await retrying(operation)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self.state = CircuitState.closed
        self.failure_count = 0
        self.success_count = 0
        self.total_calls = 0
        self.last_failure_time: float | None = None

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.state is CircuitState.open:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.reset_timeout:
                raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
            self.state = CircuitState.half_open
            logger.info("circuit_breaker_half_open", breaker=self.name)

        self.total_calls += 1
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        self.success_count += 1
        if self.state is CircuitState.half_open:
            self.state = CircuitState.closed
            logger.info("circuit_breaker_closed", breaker=self.name)

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state is CircuitState.half_open or self.failure_count >= self.failure_threshold:
            if self.state is not CircuitState.open:
                logger.warning(
                    "circuit_breaker_opened",
                    breaker=self.name,
                    failure_count=self.failure_count,
                )
            self.state = CircuitState.open

    def reset(self) -> None:
        self.state = CircuitState.closed
        self.failure_count = 0
        self.last_failure_time = None

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "last_failure_time": self.last_failure_time,
        }


class CircuitBreakerRegistry:
    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 60.0, clock: Clock = time.monotonic):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.failure_threshold, self.reset_timeout, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def statuses(self) -> dict[str, dict[str, Any]]:
        return {name: b.status() for name, b in self._breakers.items()}
