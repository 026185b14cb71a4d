from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.service.errors import CircuitOpenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2**n`` capped at ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    attempt_timeout: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default
    return isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError))


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation: str = "operation",
) -> Any:
    """Run ``func`` until it succeeds, a non-retryable error occurs, or attempts run out."""
    policy = policy or DEFAULT_RETRY_POLICY
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            if policy.attempt_timeout is not None:
                return await asyncio.wait_for(func(), timeout=policy.attempt_timeout)
            return await func()
        except Exception as exc:
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "retry_scheduled",
                operation=operation,
                attempt=attempt,
                delay_ms=int(delay * 1000),
                error_type=type(exc).__name__,
            )
            await sleep(delay)
            attempt += 1


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Per-operation breaker: closed, open for ``open_seconds``, then half-open.

    State is local to the process; each replica trips independently.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        open_seconds: float = 30.0,
        half_open_trials: int = 1,
        clock: Clock = system_clock,
    ) -> None:
        self._name = name
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.half_open_trials = half_open_trials
        self._clock = clock
        self._state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state.state

    def _transition(self, target: str) -> None:
        if self._state.state != target:
            logger.warning(
                "circuit_breaker_transition",
                name=self._name,
                from_state=self._state.state,
                to_state=target,
            )
        self._state = CircuitBreakerState(
            target, 0, self._clock.monotonic() if target == "open" else None, 0
        )

    def before_call(self) -> None:
        state = self._state
        if state.state == "open":
            if (
                state.opened_at is not None
                and self._clock.monotonic() - state.opened_at >= self.open_seconds
            ):
                self._transition("half_open")
            else:
                raise CircuitOpenError(
                    f"{self._name} circuit is open", detail={"operation": self._name}
                )
        if self._state.state == "half_open":
            if self._state.half_open_trials >= self.half_open_trials:
                raise CircuitOpenError(
                    f"{self._name} circuit is half-open", detail={"operation": self._name}
                )
            self._state.half_open_trials += 1

    def record_success(self) -> None:
        if self._state.state != "closed":
            self._transition("closed")
        else:
            self._state.failures = 0

    def record_failure(self) -> None:
        if self._state.state == "half_open":
            self._transition("open")
            return
        self._state.failures += 1
        if self._state.failures >= self.failure_threshold:
            self._transition("open")

    def trip(self) -> None:
        """Open immediately, e.g. when retries are exhausted."""
        self._transition("open")
