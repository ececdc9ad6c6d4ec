"""Resilience utilities for calls to external collaborators.

Provides a circuit breaker, retry with backoff, and the per-run deadline
that bounds every embedding, retrieval and completion call.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreaker:
    """Circuit breaker for a single external provider.

    Usage:
        breaker = CircuitBreaker(name="openai", threshold=3, reset_timeout=60)

        if breaker.is_available():
            try:
                result = await call_provider()
                breaker.record_success()
            except Exception:
                breaker.record_failure()
                raise
    """
    name: str
    threshold: int = 3
    reset_timeout: int = 60  # seconds

    _failures: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _success_count_half_open: int = field(default=0, init=False)

    def is_available(self) -> bool:
        """Check if circuit allows calls."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count_half_open = 0
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                return True
            return False

        return True

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count_half_open += 1
            # Two good calls close the circuit
            if self._success_count_half_open >= 2:
                self._state = CircuitState.CLOSED
                self._failures = 0
                logger.info(f"Circuit '{self.name}' CLOSED after recovery")
        elif self._failures > 0:
            self._failures -= 1

    def record_failure(self) -> None:
        """Record a failed call."""
        self._failures += 1
        self._last_failure_time = time.monotonic()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(f"Circuit '{self.name}' back to OPEN after failed recovery")
        elif self._failures >= self.threshold and self._state != CircuitState.OPEN:
            self._state = CircuitState.OPEN
            logger.warning(f"Circuit '{self.name}' OPENED after {self._failures} failures")

    def get_state(self) -> dict[str, Any]:
        """Get circuit state for the health endpoint."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "threshold": self.threshold,
        }


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 2,
    backoff_base: float = 0.5,
    retryable_exceptions: tuple = (ConnectionError, TimeoutError, asyncio.TimeoutError),
    **kwargs,
) -> T:
    """Retry an async function with linear backoff.

    Args:
        func: Async function to retry.
        max_retries: Maximum retry attempts after the first call.
        backoff_base: Delay in seconds, multiplied by the attempt number.
        retryable_exceptions: Exceptions that trigger a retry.

    Returns:
        Result from the first successful call.

    Raises:
        The last exception once retries are exhausted.
    """
    last_exception = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            last_exception = e
            if attempt < max_retries:
                delay = backoff_base * (attempt + 1)
                logger.warning(
                    f"Retry {attempt + 1}/{max_retries} for {func.__name__} "
                    f"after {type(e).__name__}: {e}. Waiting {delay}s"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"All {max_retries} retries exhausted for {func.__name__}: {e}")

    raise last_exception


@dataclass(slots=True)
class Deadline:
    """Wall-clock budget shared by every I/O call of one orchestration run.

    Uses the monotonic clock so system clock changes cannot extend a run.
    """
    budget_ms: int
    started: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def remaining_s(self) -> float:
        return max(0.0, self.budget_ms / 1000 - (time.monotonic() - self.started))

    def expired(self) -> bool:
        return self.remaining_s() <= 0

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await within the remaining budget.

        Raises:
            asyncio.TimeoutError: budget already spent or exceeded while waiting.
        """
        remaining = self.remaining_s()
        if remaining <= 0:
            # Close the coroutine so it never starts and never warns
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError("run deadline exhausted")
        return await asyncio.wait_for(awaitable, timeout=remaining)
