"""journalq utility modules."""

from .resilience import (
    CircuitBreaker,
    CircuitState,
    Deadline,
    retry_with_backoff,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "Deadline",
    "retry_with_backoff",
]
