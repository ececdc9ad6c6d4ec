"""Error taxonomy for the journal query pipeline.

Only RetrievalExhausted is fatal, and only for a single plan. Every other
error is converted into a value (a default, a clamped parameter, the next
ladder step, or a deterministic fallback answer) at the stage boundary.
"""


class JournalQueryError(Exception):
    """Base class for all pipeline errors."""


class ClassificationDefault(JournalQueryError):
    """A heuristic matched nothing usable; the caller falls back to a safe default."""


class PlanValidationFailure(JournalQueryError):
    """Plan parameters fall outside their allowed range."""

    def __init__(self, name: str, value, lower, upper):
        self.name = name
        self.value = value
        self.lower = lower
        self.upper = upper
        super().__init__(f"{name}={value!r} outside [{lower}, {upper}]")


class RetrievalAttemptFailed(JournalQueryError):
    """One step of the fallback ladder failed (error or timeout)."""

    def __init__(self, step: int, method: str, reason: str):
        self.step = step
        self.method = method
        self.reason = reason
        super().__init__(f"step {step} ({method}) failed: {reason}")


class RetrievalExhausted(JournalQueryError):
    """The terminal listing step itself failed."""


class ConsolidationParseFailure(JournalQueryError):
    """Model output could not be parsed into a status/answer payload."""


class EmbeddingUnavailable(JournalQueryError):
    """No embedding credential is configured, or the provider refused access."""


class StructuredQueryRejected(JournalQueryError):
    """Structured query text failed the structural checklist."""

    def __init__(self, issues: list[str] | tuple[str, ...]):
        self.issues = tuple(issues)
        super().__init__("; ".join(self.issues) or "structured query rejected")


class StoreQueryFailed(JournalQueryError):
    """The retrieval store reported an error for a query it accepted."""
