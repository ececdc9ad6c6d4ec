"""Query Pipeline Models.

Data structures for the five-stage journal query pipeline:
classifier -> decomposer -> planner -> execution engine -> consolidator.

Every value created for a run is immutable; stages derive new objects
instead of editing earlier ones, so a run can be replayed from its inputs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


class Complexity(str, Enum):
    """How hard a question is to answer."""
    SIMPLE = "simple"
    COMPLEX = "complex"
    MULTI_PART = "multi_part"


class TimeRangeType(str, Enum):
    """Closed vocabulary of detectable time ranges."""
    TODAY = "today"
    THIS_WEEK = "this_week"
    LAST_WEEK = "last_week"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    SPECIFIC_MONTH = "specific_month"
    EXPLICIT_RANGE = "explicit_range"


class SubQuestionType(str, Enum):
    """Facet a sub-question answers."""
    TEMPORAL = "temporal"
    EMOTIONAL = "emotional"
    CAUSAL = "causal"
    COMPARATIVE = "comparative"
    PATTERN = "pattern"
    SPECIFIC = "specific"


class Strategy(str, Enum):
    """Retrieval strategy suggested by the decomposer."""
    VECTOR = "vector"
    SQL = "sql"
    HYBRID = "hybrid"


class RetrievalMethod(str, Enum):
    """Concrete retrieval methods the execution engine can run."""
    VECTOR_SIMILARITY = "vector_similarity"
    SQL_QUERY = "sql_query"
    HYBRID_SEARCH = "hybrid_search"
    ENTITY_LOOKUP = "entity_lookup"
    EMOTION_ANALYSIS = "emotion_analysis"
    RECENT_ENTRIES = "recent_entries"   # terminal listing only, never planned

    @property
    def is_structured(self) -> bool:
        return self in (
            RetrievalMethod.SQL_QUERY,
            RetrievalMethod.ENTITY_LOOKUP,
            RetrievalMethod.EMOTION_ANALYSIS,
        )


class ExecutionStrategy(str, Enum):
    """How plans are scheduled."""
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class AttemptOutcome(str, Enum):
    """Outcome of one fallback ladder step."""
    RECORDS = "records"
    EMPTY = "empty"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def failed(self) -> bool:
        return self in (AttemptOutcome.FAILED, AttemptOutcome.TIMEOUT)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# ============================================================================
# Input
# ============================================================================

@dataclass(slots=True, frozen=True)
class Turn:
    """One prior conversation turn."""
    role: str   # "user" or "assistant"
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "text": self.text}


@dataclass(slots=True, frozen=True)
class Question:
    """Immutable user input for one orchestration run.

    Attributes:
        text: Raw question text.
        thread_id: Opaque conversation identifier.
        owner_id: Identity whose journal is searched.
        history: Prior turns, oldest first.
        now: Caller's current instant; relative dates resolve against this.
        timezone: Caller's IANA timezone name.
    """
    text: str
    thread_id: str = ""
    owner_id: str = ""
    history: tuple[Turn, ...] = ()
    now: datetime | None = None
    timezone: str = "UTC"

    @property
    def normalized_text(self) -> str:
        return " ".join(self.text.lower().split())

    def current_time(self) -> datetime:
        """Caller-supplied instant, defaulting to the current UTC time."""
        if self.now is None:
            return datetime.now(timezone.utc)
        if self.now.tzinfo is None:
            return self.now.replace(tzinfo=timezone.utc)
        return self.now

    def recent_history(self, limit: int) -> tuple[Turn, ...]:
        if limit <= 0:
            return ()
        return self.history[-limit:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "thread_id": self.thread_id,
            "owner_id": self.owner_id,
            "history_length": len(self.history),
            "now": _iso(self.now),
            "timezone": self.timezone,
        }


@dataclass(slots=True, frozen=True)
class PerformanceBudget:
    """Caller-supplied latency budget."""
    max_latency_ms: int = 8000
    max_parallel: int = 3
    deadline_ms: int | None = None

    @property
    def run_deadline_ms(self) -> int:
        return self.deadline_ms if self.deadline_ms is not None else self.max_latency_ms


# ============================================================================
# Classification
# ============================================================================

@dataclass(slots=True, frozen=True)
class TimeRange:
    """Concrete half-open interval [start, end) in UTC."""
    type: TimeRangeType
    start: datetime
    end: datetime
    label: str = ""

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def covers(self, other: "TimeRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def widened(self, factor: int = 2) -> "TimeRange":
        """Same end, start pushed back so the duration is multiplied by factor."""
        return TimeRange(
            type=TimeRangeType.EXPLICIT_RANGE,
            start=self.start - self.duration * (factor - 1),
            end=self.end,
            label=f"{self.label} (widened)" if self.label else "widened",
        )

    def union(self, other: "TimeRange") -> "TimeRange":
        """Smallest range covering both."""
        return TimeRange(
            type=TimeRangeType.EXPLICIT_RANGE,
            start=min(self.start, other.start),
            end=max(self.end, other.end),
            label=other.label or self.label,
        )

    @classmethod
    def trailing(cls, days: int, now: datetime) -> "TimeRange":
        """The last `days` days up to and including now."""
        end = now + timedelta(microseconds=1)
        return cls(
            type=TimeRangeType.EXPLICIT_RANGE,
            start=now - timedelta(days=days),
            end=end,
            label=f"last {days} days",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeRange":
        return cls(
            type=TimeRangeType(data["type"]),
            start=_parse_iso(data["start"]),
            end=_parse_iso(data["end"]),
            label=data.get("label", ""),
        )


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    """Derived, read-only facts about a Question.

    Attributes:
        complexity: simple, complex or multi_part.
        time_range: Resolved time range, or None.
        emotion_focused .. mental_health_sensitive: topical flags.
        quantitative: Question asks for counts, averages or frequencies.
        unrelated_to_corpus: Question cannot be answered from the journal.
        emotions: Canonical emotion names mentioned.
        themes: Domain categories mentioned (sleep, work, ...).
        entities: Person, place or event words mentioned.
        rule_version: Version of the rule tables that produced this result.
        signals: Debug info about which rules fired.
    """
    complexity: Complexity = Complexity.SIMPLE
    time_range: TimeRange | None = None
    emotion_focused: bool = False
    theme_focused: bool = False
    comparison: bool = False
    person_focused: bool = False
    entity_focused: bool = False
    mental_health_sensitive: bool = False
    quantitative: bool = False
    unrelated_to_corpus: bool = False
    emotions: tuple[str, ...] = ()
    themes: tuple[str, ...] = ()
    entities: tuple[str, ...] = ()
    rule_version: str = ""
    signals: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity.value,
            "time_range": self.time_range.to_dict() if self.time_range else None,
            "flags": {
                "emotion_focused": self.emotion_focused,
                "theme_focused": self.theme_focused,
                "comparison": self.comparison,
                "person_focused": self.person_focused,
                "entity_focused": self.entity_focused,
                "mental_health_sensitive": self.mental_health_sensitive,
                "quantitative": self.quantitative,
                "unrelated_to_corpus": self.unrelated_to_corpus,
            },
            "emotions": list(self.emotions),
            "themes": list(self.themes),
            "entities": list(self.entities),
            "rule_version": self.rule_version,
        }


# ============================================================================
# Decomposition and planning
# ============================================================================

@dataclass(slots=True, frozen=True)
class SubQuestion:
    """One independently retrievable facet of the question.

    Attributes:
        id: Stable id within the run (sq1, sq2, ...), in priority order.
        text: Sub-question text.
        type: Facet type.
        priority: Lower is more important.
        suggested_strategy: vector, sql or hybrid.
        targets: Topics or quoted phrases the sub-question is about.
        target_emotions: Canonical emotion names it asks about.
    """
    id: str
    text: str
    type: SubQuestionType
    priority: int
    suggested_strategy: Strategy
    targets: tuple[str, ...] = ()
    target_emotions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.type.value,
            "priority": self.priority,
            "suggested_strategy": self.suggested_strategy.value,
            "targets": list(self.targets),
            "target_emotions": list(self.target_emotions),
        }


@dataclass(slots=True, frozen=True)
class PlanFilter:
    """Filter applied to a retrieval, e.g. emotion=anxiety."""
    kind: str   # emotion, entity, theme, phrase
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "value": self.value}


@dataclass(slots=True, frozen=True)
class PlanParameters:
    """Retrieval parameters for one plan."""
    similarity_threshold: float = 0.7
    max_results: int = 10
    time_filter: TimeRange | None = None
    filters: tuple[PlanFilter, ...] = ()
    query_text: str | None = None   # structured query, for structured and hybrid methods

    def to_dict(self) -> dict[str, Any]:
        return {
            "similarity_threshold": self.similarity_threshold,
            "max_results": self.max_results,
            "time_filter": self.time_filter.to_dict() if self.time_filter else None,
            "filters": [f.to_dict() for f in self.filters],
            "query_text": self.query_text,
        }


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    """How one sub-question will be retrieved."""
    sub_question_id: str
    sub_question_text: str
    priority: int
    method: RetrievalMethod
    parameters: PlanParameters
    fallback_method: RetrievalMethod
    estimated_latency_ms: int
    cache_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sub_question_id": self.sub_question_id,
            "sub_question_text": self.sub_question_text,
            "priority": self.priority,
            "method": self.method.value,
            "parameters": self.parameters.to_dict(),
            "fallback_method": self.fallback_method.value,
            "estimated_latency_ms": self.estimated_latency_ms,
            "cache_key": self.cache_key,
        }


@dataclass(slots=True, frozen=True)
class PlanningResult:
    """All plans for a run plus the scheduling decision."""
    plans: tuple[ExecutionPlan, ...] = ()
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL
    max_concurrency: int = 1
    total_estimated_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "plans": [p.to_dict() for p in self.plans],
            "execution_strategy": self.execution_strategy.value,
            "max_concurrency": self.max_concurrency,
            "total_estimated_ms": self.total_estimated_ms,
        }


# ============================================================================
# Execution
# ============================================================================

@dataclass(slots=True, frozen=True)
class RetrievedRecord:
    """A journal record or structured row returned by the store.

    Structured aggregate rows (counts, averages) have no id.
    """
    id: str | None
    content: str
    relevance: float
    created_at: datetime | None = None
    kind: str = "semantic"   # semantic or structured
    row: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "relevance": self.relevance,
            "created_at": _iso(self.created_at),
            "kind": self.kind,
            "row": self.row,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetrievedRecord":
        return cls(
            id=data.get("id"),
            content=data.get("content", ""),
            relevance=float(data.get("relevance", 0.0)),
            created_at=_parse_iso(data.get("created_at")),
            kind=data.get("kind", "semantic"),
            row=data.get("row"),
        )


@dataclass(slots=True, frozen=True)
class LadderAttempt:
    """Record of one fallback ladder step."""
    step: int
    method: RetrievalMethod
    outcome: AttemptOutcome
    record_count: int = 0
    threshold: float | None = None
    time_filter: TimeRange | None = None
    error: str | None = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "method": self.method.value,
            "outcome": self.outcome.value,
            "record_count": self.record_count,
            "threshold": self.threshold,
            "time_filter": self.time_filter.to_dict() if self.time_filter else None,
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of running one plan.

    Records and error are never both populated.
    """
    sub_question_id: str
    records: tuple[RetrievedRecord, ...] = ()
    method_used: RetrievalMethod = RetrievalMethod.VECTOR_SIMILARITY
    fallback_used: bool = False
    error: str | None = None
    attempts: tuple[LadderAttempt, ...] = ()
    cached: bool = False

    def __post_init__(self):
        if self.records and self.error is not None:
            raise ValueError("ExecutionResult cannot carry both records and an error")

    def to_dict(self, include_records: bool = True) -> dict[str, Any]:
        result = {
            "sub_question_id": self.sub_question_id,
            "record_count": len(self.records),
            "method_used": self.method_used.value,
            "fallback_used": self.fallback_used,
            "error": self.error,
            "attempts": [a.to_dict() for a in self.attempts],
            "cached": self.cached,
        }
        if include_records:
            result["records"] = [r.to_dict() for r in self.records]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionResult":
        """Rebuild from to_dict output (attempts are not restored)."""
        return cls(
            sub_question_id=data["sub_question_id"],
            records=tuple(RetrievedRecord.from_dict(r) for r in data.get("records", [])),
            method_used=RetrievalMethod(data["method_used"]),
            fallback_used=bool(data.get("fallback_used", False)),
            error=data.get("error"),
        )


# ============================================================================
# Pipeline Dataclasses
# ============================================================================

@dataclass(slots=True)
class PipelineStage:
    """Record of a single pipeline stage execution.

    Attributes:
        agent: Stage name (classifier, decomposer, ...).
        output: Output data from the stage.
        time_ms: Execution time in milliseconds.
        success: Whether the stage completed successfully.
        error: Error message if failed.
    """
    agent: str
    output: dict[str, Any]
    time_ms: int
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "output": self.output,
            "time_ms": self.time_ms,
            "success": self.success,
            "error": self.error,
        }


@dataclass(slots=True)
class PipelineTrace:
    """Trace of one run, filled in as stages complete."""
    stages: list[PipelineStage] = field(default_factory=list)
    total_time_ms: int = 0
    success: bool = True

    def add_stage(
        self,
        agent: str,
        output: dict[str, Any],
        time_ms: int,
        success: bool = True,
        error: str | None = None,
    ) -> PipelineStage:
        stage = PipelineStage(agent=agent, output=output, time_ms=time_ms, success=success, error=error)
        self.stages.append(stage)
        return stage

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [s.to_dict() for s in self.stages],
            "total_time_ms": self.total_time_ms,
            "success": self.success,
        }


@dataclass(slots=True, frozen=True)
class ConsolidatedAnswer:
    """Final answer for one run.

    Attributes:
        status_summary: Exactly five words.
        answer_text: User-facing answer, never empty.
        source_record_refs: Ids of the records the answer drew on.
        degraded: True when any fallback or recovery path was used.
        metadata: Truncation notes, parse strategy, provider details.
        trace: Pipeline trace when tracing was enabled.
    """
    status_summary: str
    answer_text: str
    source_record_refs: tuple[str, ...] = ()
    degraded: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    trace: PipelineTrace | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "status_summary": self.status_summary,
            "answer_text": self.answer_text,
            "source_record_refs": list(self.source_record_refs),
            "degraded": self.degraded,
            "metadata": self.metadata,
        }
        if self.trace:
            result["trace"] = self.trace.to_dict()
        return result
