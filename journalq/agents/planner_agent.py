"""Planner Agent - Builds one execution plan per sub-question.

Chooses a retrieval method, fills in parameters (threshold, result cap,
time filter, filters, structured query text), assigns a fallback method
and a declared cost, and decides whether plans run in parallel.

The scheduling decision is static: it uses the declared cost model only,
never wall-clock state, so the same inputs always yield the same plan.
"""

import json
import logging
from hashlib import sha256

from journalq.exceptions import PlanValidationFailure

from .models import (
    ClassificationResult,
    ExecutionPlan,
    ExecutionStrategy,
    PerformanceBudget,
    PlanFilter,
    PlanningResult,
    PlanParameters,
    RetrievalMethod,
    Strategy,
    SubQuestion,
    SubQuestionType,
)
from .sql_templates import render_structured_query

logger = logging.getLogger(__name__)

THRESHOLD_BOUNDS = (0.1, 1.0)
MAX_RESULTS_BOUNDS = (1, 50)


def validate_parameters(similarity_threshold: float, max_results: int) -> None:
    """Raise PlanValidationFailure for out-of-range parameters."""
    low, high = THRESHOLD_BOUNDS
    if not low <= similarity_threshold <= high:
        raise PlanValidationFailure("similarity_threshold", similarity_threshold, low, high)
    low, high = MAX_RESULTS_BOUNDS
    if not low <= max_results <= high:
        raise PlanValidationFailure("max_results", max_results, low, high)


def clamp_parameters(similarity_threshold: float, max_results: int) -> tuple[float, int]:
    return (
        min(max(similarity_threshold, THRESHOLD_BOUNDS[0]), THRESHOLD_BOUNDS[1]),
        min(max(int(max_results), MAX_RESULTS_BOUNDS[0]), MAX_RESULTS_BOUNDS[1]),
    )


def make_cache_key(text: str, method: RetrievalMethod, parameters: PlanParameters) -> str:
    """Deterministic key for (sub-question text, method, parameters).

    Equal inputs give equal keys; any parameter change gives a new key.
    """
    payload = {"text": text, "method": method.value, "parameters": parameters.to_dict()}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return f"journalq:plan:{sha256(canonical.encode()).hexdigest()[:16]}"


class PlannerAgent:
    """Maps sub-questions to execution plans under a latency budget."""
    __slots__ = ("_default_threshold", "_default_max_results")

    # Declared cost model (ms), used only for the scheduling decision
    COST_MODEL_MS = {
        RetrievalMethod.VECTOR_SIMILARITY: 1500,
        RetrievalMethod.SQL_QUERY: 800,
        RetrievalMethod.HYBRID_SEARCH: 2300,
        RetrievalMethod.ENTITY_LOOKUP: 1000,
        RetrievalMethod.EMOTION_ANALYSIS: 900,
    }

    FALLBACK_METHOD = {
        RetrievalMethod.SQL_QUERY: RetrievalMethod.VECTOR_SIMILARITY,
        RetrievalMethod.HYBRID_SEARCH: RetrievalMethod.VECTOR_SIMILARITY,
        RetrievalMethod.ENTITY_LOOKUP: RetrievalMethod.VECTOR_SIMILARITY,
        RetrievalMethod.EMOTION_ANALYSIS: RetrievalMethod.VECTOR_SIMILARITY,
        RetrievalMethod.VECTOR_SIMILARITY: RetrievalMethod.RECENT_ENTRIES,
    }

    def __init__(self, default_threshold: float = 0.7, default_max_results: int = 10):
        self._default_threshold = default_threshold
        self._default_max_results = default_max_results

    @property
    def available(self) -> bool:
        return True

    def plan(
        self,
        sub_questions: tuple[SubQuestion, ...],
        classification: ClassificationResult,
        budget: PerformanceBudget,
    ) -> PlanningResult:
        """Build plans for all sub-questions.

        Args:
            sub_questions: Decomposer output, in priority order.
            classification: Classifier output.
            budget: Caller's latency budget.

        Returns:
            PlanningResult with plans in the same order as sub_questions.
        """
        plans = tuple(self.plan_one(sq, classification) for sq in sub_questions)
        total = sum(p.estimated_latency_ms for p in plans)
        max_parallel = max(1, budget.max_parallel)

        if total > budget.max_latency_ms and len(plans) > 1:
            strategy = ExecutionStrategy.PARALLEL
            concurrency = min(max_parallel, len(plans))
        else:
            strategy = ExecutionStrategy.SEQUENTIAL
            concurrency = 1

        logger.debug(
            f"Planned {len(plans)} plans ({total}ms declared, budget {budget.max_latency_ms}ms): "
            f"{strategy.value} x{concurrency}"
        )
        return PlanningResult(
            plans=plans,
            execution_strategy=strategy,
            max_concurrency=concurrency,
            total_estimated_ms=total,
        )

    def plan_one(self, sub_question: SubQuestion, classification: ClassificationResult) -> ExecutionPlan:
        method = self.select_method(sub_question, classification)

        threshold, max_results = self._default_threshold, self._default_max_results
        try:
            validate_parameters(threshold, max_results)
        except PlanValidationFailure as e:
            logger.debug(f"Clamping plan parameters: {e}")
            threshold, max_results = clamp_parameters(threshold, max_results)

        parameters = PlanParameters(
            similarity_threshold=threshold,
            max_results=max_results,
            time_filter=classification.time_range,
            filters=self._filters(method, sub_question, classification),
        )
        query_text = render_structured_query(method, sub_question, parameters)
        if query_text:
            parameters = PlanParameters(
                similarity_threshold=parameters.similarity_threshold,
                max_results=parameters.max_results,
                time_filter=parameters.time_filter,
                filters=parameters.filters,
                query_text=query_text,
            )

        return ExecutionPlan(
            sub_question_id=sub_question.id,
            sub_question_text=sub_question.text,
            priority=sub_question.priority,
            method=method,
            parameters=parameters,
            fallback_method=self.FALLBACK_METHOD[method],
            estimated_latency_ms=self.COST_MODEL_MS[method],
            cache_key=make_cache_key(sub_question.text, method, parameters),
        )

    def select_method(self, sub_question: SubQuestion, classification: ClassificationResult) -> RetrievalMethod:
        """sql -> sql_query, hybrid -> hybrid_search, else vector_similarity, with upgrades."""
        if sub_question.type == SubQuestionType.EMOTIONAL and self._target_emotions(sub_question, classification):
            return RetrievalMethod.EMOTION_ANALYSIS

        match sub_question.suggested_strategy:
            case Strategy.SQL:
                return RetrievalMethod.SQL_QUERY
            case Strategy.HYBRID:
                method = RetrievalMethod.HYBRID_SEARCH
            case _:
                method = RetrievalMethod.VECTOR_SIMILARITY

        if (
            sub_question.type == SubQuestionType.SPECIFIC
            and (classification.person_focused or classification.entity_focused)
            and classification.entities
        ):
            return RetrievalMethod.ENTITY_LOOKUP
        return method

    def _target_emotions(self, sub_question: SubQuestion, classification: ClassificationResult) -> tuple[str, ...]:
        return sub_question.target_emotions or classification.emotions

    def _filters(
        self,
        method: RetrievalMethod,
        sub_question: SubQuestion,
        classification: ClassificationResult,
    ) -> tuple[PlanFilter, ...]:
        filters: list[PlanFilter] = []
        if method == RetrievalMethod.EMOTION_ANALYSIS:
            filters.extend(PlanFilter("emotion", e) for e in self._target_emotions(sub_question, classification))
        elif method == RetrievalMethod.ENTITY_LOOKUP:
            filters.extend(PlanFilter("entity", e) for e in classification.entities)
        else:
            for target in sub_question.targets:
                kind = "theme" if target in classification.themes else "phrase"
                filters.append(PlanFilter(kind, target))
        return tuple(dict.fromkeys(filters))
