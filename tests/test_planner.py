"""Tests for PlannerAgent - method selection, parameters and scheduling."""

import pytest

from journalq.agents.classifier_agent import ClassifierAgent
from journalq.agents.decomposer_agent import DecomposerAgent
from journalq.agents.models import (
    ClassificationResult,
    Complexity,
    ExecutionStrategy,
    PerformanceBudget,
    PlanFilter,
    PlanParameters,
    RetrievalMethod,
    Strategy,
    SubQuestion,
    SubQuestionType,
    TimeRange,
    TimeRangeType,
)
from journalq.agents.planner_agent import (
    PlannerAgent,
    clamp_parameters,
    make_cache_key,
    validate_parameters,
)
from journalq.agents.sql_guard import check_structured_query
from journalq.exceptions import PlanValidationFailure

from conftest import NOW, make_question


def sub_question(
    strategy=Strategy.VECTOR,
    kind=SubQuestionType.SPECIFIC,
    sq_id="sq1",
    priority=1,
    text="How have I been sleeping?",
    targets=("sleep",),
    target_emotions=(),
):
    return SubQuestion(
        id=sq_id,
        text=text,
        type=kind,
        priority=priority,
        suggested_strategy=strategy,
        targets=targets,
        target_emotions=target_emotions,
    )


LAST_WEEK = TimeRange(TimeRangeType.LAST_WEEK, NOW.replace(day=9, hour=0), NOW.replace(day=16, hour=0), "last week")


@pytest.fixture
def planner():
    return PlannerAgent()


class TestMethodSelection:
    """Strategy -> method mapping and upgrades."""

    def test_vector(self, planner):
        plan = planner.plan_one(sub_question(), ClassificationResult(themes=("sleep",)))
        assert plan.method == RetrievalMethod.VECTOR_SIMILARITY
        assert plan.fallback_method == RetrievalMethod.RECENT_ENTRIES
        assert plan.parameters.query_text is None

    def test_sql(self, planner):
        plan = planner.plan_one(
            sub_question(Strategy.SQL, text="How many times did I mention sleep?"),
            ClassificationResult(themes=("sleep",), quantitative=True),
        )
        assert plan.method == RetrievalMethod.SQL_QUERY
        assert plan.fallback_method == RetrievalMethod.VECTOR_SIMILARITY
        assert "COUNT(*)" in plan.parameters.query_text

    def test_hybrid(self, planner):
        plan = planner.plan_one(sub_question(Strategy.HYBRID), ClassificationResult(themes=("sleep",)))
        assert plan.method == RetrievalMethod.HYBRID_SEARCH
        assert "ILIKE '%sleep%'" in plan.parameters.query_text

    def test_emotional_upgrades_to_emotion_analysis(self, planner):
        plan = planner.plan_one(
            sub_question(Strategy.SQL, kind=SubQuestionType.EMOTIONAL, target_emotions=("anxiety",)),
            ClassificationResult(emotions=("anxiety",)),
        )
        assert plan.method == RetrievalMethod.EMOTION_ANALYSIS
        assert PlanFilter("emotion", "anxiety") in plan.parameters.filters
        assert "jsonb_each(entries.emotions)" in plan.parameters.query_text

    def test_specific_with_entity_upgrades_to_entity_lookup(self, planner):
        plan = planner.plan_one(
            sub_question(Strategy.HYBRID, text="What did I write about my mom?", targets=()),
            ClassificationResult(person_focused=True, entities=("mom",)),
        )
        assert plan.method == RetrievalMethod.ENTITY_LOOKUP
        assert plan.parameters.filters == (PlanFilter("entity", "mom"),)

    def test_entity_upgrade_needs_a_resolvable_entity(self, planner):
        plan = planner.plan_one(
            sub_question(Strategy.HYBRID, text="Who did I talk to?", targets=()),
            ClassificationResult(person_focused=True, entities=()),
        )
        assert plan.method == RetrievalMethod.HYBRID_SEARCH


class TestParameters:
    """Defaults, clamping, time filter and cache keys."""

    def test_defaults(self, planner):
        params = planner.plan_one(sub_question(), ClassificationResult()).parameters
        assert params.similarity_threshold == 0.7
        assert params.max_results == 10

    def test_time_filter_copied_from_classification(self, planner):
        plan = planner.plan_one(sub_question(), ClassificationResult(time_range=LAST_WEEK))
        assert plan.parameters.time_filter == LAST_WEEK

    def test_out_of_range_defaults_are_clamped(self):
        params = PlannerAgent(default_threshold=5.0, default_max_results=500).plan_one(
            sub_question(), ClassificationResult()
        ).parameters
        assert (params.similarity_threshold, params.max_results) == (1.0, 50)

        params = PlannerAgent(default_threshold=0.0, default_max_results=0).plan_one(
            sub_question(), ClassificationResult()
        ).parameters
        assert (params.similarity_threshold, params.max_results) == (0.1, 1)

    def test_validate_parameters_raises(self):
        with pytest.raises(PlanValidationFailure) as exc_info:
            validate_parameters(1.5, 10)
        assert exc_info.value.name == "similarity_threshold"
        with pytest.raises(PlanValidationFailure):
            validate_parameters(0.5, 51)
        validate_parameters(0.1, 1)
        validate_parameters(1.0, 50)

    def test_clamp_parameters(self):
        assert clamp_parameters(-1, 100) == (0.1, 50)

    def test_cache_key_is_deterministic(self):
        params = PlanParameters(similarity_threshold=0.7, max_results=10)
        key = make_cache_key("q", RetrievalMethod.VECTOR_SIMILARITY, params)
        assert key == make_cache_key("q", RetrievalMethod.VECTOR_SIMILARITY, params)
        assert key != make_cache_key("q", RetrievalMethod.VECTOR_SIMILARITY, PlanParameters(0.6, 10))
        assert key != make_cache_key("q", RetrievalMethod.SQL_QUERY, params)
        assert key != make_cache_key("other", RetrievalMethod.VECTOR_SIMILARITY, params)

    def test_time_filter_changes_cache_key(self, planner):
        a = planner.plan_one(sub_question(), ClassificationResult())
        b = planner.plan_one(sub_question(), ClassificationResult(time_range=LAST_WEEK))
        assert a.cache_key != b.cache_key

    @pytest.mark.parametrize("strategy,kind,classification", [
        (Strategy.SQL, SubQuestionType.SPECIFIC, ClassificationResult(themes=("sleep",), time_range=LAST_WEEK)),
        (Strategy.SQL, SubQuestionType.PATTERN, ClassificationResult(quantitative=True)),
        (Strategy.HYBRID, SubQuestionType.COMPARATIVE, ClassificationResult(time_range=LAST_WEEK)),
        (Strategy.SQL, SubQuestionType.EMOTIONAL, ClassificationResult(emotions=("joy", "calm"))),
        (Strategy.HYBRID, SubQuestionType.SPECIFIC, ClassificationResult(entity_focused=True, entities=("gym",))),
    ])
    def test_rendered_queries_pass_the_checklist(self, planner, strategy, kind, classification):
        plan = planner.plan_one(sub_question(strategy, kind=kind), classification)
        assert plan.parameters.query_text
        result = check_structured_query(plan.parameters.query_text)
        assert result.valid, result.issues
        assert "auth.uid()" in plan.parameters.query_text


class TestScheduling:
    """Parallel when the declared cost exceeds the budget."""

    def test_over_budget_runs_parallel(self, planner):
        subs = tuple(sub_question(Strategy.HYBRID, sq_id=f"sq{i}", text=f"q{i}") for i in range(1, 5))
        result = planner.plan(subs, ClassificationResult(), PerformanceBudget(max_latency_ms=8000, max_parallel=3))
        assert result.total_estimated_ms == 4 * PlannerAgent.COST_MODEL_MS[RetrievalMethod.HYBRID_SEARCH]
        assert result.execution_strategy == ExecutionStrategy.PARALLEL
        assert result.max_concurrency == 3

    def test_within_budget_runs_sequential(self, planner):
        subs = tuple(sub_question(sq_id=f"sq{i}", text=f"q{i}") for i in range(1, 3))
        result = planner.plan(subs, ClassificationResult(), PerformanceBudget(max_latency_ms=8000))
        assert result.execution_strategy == ExecutionStrategy.SEQUENTIAL
        assert result.max_concurrency == 1

    def test_single_plan_never_parallel(self, planner):
        result = planner.plan((sub_question(),), ClassificationResult(), PerformanceBudget(max_latency_ms=100))
        assert result.execution_strategy == ExecutionStrategy.SEQUENTIAL

    def test_concurrency_limited_by_plan_count(self, planner):
        subs = tuple(sub_question(Strategy.HYBRID, sq_id=f"sq{i}", text=f"q{i}") for i in range(1, 3))
        result = planner.plan(subs, ClassificationResult(), PerformanceBudget(max_latency_ms=1000, max_parallel=8))
        assert result.max_concurrency == 2

    def test_plans_keep_sub_question_order(self, planner):
        subs = (
            sub_question(sq_id="sq1", text="first", priority=1),
            sub_question(Strategy.SQL, sq_id="sq2", text="second", priority=2),
        )
        result = planner.plan(subs, ClassificationResult(), PerformanceBudget())
        assert [p.sub_question_id for p in result.plans] == ["sq1", "sq2"]
        assert [p.priority for p in result.plans] == [1, 2]


class TestQuestionToPlan:
    """Classifier, decomposer and planner chained on one question."""

    def test_counting_question_with_last_month(self, planner):
        question = make_question("How many times did I mention work last month?")
        classification = ClassifierAgent().classify(question)
        subs = DecomposerAgent().decompose(question, classification)

        result = planner.plan(subs, classification, PerformanceBudget())

        assert classification.complexity == Complexity.COMPLEX
        assert classification.time_range.type == TimeRangeType.LAST_MONTH
        assert classification.quantitative
        primary = result.plans[0]
        assert primary.method == RetrievalMethod.SQL_QUERY
        assert primary.parameters.time_filter.type == TimeRangeType.LAST_MONTH
        assert check_structured_query(primary.parameters.query_text).valid
