"""Tests for ExecutionAgent - the fallback ladder, scheduling, cache and analytics."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from journalq.agents.execution_agent import ExecutionAgent, ExecutionContext, merge_records, rows_to_records
from journalq.agents.models import (
    AttemptOutcome,
    ExecutionPlan,
    ExecutionStrategy,
    PlanningResult,
    PlanParameters,
    RetrievalMethod,
    TimeRange,
    TimeRangeType,
)
from journalq.agents.planner_agent import make_cache_key
from journalq.cache import ResultCache
from journalq.exceptions import EmbeddingUnavailable
from journalq.utils.resilience import Deadline

from conftest import NOW, OWNER, make_record

VALID_QUERY = (
    'SELECT entries.id, entries.created_at, entries."refined text" AS content\n'
    'FROM "Journal Entries" entries\n'
    "WHERE entries.user_id = auth.uid()\n"
    "LIMIT 10"
)

LAST_WEEK = TimeRange(
    TimeRangeType.LAST_WEEK,
    datetime(2026, 3, 9, tzinfo=timezone.utc),
    datetime(2026, 3, 16, tzinfo=timezone.utc),
    "last week",
)


def make_plan(
    method=RetrievalMethod.VECTOR_SIMILARITY,
    sq_id="sq1",
    priority=1,
    threshold=0.7,
    time_filter=None,
    query_text=None,
    text="How did I sleep?",
):
    params = PlanParameters(
        similarity_threshold=threshold,
        max_results=10,
        time_filter=time_filter,
        query_text=query_text,
    )
    return ExecutionPlan(
        sub_question_id=sq_id,
        sub_question_text=text,
        priority=priority,
        method=method,
        parameters=params,
        fallback_method=RetrievalMethod.RECENT_ENTRIES,
        estimated_latency_ms=150,
        cache_key=make_cache_key(text, method, params),
    )


@pytest.fixture
def store():
    store = MagicMock()
    store.available = True
    store.vector_search = AsyncMock(return_value=[])
    store.structured_query = AsyncMock(return_value=[])
    store.list_recent = AsyncMock(return_value=[])
    return store


@pytest.fixture
def ctx():
    return ExecutionContext(owner_id=OWNER, now=NOW, deadline=Deadline(5000))


def thresholds(store):
    return [c.args[1] for c in store.vector_search.call_args_list]


def windows(store):
    return [c.args[4] for c in store.vector_search.call_args_list]


class TestLadder:
    """Each ladder step and when it runs."""

    @pytest.mark.asyncio
    async def test_primary_hit(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert result.method_used == RetrievalMethod.VECTOR_SIMILARITY
        assert not result.fallback_used
        assert [r.id for r in result.records] == ["e1"]
        assert len(result.attempts) == 1
        assert thresholds(store) == [0.7]

    @pytest.mark.asyncio
    async def test_threshold_descent(self, store, ctx, embedder):
        store.vector_search.side_effect = [[], [], [make_record()]]
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert result.fallback_used
        assert result.records
        assert thresholds(store) == [0.7, 0.25, 0.20]
        assert embedder.calls == 1

    @pytest.mark.asyncio
    async def test_time_filter_widens_monotonically(self, store, ctx, embedder):
        store.vector_search.side_effect = [[]] * 6 + [[make_record()]]
        result = await ExecutionAgent(store, embedder).execute(make_plan(time_filter=LAST_WEEK), ctx)

        assert result.records
        assert [a.step for a in result.attempts] == [1, 2, 2, 2, 3, 3, 4]
        assert thresholds(store) == [0.7, 0.25, 0.20, 0.15, 0.15, 0.15, 0.15]

        seen = windows(store)
        assert seen[:4] == [LAST_WEEK] * 4
        widened, trailing = seen[4], seen[5]
        assert widened.start == datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert widened.covers(LAST_WEEK)
        assert trailing.covers(widened)
        assert trailing.contains(NOW)
        assert seen[6] is None

    @pytest.mark.asyncio
    async def test_no_time_filter_skips_widening(self, store, ctx, embedder):
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert [a.step for a in result.attempts] == [1, 2, 2, 2]
        assert all(w is None for w in windows(store))

    @pytest.mark.asyncio
    async def test_all_empty_does_not_list_recent(self, store, ctx, embedder):
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert result.records == ()
        assert result.fallback_used
        assert result.error is None
        assert result.method_used == RetrievalMethod.VECTOR_SIMILARITY
        store.list_recent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_listing_when_everything_failed(self, store, ctx, embedder):
        store.vector_search.side_effect = ConnectionError("store down")
        store.list_recent.return_value = [make_record("e2"), make_record("e1")]
        result = await ExecutionAgent(store, embedder, recent_entries_limit=25).execute(make_plan(), ctx)

        assert result.method_used == RetrievalMethod.RECENT_ENTRIES
        assert result.fallback_used
        assert [r.id for r in result.records] == ["e2", "e1"]
        assert all(a.outcome == AttemptOutcome.FAILED for a in result.attempts[:-1])
        assert result.attempts[-1].step == 5
        store.list_recent.assert_awaited_once_with(OWNER, 25)

    @pytest.mark.asyncio
    async def test_terminal_failure_sets_error(self, store, ctx, embedder):
        store.vector_search.side_effect = ConnectionError("store down")
        store.list_recent.side_effect = ConnectionError("still down")
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert result.records == ()
        assert result.method_used == RetrievalMethod.RECENT_ENTRIES
        assert "still down" in result.error

    @pytest.mark.asyncio
    async def test_embedding_unavailable_counts_as_empty(self, store, ctx):
        embedder = MagicMock()
        embedder.embed = AsyncMock(side_effect=EmbeddingUnavailable("no embedding credential"))
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        embedder.embed.assert_awaited_once()
        store.vector_search.assert_not_awaited()
        store.list_recent.assert_not_awaited()
        assert all(a.outcome == AttemptOutcome.EMPTY for a in result.attempts)
        assert result.error is None

    @pytest.mark.asyncio
    async def test_deadline_timeout_reaches_terminal(self, store, embedder):
        async def slow(*args):
            await asyncio.sleep(1)
            return [make_record()]

        store.vector_search.side_effect = slow
        store.list_recent.return_value = [make_record("e3")]
        ctx = ExecutionContext(owner_id=OWNER, now=NOW, deadline=Deadline(50))
        result = await ExecutionAgent(store, embedder).execute(make_plan(), ctx)

        assert all(a.outcome == AttemptOutcome.TIMEOUT for a in result.attempts[:-1])
        assert result.method_used == RetrievalMethod.RECENT_ENTRIES
        assert [r.id for r in result.records] == ["e3"]


class TestPrimaryMethods:
    """Structured and hybrid primaries."""

    @pytest.mark.asyncio
    async def test_structured_aggregate_rows(self, store, ctx, embedder):
        store.structured_query.return_value = [
            {"entry_count": 3, "first_entry": "2026-03-01T08:00:00+00:00", "last_entry": None},
        ]
        plan = make_plan(RetrievalMethod.SQL_QUERY, query_text=VALID_QUERY)
        result = await ExecutionAgent(store, embedder).execute(plan, ctx)

        assert result.method_used == RetrievalMethod.SQL_QUERY
        assert not result.fallback_used
        record = result.records[0]
        assert record.id is None
        assert record.kind == "structured"
        assert "entry_count: 3" in record.content
        store.structured_query.assert_awaited_once_with(VALID_QUERY, OWNER)
        store.vector_search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_structured_query_falls_to_vector(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        plan = make_plan(RetrievalMethod.SQL_QUERY, query_text='SELECT id FROM "Journal Entries"')
        result = await ExecutionAgent(store, embedder).execute(plan, ctx)

        store.structured_query.assert_not_awaited()
        assert result.attempts[0].outcome == AttemptOutcome.FAILED
        assert thresholds(store) == [0.25]
        assert result.method_used == RetrievalMethod.VECTOR_SIMILARITY
        assert result.fallback_used

    @pytest.mark.asyncio
    async def test_hybrid_merges_both_halves(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record("e1")]
        store.structured_query.return_value = [
            {"id": "e1", "content": "duplicate"},
            {"id": "e9", "content": "structured only"},
        ]
        plan = make_plan(RetrievalMethod.HYBRID_SEARCH, query_text=VALID_QUERY)
        result = await ExecutionAgent(store, embedder).execute(plan, ctx)

        assert [r.id for r in result.records] == ["e1", "e9"]
        assert result.records[0].kind == "semantic"
        assert not result.fallback_used

    @pytest.mark.asyncio
    async def test_hybrid_survives_one_failed_half(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record("e1")]
        store.structured_query.side_effect = RuntimeError("syntax error")
        plan = make_plan(RetrievalMethod.HYBRID_SEARCH, query_text=VALID_QUERY)
        result = await ExecutionAgent(store, embedder).execute(plan, ctx)

        assert [r.id for r in result.records] == ["e1"]
        assert result.attempts[0].outcome == AttemptOutcome.RECORDS


class TestScheduling:
    """execute_all ordering, concurrency and error containment."""

    @pytest.mark.asyncio
    async def test_results_in_priority_order(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        planning = PlanningResult(
            plans=(make_plan(sq_id="sq2", priority=2, text="b"), make_plan(sq_id="sq1", priority=1, text="a")),
            execution_strategy=ExecutionStrategy.PARALLEL,
            max_concurrency=2,
        )
        results = await ExecutionAgent(store, embedder).execute_all(planning, ctx)
        assert [r.sub_question_id for r in results] == ["sq1", "sq2"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, ctx, embedder):
        active = 0
        peak = 0

        async def tracked(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return [make_record()]

        store.vector_search.side_effect = tracked
        planning = PlanningResult(
            plans=tuple(make_plan(sq_id=f"sq{i}", priority=i, text=f"q{i}") for i in range(1, 5)),
            execution_strategy=ExecutionStrategy.PARALLEL,
            max_concurrency=2,
        )
        results = await ExecutionAgent(store, embedder).execute_all(planning, ctx)

        assert len(results) == 4
        assert peak == 2

    @pytest.mark.asyncio
    async def test_sequential_runs_one_at_a_time(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        planning = PlanningResult(plans=(make_plan(sq_id="sq1", text="a"), make_plan(sq_id="sq2", priority=2, text="b")))
        results = await ExecutionAgent(store, embedder).execute_all(planning, ctx)
        assert [r.sub_question_id for r in results] == ["sq1", "sq2"]

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(self, store, ctx, embedder):
        planning = PlanningResult(plans=(make_plan(),))
        with patch.object(ExecutionAgent, "run_ladder", side_effect=RuntimeError("boom")):
            results = await ExecutionAgent(store, embedder).execute_all(planning, ctx)

        assert results[0].error == "RuntimeError: boom"
        assert results[0].records == ()
        assert results[0].fallback_used

    @pytest.mark.asyncio
    async def test_empty_planning(self, store, ctx, embedder):
        assert await ExecutionAgent(store, embedder).execute_all(PlanningResult(), ctx) == ()


class TestCacheAndAnalytics:
    """Result memo and fire-and-forget recording."""

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, store, embedder):
        store.vector_search.return_value = [make_record()]
        agent = ExecutionAgent(store, embedder, cache=ResultCache())
        plan = make_plan()

        first = await agent.execute(plan, ExecutionContext(OWNER, NOW, Deadline(5000)))
        second = await agent.execute(plan, ExecutionContext(OWNER, NOW, Deadline(5000)))

        assert not first.cached
        assert second.cached
        assert [r.id for r in second.records] == ["e1"]
        store.vector_search.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fallback_results_are_not_cached(self, store, ctx, embedder):
        cache = ResultCache()
        store.vector_search.side_effect = [[], [make_record()]]
        plan = make_plan()
        await ExecutionAgent(store, embedder, cache=cache).execute(plan, ctx)
        assert await cache.get_result(plan.cache_key, OWNER) is None

    @pytest.mark.asyncio
    async def test_recorder_called_once_per_key(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        recorder = MagicMock()
        recorder.record_query = AsyncMock()
        agent = ExecutionAgent(store, embedder, recorder=recorder)
        plan = make_plan()

        await agent.execute(plan, ctx)
        await agent.execute(plan, ctx)
        await agent.drain()

        recorder.record_query.assert_awaited_once()
        kwargs = recorder.record_query.call_args.kwargs
        assert kwargs["owner_id"] == OWNER
        assert kwargs["cache_key"] == plan.cache_key
        assert kwargs["method"] == "vector_similarity"
        assert kwargs["record_count"] == 1

    @pytest.mark.asyncio
    async def test_recorder_failure_is_swallowed(self, store, ctx, embedder):
        store.vector_search.return_value = [make_record()]
        recorder = MagicMock()
        recorder.record_query = AsyncMock(side_effect=RuntimeError("analytics down"))
        agent = ExecutionAgent(store, embedder, recorder=recorder)

        result = await agent.execute(make_plan(), ctx)
        await agent.drain()

        assert result.records
        recorder.record_query.assert_awaited_once()


class TestHelpers:
    """Row conversion and merging."""

    def test_rows_to_records(self):
        records = rows_to_records([{"id": 7, "content": "text", "created_at": "2026-03-01T00:00:00Z"}])
        assert records[0].id == "7"
        assert records[0].created_at == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert records[0].row == {"id": 7, "content": "text", "created_at": "2026-03-01T00:00:00Z"}

    def test_merge_keeps_aggregates(self):
        aggregate = rows_to_records([{"entry_count": 2}])[0]
        merged = merge_records([make_record("e1")], [aggregate, *rows_to_records([{"id": "e1"}])])
        assert [r.id for r in merged] == ["e1", None]
