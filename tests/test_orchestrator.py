"""End-to-end tests for QueryOrchestrator over the in-memory store."""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from journalq.agents.classifier_agent import ClassifierAgent
from journalq.agents.consolidator_agent import UNRELATED_ANSWER, ConsolidatorAgent
from journalq.agents.decomposer_agent import DecomposerAgent
from journalq.agents.execution_agent import ExecutionAgent
from journalq.agents.models import PerformanceBudget, Turn
from journalq.agents.planner_agent import PlannerAgent
from journalq.agents.query_orchestrator import QueryOrchestrator, create_query_orchestrator
from journalq.cache import ResultCache
from journalq.llm import DisabledClient
from journalq.metrics import InMemoryMetricsSink

from conftest import OWNER, make_question

OWNER_ENTRY_IDS = {"e1", "e2", "e3", "e4", "e5"}
FULL_PIPELINE = ["classifier", "decomposer", "planner", "execution", "consolidator"]


@pytest.fixture
def metrics():
    return InMemoryMetricsSink()


@pytest.fixture
def orchestrator(journal_store, embedder, scripted_llm, metrics):
    return create_query_orchestrator(journal_store, embedder, scripted_llm, metrics=metrics)


class TestPipeline:
    """All five stages run in order."""

    @pytest.mark.asyncio
    async def test_full_run(self, orchestrator, metrics, scripted_llm):
        answer = await orchestrator.run_query(
            make_question("When did I sleep badly, worried about the deadline at work?")
        )

        assert answer.answer_text == "You slept better on most nights this week."
        assert answer.status_summary == "Your sleep improved this week"
        assert [s.agent for s in answer.trace.stages] == FULL_PIPELINE
        assert answer.trace.success
        assert len(scripted_llm.calls) == 1

        assert answer.source_record_refs
        assert set(answer.source_record_refs) <= OWNER_ENTRY_IDS

        assert answer.metadata["rule_version"]
        assert answer.metadata["deadline_ms"] == 8000
        assert answer.metadata["unrelated_to_corpus"] is False
        assert "latency_ms" in answer.metadata

        snapshot = metrics.snapshot()
        assert snapshot["runs"] == 1
        assert set(snapshot["stage_avg_ms"]) == set(FULL_PIPELINE)

    @pytest.mark.asyncio
    async def test_other_owner_entries_never_returned(self, orchestrator):
        answer = await orchestrator.run_query(make_question("Slept badly, worried about work and the deadline"))
        assert "x1" not in answer.source_record_refs

    @pytest.mark.asyncio
    async def test_time_scoped_question(self, orchestrator):
        answer = await orchestrator.run_query(make_question("How did I sleep this week?"))
        assert set(answer.source_record_refs) <= OWNER_ENTRY_IDS
        plans = answer.trace.stages[2].output["plans"]
        assert all(p["parameters"]["time_filter"]["type"] == "this_week" for p in plans)

    @pytest.mark.asyncio
    async def test_budget_controls_deadline(self, orchestrator):
        answer = await orchestrator.run_query(
            make_question("How did I feel today?"),
            budget=PerformanceBudget(max_latency_ms=3000, max_parallel=2),
        )
        assert answer.metadata["deadline_ms"] == 3000

    @pytest.mark.asyncio
    async def test_history_reaches_the_prompt(self, orchestrator, scripted_llm):
        question = make_question(
            "And what about work?",
            history=(Turn("user", "How has my sleep been?"), Turn("assistant", "Mostly restful.")),
        )
        await orchestrator.run_query(question)
        assert "Mostly restful." in scripted_llm.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_trace_disabled(self, orchestrator, metrics):
        answer = await orchestrator.run_query(make_question("How did I feel today?"), trace_enabled=False)
        assert answer.trace is None
        assert metrics.snapshot()["runs"] == 1


class TestDegradedPaths:
    """run_query always returns an answer."""

    @pytest.mark.asyncio
    async def test_unrelated_question_skips_retrieval(self, journal_store, embedder, failing_llm):
        journal_store.vector_search = MagicMock(side_effect=AssertionError("should not search"))
        orchestrator = create_query_orchestrator(journal_store, embedder, failing_llm)

        answer = await orchestrator.run_query(make_question("Who won the world cup?"))

        assert [s.agent for s in answer.trace.stages] == ["classifier", "decomposer", "consolidator"]
        assert answer.answer_text == UNRELATED_ANSWER
        assert answer.source_record_refs == ()
        assert not answer.degraded
        assert answer.metadata["unrelated_to_corpus"] is True
        assert embedder.calls == 0

    @pytest.mark.asyncio
    async def test_disabled_llm_degrades(self, journal_store, embedder):
        orchestrator = create_query_orchestrator(journal_store, embedder, DisabledClient())
        answer = await orchestrator.run_query(make_question("When did I sleep badly at work?"))

        assert answer.degraded
        assert answer.answer_text.strip()
        assert len(answer.status_summary.split()) == 5
        assert answer.metadata["parse_strategy"] == "deterministic"

    @pytest.mark.asyncio
    async def test_stage_exception_gives_emergency_answer(self, journal_store, embedder, scripted_llm, metrics):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("rules table corrupt")
        orchestrator = QueryOrchestrator(
            classifier=classifier,
            decomposer=DecomposerAgent(),
            planner=PlannerAgent(),
            executor=ExecutionAgent(journal_store, embedder),
            consolidator=ConsolidatorAgent(scripted_llm),
            metrics=metrics,
        )

        answer = await orchestrator.run_query(make_question("How did I feel today?"))

        assert answer.degraded
        assert "rules table corrupt" in answer.metadata["error"]
        assert "How did I feel today?" in answer.answer_text
        assert not answer.trace.success
        assert answer.trace.stages[0].error == "rules table corrupt"
        assert metrics.snapshot()["failed"] == 1

    @pytest.mark.asyncio
    async def test_hanging_store_stays_within_the_deadline(self, journal_store, embedder, scripted_llm):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)
            return []

        journal_store.vector_search = hang
        journal_store.structured_query = hang
        orchestrator = create_query_orchestrator(journal_store, embedder, scripted_llm)

        started = time.monotonic()
        answer = await orchestrator.run_query(
            make_question("When did I sleep badly, worried about the deadline at work?"),
            budget=PerformanceBudget(max_latency_ms=300),
        )
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert answer.degraded
        assert answer.answer_text.strip()
        assert answer.source_record_refs
        assert set(answer.source_record_refs) <= OWNER_ENTRY_IDS

    @pytest.mark.asyncio
    async def test_metrics_failure_is_ignored(self, journal_store, embedder, scripted_llm):
        sink = MagicMock()
        sink.record_run.side_effect = RuntimeError("sink down")
        orchestrator = create_query_orchestrator(journal_store, embedder, scripted_llm, metrics=sink)

        answer = await orchestrator.run_query(make_question("How did I feel today?"))
        assert answer.answer_text


class TestWiring:
    """Factory and stats."""

    @pytest.mark.asyncio
    async def test_result_cache_serves_repeat_questions(self, journal_store, embedder, scripted_llm):
        orchestrator = create_query_orchestrator(journal_store, embedder, scripted_llm, cache=ResultCache())
        text = "When did I sleep badly, worried about the deadline at work?"

        first = await orchestrator.run_query(make_question(text))
        second = await orchestrator.run_query(make_question(text))

        assert first.source_record_refs == second.source_record_refs

    @pytest.mark.asyncio
    async def test_analytics_recorded_through_store(self, journal_store, embedder, scripted_llm):
        orchestrator = create_query_orchestrator(journal_store, embedder, scripted_llm, recorder=journal_store)
        await orchestrator.run_query(make_question("How did I feel today?"))
        await orchestrator.executor.drain()

        assert journal_store.recorded
        assert all(owner == OWNER for owner, _ in journal_store.recorded)

    def test_get_stats(self, orchestrator):
        stats = orchestrator.get_stats()
        assert stats["agents"]["classifier"]
        assert stats["rule_version"] == ClassifierAgent().rule_version
        assert stats["default_budget"]["max_latency_ms"] == 8000
