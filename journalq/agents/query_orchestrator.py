"""Query Orchestrator - Coordinates the five-stage journal query pipeline.

Pipeline:
1. ClassifierAgent - complexity, time range, topical flags
2. DecomposerAgent - up to four prioritized sub-questions
3. PlannerAgent - one execution plan per sub-question plus scheduling
4. ExecutionAgent - fallback ladder per plan, parallel or sequential
5. ConsolidatorAgent - one answer from all results

run_query never raises. Questions unrelated to the journal skip planning
and execution. One deadline covers every I/O call of the run.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from journalq.config import Config
from journalq.metrics import MetricsSink, NullMetricsSink
from journalq.utils.resilience import Deadline

from .classifier_agent import ClassifierAgent
from .consolidator_agent import FALLBACK_STATUS_SUMMARY, NO_RECORDS_TEXT, ConsolidatorAgent
from .decomposer_agent import DecomposerAgent
from .execution_agent import ExecutionAgent, ExecutionContext
from .models import (
    ConsolidatedAnswer,
    ExecutionResult,
    PerformanceBudget,
    PipelineTrace,
    PlanningResult,
    Question,
    SubQuestion,
)
from .planner_agent import PlannerAgent

if TYPE_CHECKING:
    from journalq.cache import ResultCache
    from journalq.embeddings import EmbeddingService
    from journalq.llm.base import BaseLLMClient
    from journalq.retrieval.base import QueryRecorder, RetrievalStore

logger = logging.getLogger(__name__)


def _stage_output(result: Any) -> dict[str, Any]:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, tuple):
        items = []
        for item in result:
            if isinstance(item, ExecutionResult):
                items.append(item.to_dict(include_records=False))
            elif hasattr(item, "to_dict"):
                items.append(item.to_dict())
        return {"items": items}
    return {}


class QueryOrchestrator:
    """Runs one question through classifier, decomposer, planner, execution and consolidator."""
    __slots__ = (
        "_classifier", "_decomposer", "_planner", "_executor",
        "_consolidator", "_metrics", "_default_budget",
    )

    def __init__(
        self,
        classifier: ClassifierAgent,
        decomposer: DecomposerAgent,
        planner: PlannerAgent,
        executor: ExecutionAgent,
        consolidator: ConsolidatorAgent,
        metrics: MetricsSink | None = None,
        default_budget: PerformanceBudget | None = None,
    ):
        self._classifier = classifier
        self._decomposer = decomposer
        self._planner = planner
        self._executor = executor
        self._consolidator = consolidator
        self._metrics = metrics or NullMetricsSink()
        self._default_budget = default_budget or PerformanceBudget()

    @property
    def available(self) -> bool:
        return self._executor.available

    @property
    def executor(self) -> ExecutionAgent:
        return self._executor

    async def run_query(
        self,
        question: Question,
        budget: PerformanceBudget | None = None,
        trace_enabled: bool = True,
    ) -> ConsolidatedAnswer:
        """Answer a question from the owner's journal.

        Args:
            question: Immutable user input.
            budget: Latency budget; the configured default when omitted.
            trace_enabled: Whether to attach a PipelineTrace to the answer.

        Returns:
            ConsolidatedAnswer with non-empty answer_text. Never raises.
        """
        start_time = time.time()
        budget = budget or self._default_budget
        deadline = Deadline(budget.run_deadline_ms)
        trace = PipelineTrace() if trace_enabled else None

        sub_questions: tuple[SubQuestion, ...] = ()
        results: tuple[ExecutionResult, ...] = ()
        planning = PlanningResult()
        classification = None

        try:
            classification = await self._run_stage(
                "classifier", lambda: self._classifier.classify(question), trace
            )
            sub_questions = await self._run_stage(
                "decomposer", lambda: self._decomposer.decompose(question, classification), trace
            )

            if classification.unrelated_to_corpus:
                logger.info("Question is unrelated to the journal; skipping retrieval")
            else:
                planning = await self._run_stage(
                    "planner", lambda: self._planner.plan(sub_questions, classification, budget), trace
                )
                ctx = ExecutionContext(
                    owner_id=question.owner_id,
                    now=question.current_time(),
                    deadline=deadline,
                )
                results = await self._run_stage(
                    "execution", lambda: self._executor.execute_all(planning, ctx), trace
                )

            answer = await self._run_stage(
                "consolidator",
                lambda: self._consolidator.consolidate(question, classification, sub_questions, results, deadline),
                trace,
            )
            success = True

        except Exception as e:
            logger.error(f"Pipeline error: {e}", exc_info=True)
            answer = self._emergency_answer(question, sub_questions, results, e)
            success = False

        total_ms = int((time.time() - start_time) * 1000)
        if trace:
            trace.total_time_ms = total_ms
            trace.success = success

        metadata = dict(answer.metadata)
        metadata.update({
            "latency_ms": total_ms,
            "deadline_ms": budget.run_deadline_ms,
            "execution_strategy": planning.execution_strategy.value,
            "max_concurrency": planning.max_concurrency,
        })
        if classification is not None:
            metadata["complexity"] = classification.complexity.value
            metadata["rule_version"] = classification.rule_version
            metadata["unrelated_to_corpus"] = classification.unrelated_to_corpus

        self._record_metrics(trace, answer.degraded, metadata, total_ms, success)
        return replace(answer, metadata=metadata, trace=trace)

    async def _run_stage(
        self,
        name: str,
        stage_factory,
        trace: PipelineTrace | None,
    ):
        """Run a single pipeline stage with timing.

        Args:
            name: Stage name.
            stage_factory: Callable returning the stage output or a coroutine.
            trace: Optional trace to record stage.

        Returns:
            Stage output.
        """
        start = time.time()
        try:
            result = stage_factory()
            if inspect.isawaitable(result):
                result = await result
            elapsed_ms = int((time.time() - start) * 1000)

            if trace:
                trace.add_stage(
                    agent=name,
                    output=_stage_output(result),
                    time_ms=elapsed_ms,
                    success=True,
                )

            logger.debug(f"Stage {name} completed in {elapsed_ms}ms")
            return result

        except Exception as e:
            elapsed_ms = int((time.time() - start) * 1000)
            logger.error(f"Stage {name} failed: {e}")

            if trace:
                trace.add_stage(
                    agent=name,
                    output={},
                    time_ms=elapsed_ms,
                    success=False,
                    error=str(e),
                )
            raise

    def _emergency_answer(
        self,
        question: Question,
        sub_questions: tuple[SubQuestion, ...],
        results: tuple[ExecutionResult, ...],
        error: Exception,
    ) -> ConsolidatedAnswer:
        """Degraded answer built without any further I/O."""
        if results:
            text = self._consolidator.fallback_text(question, sub_questions, results)
        else:
            text = f"{question.text.strip() or 'Your question'}\n{NO_RECORDS_TEXT}"
        refs = tuple(dict.fromkeys(
            record.id for result in results for record in result.records if record.id is not None
        ))
        return ConsolidatedAnswer(
            status_summary=FALLBACK_STATUS_SUMMARY,
            answer_text=text,
            source_record_refs=refs,
            degraded=True,
            metadata={"error": f"{type(error).__name__}: {error}", "parse_strategy": "deterministic"},
        )

    def _record_metrics(
        self,
        trace: PipelineTrace | None,
        degraded: bool,
        metadata: dict[str, Any],
        total_ms: int,
        success: bool,
    ) -> None:
        sink_trace = trace or PipelineTrace(total_time_ms=total_ms, success=success)
        try:
            self._metrics.record_run(sink_trace, degraded, metadata)
        except Exception as e:
            logger.warning(f"Metrics sink failed: {e}")

    def get_stats(self) -> dict[str, Any]:
        """Get orchestrator statistics.

        Returns:
            Dict with agent availability and classifier rule version.
        """
        return {
            "agents": {
                "classifier": self._classifier.available,
                "decomposer": self._decomposer.available,
                "planner": self._planner.available,
                "execution": self._executor.available,
                "consolidator": self._consolidator.available,
            },
            "rule_version": self._classifier.rule_version,
            "default_budget": {
                "max_latency_ms": self._default_budget.max_latency_ms,
                "max_parallel": self._default_budget.max_parallel,
            },
        }


def create_query_orchestrator(
    store: RetrievalStore,
    embedder: EmbeddingService,
    llm: BaseLLMClient,
    cfg: Config | None = None,
    cache: ResultCache | None = None,
    recorder: QueryRecorder | None = None,
    metrics: MetricsSink | None = None,
) -> QueryOrchestrator:
    """Factory function to create a QueryOrchestrator.

    Args:
        store: Journal store.
        embedder: Embedding service.
        llm: Completion service.
        cfg: Settings; read from the environment when omitted.
        cache: Optional ResultCache for execution results.
        recorder: Optional QueryRecorder for analytics.
        metrics: Optional MetricsSink for pipeline traces.

    Returns:
        Configured QueryOrchestrator instance.
    """
    cfg = cfg or Config()
    executor = ExecutionAgent(
        store=store,
        embedder=embedder,
        cache=cache if cfg.enable_result_cache else None,
        recorder=recorder if cfg.enable_query_analytics else None,
        ladder_thresholds=cfg.ladder_thresholds,
        trailing_window_days=cfg.trailing_window_days,
        recent_entries_limit=cfg.recent_entries_limit,
    )
    consolidator = ConsolidatorAgent(
        llm=llm,
        max_rows=cfg.consolidator_max_rows,
        max_snippets=cfg.consolidator_max_snippets,
        max_tokens=cfg.consolidator_max_tokens,
        history_turns=cfg.history_turns,
    )
    return QueryOrchestrator(
        classifier=ClassifierAgent(),
        decomposer=DecomposerAgent(),
        planner=PlannerAgent(cfg.similarity_threshold, cfg.max_results),
        executor=executor,
        consolidator=consolidator,
        metrics=metrics,
        default_budget=PerformanceBudget(max_latency_ms=cfg.max_latency_ms, max_parallel=cfg.max_parallel),
    )
