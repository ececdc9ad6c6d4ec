"""Execution Agent - Runs execution plans through the fallback ladder.

Ladder, stopping at the first step that yields at least one record:
1. Primary method (structured query after checklist/rewrite, vector search
   at the plan threshold, or both for hybrid plans)
2. Vector search with the plan's time filter at decreasing thresholds
3. Widened time windows (doubled, then merged with a trailing window)
4. Vector search without a time filter
5. Recent entries listing, only when every attempt above failed outright

Each step after the first is no more restrictive than the one before it:
thresholds never increase and time windows never shrink.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable

from journalq.exceptions import EmbeddingUnavailable, RetrievalAttemptFailed, RetrievalExhausted
from journalq.utils.resilience import Deadline

from .models import (
    AttemptOutcome,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStrategy,
    LadderAttempt,
    PlanningResult,
    RetrievalMethod,
    RetrievedRecord,
    TimeRange,
    _parse_iso,
)
from .sql_guard import prepare_structured_query

if TYPE_CHECKING:
    from journalq.cache import ResultCache
    from journalq.embeddings import EmbeddingService
    from journalq.retrieval.base import QueryRecorder, RetrievalStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionContext:
    """Per-run state shared by all plans of one orchestration run.

    Attributes:
        owner_id: Owner whose journal is searched.
        now: Caller's current instant, for the trailing window.
        deadline: Run deadline bounding every call except the terminal listing.
        recorded: (owner, cache_key) pairs already sent to the recorder.
    """
    owner_id: str
    now: datetime
    deadline: Deadline
    recorded: set[tuple[str, str]] = field(default_factory=set)


class _EmbeddingMemo:
    """Embeds a plan's text once; later ladder steps reuse the vector."""
    __slots__ = ("_service", "_text", "_vector", "_error")

    def __init__(self, service: EmbeddingService, text: str):
        self._service = service
        self._text = text
        self._vector: list[float] | None = None
        self._error: EmbeddingUnavailable | None = None

    async def get(self) -> list[float]:
        if self._error:
            raise self._error
        if self._vector is None:
            try:
                self._vector = await self._service.embed(self._text)
            except EmbeddingUnavailable as e:
                self._error = e
                raise
        return self._vector


def _row_content(row: dict[str, Any]) -> str:
    if content := row.get("content"):
        return str(content)
    return ", ".join(f"{k}: {v}" for k, v in row.items() if v is not None)


def rows_to_records(rows: list[dict[str, Any]]) -> list[RetrievedRecord]:
    """Structured rows as records. Aggregate rows have no id."""
    return [
        RetrievedRecord(
            id=str(row["id"]) if row.get("id") is not None else None,
            content=_row_content(row),
            relevance=1.0,
            created_at=_parse_iso(row.get("created_at")),
            kind="structured",
            row=json.loads(json.dumps(row, default=str)),
        )
        for row in rows
    ]


def merge_records(semantic: list[RetrievedRecord], structured: list[RetrievedRecord]) -> list[RetrievedRecord]:
    """Semantic matches first, then structured rows not already present."""
    seen = {r.id for r in semantic if r.id is not None}
    merged = list(semantic)
    for record in structured:
        if record.id is None or record.id not in seen:
            merged.append(record)
            if record.id is not None:
                seen.add(record.id)
    return merged


class ExecutionAgent:
    """Executes plans against the retrieval store with layered fallback."""
    __slots__ = (
        "_store", "_embedder", "_cache", "_recorder",
        "_thresholds", "_trailing_days", "_recent_limit", "_pending",
    )

    def __init__(
        self,
        store: RetrievalStore,
        embedder: EmbeddingService,
        cache: ResultCache | None = None,
        recorder: QueryRecorder | None = None,
        ladder_thresholds: tuple[float, ...] = (0.25, 0.20, 0.15),
        trailing_window_days: int = 30,
        recent_entries_limit: int = 30,
    ):
        """Initialize ExecutionAgent.

        Args:
            store: Journal store for vector, structured and listing calls.
            embedder: Embedding service for vector steps.
            cache: Optional result memo keyed by plan cache_key.
            recorder: Optional analytics sink, called fire-and-forget.
            ladder_thresholds: Step 2 thresholds, tried in decreasing order.
            trailing_window_days: Trailing window for the last widening step.
            recent_entries_limit: Cap for the terminal listing.
        """
        self._store = store
        self._embedder = embedder
        self._cache = cache
        self._recorder = recorder
        self._thresholds = tuple(sorted(ladder_thresholds, reverse=True)) or (0.15,)
        self._trailing_days = trailing_window_days
        self._recent_limit = recent_entries_limit
        self._pending: set[asyncio.Task] = set()

    @property
    def available(self) -> bool:
        return self._store.available

    async def execute_all(self, planning: PlanningResult, ctx: ExecutionContext) -> tuple[ExecutionResult, ...]:
        """Run every plan and return results in sub-question priority order.

        Parallel plans share a semaphore of planning.max_concurrency. A plan
        that raises is reported as an empty result with an error note.
        """
        plans = planning.plans
        if not plans:
            return ()

        if planning.execution_strategy == ExecutionStrategy.PARALLEL and planning.max_concurrency > 1:
            semaphore = asyncio.Semaphore(planning.max_concurrency)

            async def bounded(plan: ExecutionPlan) -> ExecutionResult:
                async with semaphore:
                    return await self._safe_execute(plan, ctx)

            results = await asyncio.gather(*(bounded(p) for p in plans))
        else:
            results = [await self._safe_execute(p, ctx) for p in plans]

        ordered = sorted(zip(plans, results), key=lambda pair: pair[0].priority)
        return tuple(result for _, result in ordered)

    async def _safe_execute(self, plan: ExecutionPlan, ctx: ExecutionContext) -> ExecutionResult:
        try:
            return await self.execute(plan, ctx)
        except Exception as e:
            logger.error(f"Plan {plan.sub_question_id} failed unexpectedly: {e}", exc_info=True)
            return ExecutionResult(
                sub_question_id=plan.sub_question_id,
                method_used=plan.method,
                fallback_used=True,
                error=f"{type(e).__name__}: {e}",
            )

    async def execute(self, plan: ExecutionPlan, ctx: ExecutionContext) -> ExecutionResult:
        """Run one plan: cache lookup, ladder, cache write, analytics record."""
        cached = await self._cached(plan, ctx)
        if cached is not None:
            return cached

        started = time.monotonic()
        result = await self.run_ladder(plan, ctx)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if self._cache and not result.fallback_used and result.error is None and result.records:
            try:
                await ctx.deadline.run(self._cache.set_result(plan.cache_key, ctx.owner_id, result))
            except Exception as e:
                logger.warning(f"Cache write skipped for {plan.sub_question_id}: {e}")

        self._record(plan, ctx, result, elapsed_ms)
        return result

    async def _cached(self, plan: ExecutionPlan, ctx: ExecutionContext) -> ExecutionResult | None:
        if not self._cache:
            return None
        try:
            cached = await ctx.deadline.run(self._cache.get_result(plan.cache_key, ctx.owner_id))
        except Exception as e:
            logger.warning(f"Cache read skipped for {plan.sub_question_id}: {e}")
            return None
        if cached is None:
            return None
        logger.debug(f"Cache hit for {plan.sub_question_id} ({plan.cache_key})")
        return replace(cached, sub_question_id=plan.sub_question_id, cached=True)

    async def run_ladder(self, plan: ExecutionPlan, ctx: ExecutionContext) -> ExecutionResult:
        attempts: list[LadderAttempt] = []
        memo = _EmbeddingMemo(self._embedder, plan.sub_question_text)
        params = plan.parameters
        time_filter = params.time_filter

        def found(records: list[RetrievedRecord], method: RetrievalMethod, fallback: bool) -> ExecutionResult:
            return ExecutionResult(
                sub_question_id=plan.sub_question_id,
                records=tuple(records),
                method_used=method,
                fallback_used=fallback,
                attempts=tuple(attempts),
            )

        # Step 1: primary method
        match plan.method:
            case RetrievalMethod.VECTOR_SIMILARITY:
                ceiling = params.similarity_threshold
                records = await self._attempt(
                    1, plan.method, attempts, ctx,
                    self._vector(plan, ctx, memo, ceiling, time_filter),
                    threshold=ceiling, time_filter=time_filter,
                )
            case RetrievalMethod.HYBRID_SEARCH:
                ceiling = params.similarity_threshold
                records = await self._attempt(
                    1, plan.method, attempts, ctx,
                    self._hybrid(plan, ctx, memo),
                    threshold=ceiling, time_filter=time_filter,
                )
            case _:
                ceiling = 1.0
                records = await self._attempt(
                    1, plan.method, attempts, ctx,
                    self._structured(plan, ctx),
                    time_filter=time_filter,
                )
        if records:
            return found(records, plan.method, fallback=False)

        # Step 2: decreasing thresholds, time filter kept
        threshold = ceiling
        for candidate in self._thresholds:
            threshold = min(candidate, threshold)
            records = await self._attempt(
                2, RetrievalMethod.VECTOR_SIMILARITY, attempts, ctx,
                self._vector(plan, ctx, memo, threshold, time_filter),
                threshold=threshold, time_filter=time_filter,
            )
            if records:
                return found(records, RetrievalMethod.VECTOR_SIMILARITY, fallback=True)
        lowest = threshold

        # Steps 3 and 4 only differ from step 2 when a time filter was present
        if time_filter is not None:
            widened = time_filter.widened(2)
            trailing = widened.union(TimeRange.trailing(self._trailing_days, ctx.now))
            for window in (widened, trailing):
                records = await self._attempt(
                    3, RetrievalMethod.VECTOR_SIMILARITY, attempts, ctx,
                    self._vector(plan, ctx, memo, lowest, window),
                    threshold=lowest, time_filter=window,
                )
                if records:
                    return found(records, RetrievalMethod.VECTOR_SIMILARITY, fallback=True)

            records = await self._attempt(
                4, RetrievalMethod.VECTOR_SIMILARITY, attempts, ctx,
                self._vector(plan, ctx, memo, lowest, None),
                threshold=lowest,
            )
            if records:
                return found(records, RetrievalMethod.VECTOR_SIMILARITY, fallback=True)

        # Step 5: terminal listing, never under the deadline
        if all(a.outcome.failed for a in attempts):
            return await self._terminal(plan, ctx, attempts)

        return found([], RetrievalMethod.VECTOR_SIMILARITY, fallback=True)

    async def _terminal(
        self,
        plan: ExecutionPlan,
        ctx: ExecutionContext,
        attempts: list[LadderAttempt],
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            records = await self._store.list_recent(ctx.owner_id, self._recent_limit)
        except Exception as e:
            exhausted = RetrievalExhausted(f"recent entries listing failed: {e}")
            logger.error(f"Plan {plan.sub_question_id}: {exhausted}")
            attempts.append(LadderAttempt(
                step=5,
                method=RetrievalMethod.RECENT_ENTRIES,
                outcome=AttemptOutcome.FAILED,
                error=str(e),
                elapsed_ms=int((time.monotonic() - started) * 1000),
            ))
            return ExecutionResult(
                sub_question_id=plan.sub_question_id,
                method_used=RetrievalMethod.RECENT_ENTRIES,
                fallback_used=True,
                error=str(exhausted),
                attempts=tuple(attempts),
            )

        attempts.append(LadderAttempt(
            step=5,
            method=RetrievalMethod.RECENT_ENTRIES,
            outcome=AttemptOutcome.RECORDS if records else AttemptOutcome.EMPTY,
            record_count=len(records),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        ))
        logger.info(f"Plan {plan.sub_question_id}: served {len(records)} recent entries")
        return ExecutionResult(
            sub_question_id=plan.sub_question_id,
            records=tuple(records),
            method_used=RetrievalMethod.RECENT_ENTRIES,
            fallback_used=True,
            attempts=tuple(attempts),
        )

    async def _attempt(
        self,
        step: int,
        method: RetrievalMethod,
        attempts: list[LadderAttempt],
        ctx: ExecutionContext,
        call: Awaitable[list[RetrievedRecord]],
        threshold: float | None = None,
        time_filter: TimeRange | None = None,
    ) -> list[RetrievedRecord]:
        """Run one ladder step under the run deadline and record its outcome."""
        started = time.monotonic()
        records: list[RetrievedRecord] = []
        error = None
        try:
            records = await ctx.deadline.run(call)
            outcome = AttemptOutcome.RECORDS if records else AttemptOutcome.EMPTY
        except EmbeddingUnavailable as e:
            outcome, error = AttemptOutcome.EMPTY, str(e)
        except asyncio.TimeoutError:
            outcome, error = AttemptOutcome.TIMEOUT, "deadline exceeded"
            logger.warning(str(RetrievalAttemptFailed(step, method.value, error)))
        except Exception as e:
            outcome, error = AttemptOutcome.FAILED, f"{type(e).__name__}: {e}"
            logger.warning(str(RetrievalAttemptFailed(step, method.value, error)))

        attempts.append(LadderAttempt(
            step=step,
            method=method,
            outcome=outcome,
            record_count=len(records),
            threshold=threshold,
            time_filter=time_filter,
            error=error,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        ))
        return records

    async def _vector(
        self,
        plan: ExecutionPlan,
        ctx: ExecutionContext,
        memo: _EmbeddingMemo,
        threshold: float,
        time_filter: TimeRange | None,
    ) -> list[RetrievedRecord]:
        vector = await memo.get()
        return await self._store.vector_search(
            vector, threshold, plan.parameters.max_results, ctx.owner_id, time_filter
        )

    async def _structured(self, plan: ExecutionPlan, ctx: ExecutionContext) -> list[RetrievedRecord]:
        text, rewritten = prepare_structured_query(plan.parameters.query_text)
        if rewritten:
            logger.info(f"Plan {plan.sub_question_id}: structured query rewritten before execution")
        rows = await self._store.structured_query(text, ctx.owner_id)
        return rows_to_records(rows)

    async def _hybrid(self, plan: ExecutionPlan, ctx: ExecutionContext, memo: _EmbeddingMemo) -> list[RetrievedRecord]:
        params = plan.parameters
        calls = [self._vector(plan, ctx, memo, params.similarity_threshold, params.time_filter)]
        if params.query_text:
            calls.append(self._structured(plan, ctx))
        outcomes = await asyncio.gather(*calls, return_exceptions=True)

        semantic, structured = [], []
        errors = []
        for i, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                errors.append(outcome)
            elif i == 0:
                semantic = outcome
            else:
                structured = outcome

        if errors and len(errors) == len(outcomes):
            hard = [e for e in errors if not isinstance(e, EmbeddingUnavailable)]
            raise hard[0] if hard else errors[0]
        for e in errors:
            logger.debug(f"Plan {plan.sub_question_id}: hybrid half failed: {e}")
        return merge_records(semantic, structured)

    def _record(self, plan: ExecutionPlan, ctx: ExecutionContext, result: ExecutionResult, elapsed_ms: int) -> None:
        """Fire-and-forget analytics record, at most once per (owner, cache_key) per run."""
        if self._recorder is None:
            return
        key = (ctx.owner_id, plan.cache_key)
        if key in ctx.recorded:
            return
        ctx.recorded.add(key)

        task = asyncio.create_task(self._safe_record(plan, ctx.owner_id, result, elapsed_ms))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_record(self, plan: ExecutionPlan, owner_id: str, result: ExecutionResult, elapsed_ms: int) -> None:
        try:
            await self._recorder.record_query(
                owner_id=owner_id,
                cache_key=plan.cache_key,
                text=plan.sub_question_text,
                method=result.method_used.value,
                record_count=len(result.records),
                elapsed_ms=elapsed_ms,
            )
        except Exception as e:
            logger.warning(f"Query analytics record failed for {plan.cache_key}: {e}")

    async def drain(self) -> None:
        """Wait for pending analytics records (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
