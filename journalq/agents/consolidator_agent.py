"""Consolidator Agent - Merges sub-question results into one answer.

Builds a single completion call that must return a JSON object with
`statusSummary` and `answerText`, then recovers that payload through the
sanitizer. Evidence is capped per sub-question before it reaches the
prompt; anything dropped is recorded in the answer metadata.

Never raises for bad model output: when the payload cannot be recovered
the answer is a deterministic concatenation of each sub-question and its
raw records.
"""

import asyncio
import json
import logging
from typing import Any

from journalq.exceptions import ConsolidationParseFailure
from journalq.llm.base import BaseLLMClient, LLMResponse
from journalq.utils.resilience import Deadline

from .models import (
    ClassificationResult,
    ConsolidatedAnswer,
    ExecutionResult,
    Question,
    RetrievedRecord,
    SubQuestion,
)
from .sanitizer import normalize_status_summary, sanitize

logger = logging.getLogger(__name__)

FALLBACK_STATUS_SUMMARY = "Here is what I found"
UNRELATED_STATUS_SUMMARY = "Let's focus on your journal"
NO_RECORDS_TEXT = "No matching journal entries were found."
UNRELATED_ANSWER = (
    "I can only answer questions about your own journal entries. "
    "Try asking how your mood or sleep has been lately."
)
SNIPPET_CHARS = 600

SYSTEM_PROMPT = """You are a thoughtful journaling assistant. Answer the user's question using only the journal evidence provided.

Rules:
- Ground every statement in the evidence; say so plainly when the evidence is thin or missing.
- Refer to entries by date when dates are given.
- Do not invent entries, numbers or people.

Respond with ONE JSON object and nothing else, with exactly two keys:
{"statusSummary": "<exactly five words describing what you found>", "answerText": "<the answer in plain text>"}
No code fences. No text before or after the object."""

SUPPORTIVE_TONE = """
The user may be going through something difficult. Use a warm, supportive, non-clinical tone. Do not diagnose.
If they mention wanting to hurt themselves, gently encourage them to reach out to someone they trust or a local crisis line."""

UNRELATED_INSTRUCTION = """
This question is not about the user's journal. Kindly explain that you can only help with questions about their journal entries and suggest one example question they could ask."""


def _snippet(record: RetrievedRecord) -> str:
    text = " ".join(record.content.split())
    if len(text) > SNIPPET_CHARS:
        text = text[:SNIPPET_CHARS].rstrip() + "..."
    if record.created_at:
        return f"[{record.created_at.date().isoformat()}] {text}"
    return text


class ConsolidatorAgent:
    """Produces the final ConsolidatedAnswer."""
    __slots__ = ("_llm", "_max_rows", "_max_snippets", "_max_tokens", "_history_turns")

    def __init__(
        self,
        llm: BaseLLMClient,
        max_rows: int = 200,
        max_snippets: int = 20,
        max_tokens: int = 1500,
        history_turns: int = 6,
    ):
        """Initialize ConsolidatorAgent.

        Args:
            llm: Completion service.
            max_rows: Structured rows kept per sub-question.
            max_snippets: Semantic snippets kept per sub-question.
            max_tokens: Completion budget.
            history_turns: Prior turns included as conversation context.
        """
        self._llm = llm
        self._max_rows = max_rows
        self._max_snippets = max_snippets
        self._max_tokens = max_tokens
        self._history_turns = history_turns

    @property
    def available(self) -> bool:
        return self._llm.available

    async def consolidate(
        self,
        question: Question,
        classification: ClassificationResult,
        sub_questions: tuple[SubQuestion, ...],
        results: tuple[ExecutionResult, ...],
        deadline: Deadline | None = None,
    ) -> ConsolidatedAnswer:
        """Merge results into one answer.

        Args:
            question: Original question (history supplies conversation context).
            classification: Classifier output (tone and scope flags).
            sub_questions: Decomposer output.
            results: One ExecutionResult per plan, in priority order.
            deadline: Run deadline for the completion call.

        Returns:
            ConsolidatedAnswer, never with empty answer_text.
        """
        refs = tuple(dict.fromkeys(
            record.id for result in results for record in result.records if record.id is not None
        ))
        fallback_used = any(r.fallback_used or r.error for r in results)
        evidence, truncation = self._evidence(sub_questions, results)

        metadata: dict[str, Any] = {
            "sub_questions": len(sub_questions),
            "records": sum(len(r.records) for r in results),
        }
        if truncation:
            metadata["truncation"] = truncation

        response = await self._complete(
            self._system_prompt(classification),
            self._user_prompt(question, classification, evidence),
            deadline,
        )
        metadata["provider"] = response.provider
        if response.usage:
            metadata["usage"] = response.usage

        if response.success:
            try:
                parsed = sanitize(response.text)
            except ConsolidationParseFailure as e:
                logger.warning(f"Consolidation output unparsable, using fallback: {e}")
                metadata["parse_error"] = str(e)
            else:
                metadata["parse_strategy"] = parsed.strategy
                return ConsolidatedAnswer(
                    status_summary=normalize_status_summary(parsed.status_summary),
                    answer_text=parsed.answer_text,
                    source_record_refs=refs,
                    degraded=fallback_used,
                    metadata=metadata,
                )
        else:
            metadata["llm_error"] = response.error

        if classification.unrelated_to_corpus:
            metadata["parse_strategy"] = "unrelated"
            return ConsolidatedAnswer(
                status_summary=UNRELATED_STATUS_SUMMARY,
                answer_text=UNRELATED_ANSWER,
                source_record_refs=(),
                degraded=False,
                metadata=metadata,
            )

        metadata["parse_strategy"] = "deterministic"
        return ConsolidatedAnswer(
            status_summary=FALLBACK_STATUS_SUMMARY,
            answer_text=self.fallback_text(question, sub_questions, results),
            source_record_refs=refs,
            degraded=True,
            metadata=metadata,
        )

    async def _complete(self, system_prompt: str, user_prompt: str, deadline: Deadline | None) -> LLMResponse:
        call = self._llm.complete(system_prompt, user_prompt, self._max_tokens)
        try:
            if deadline is None:
                return await call
            return await deadline.run(call)
        except asyncio.TimeoutError:
            logger.warning("Consolidation call exceeded the run deadline")
            return LLMResponse(success=False, error="deadline exceeded", provider=self._llm.provider)
        except Exception as e:
            logger.error(f"Consolidation call failed: {e}")
            return LLMResponse(success=False, error=str(e), provider=self._llm.provider)

    def _evidence(
        self,
        sub_questions: tuple[SubQuestion, ...],
        results: tuple[ExecutionResult, ...],
    ) -> tuple[list[dict[str, Any]], dict[str, dict[str, int]]]:
        """Cap rows and snippets per sub-question, recording what was dropped."""
        texts = {sq.id: sq.text for sq in sub_questions}
        evidence = []
        truncation: dict[str, dict[str, int]] = {}

        for result in results:
            rows = [r for r in result.records if r.kind == "structured"]
            snippets = [r for r in result.records if r.kind != "structured"]
            kept_rows, kept_snippets = rows[:self._max_rows], snippets[:self._max_snippets]

            dropped = {}
            if len(rows) > len(kept_rows):
                dropped["rows_dropped"] = len(rows) - len(kept_rows)
            if len(snippets) > len(kept_snippets):
                dropped["snippets_dropped"] = len(snippets) - len(kept_snippets)
            if dropped:
                truncation[result.sub_question_id] = dropped

            evidence.append({
                "sub_question": texts.get(result.sub_question_id, result.sub_question_id),
                "method": result.method_used.value,
                "rows": [r.row if r.row is not None else {"content": r.content} for r in kept_rows],
                "snippets": [_snippet(r) for r in kept_snippets],
                **dropped,
            })
        return evidence, truncation

    def _system_prompt(self, classification: ClassificationResult) -> str:
        prompt = SYSTEM_PROMPT
        if classification.mental_health_sensitive:
            prompt += SUPPORTIVE_TONE
        if classification.unrelated_to_corpus:
            prompt += UNRELATED_INSTRUCTION
        return prompt

    def _user_prompt(
        self,
        question: Question,
        classification: ClassificationResult,
        evidence: list[dict[str, Any]],
    ) -> str:
        parts = []
        history = question.recent_history(self._history_turns)
        if history:
            parts.append("CONVERSATION SO FAR:")
            parts.extend(f"{turn.role}: {turn.text}" for turn in history)
            parts.append("")

        parts.append(f"QUESTION: {question.text}")
        if classification.time_range:
            tr = classification.time_range
            parts.append(f"TIME RANGE: {tr.label or tr.type.value} ({tr.start.isoformat()} to {tr.end.isoformat()})")

        if not classification.unrelated_to_corpus:
            parts.append("")
            parts.append("JOURNAL EVIDENCE:")
            parts.append(json.dumps(evidence, indent=1, default=str, ensure_ascii=False))
        return "\n".join(parts)

    def fallback_text(
        self,
        question: Question,
        sub_questions: tuple[SubQuestion, ...],
        results: tuple[ExecutionResult, ...],
    ) -> str:
        """Deterministic answer: each sub-question followed by its raw records."""
        texts = {sq.id: sq.text for sq in sub_questions}
        sections = []
        for result in results:
            lines = [texts.get(result.sub_question_id, question.text)]
            records = [r for r in result.records if r.kind == "structured"][:self._max_rows]
            records += [r for r in result.records if r.kind != "structured"][:self._max_snippets]
            if records:
                lines.extend(f"- {_snippet(r)}" for r in records)
            else:
                lines.append(NO_RECORDS_TEXT)
            sections.append("\n".join(lines))

        if not sections:
            sections.append(f"{question.text}\n{NO_RECORDS_TEXT}")
        return "\n\n".join(sections)
