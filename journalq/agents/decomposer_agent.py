"""Decomposer Agent - Expands a question into prioritized sub-questions.

Simple questions pass through as a single sub-question. Complex and
multi-part questions are expanded from fixed templates keyed by the
topical rules that fire (improvement, emotional, comparative, pattern,
temporal, causal), with the question's topic nouns substituted in.

Output is capped at four sub-questions, sorted by priority; ties keep
source order. The result is a pure function of (question, classification).
"""

import logging
import re
from dataclasses import dataclass

from . import rules
from .classifier_agent import quoted_phrases
from .models import (
    ClassificationResult,
    Complexity,
    Question,
    Strategy,
    SubQuestion,
    SubQuestionType,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class _Candidate:
    text: str
    type: SubQuestionType
    strategy: Strategy
    priority: int
    targets: tuple[str, ...] = ()
    target_emotions: tuple[str, ...] = ()


class DecomposerAgent:
    """Turns one question into at most four independently answerable sub-questions."""
    __slots__ = ()

    MAX_SUB_QUESTIONS = 4
    MAX_QUOTED = 2

    # Fixed tie-break order: comparative/core-topic, pattern, temporal, causal
    TYPE_PRIORITY = {
        SubQuestionType.COMPARATIVE: 1,
        SubQuestionType.SPECIFIC: 1,
        SubQuestionType.EMOTIONAL: 1,
        SubQuestionType.PATTERN: 2,
        SubQuestionType.TEMPORAL: 3,
        SubQuestionType.CAUSAL: 4,
    }

    IMPROVEMENT_PATTERN = re.compile(
        r"\b(improv\w*|progress\w*|getting (better|worse)|better|worse|grow(n|th|ing)?|declin\w*|setbacks?)\b"
    )
    NEGATIVE_PATTERN = re.compile(
        r"\b(worse|declin\w*|struggl\w*|not improv\w*|haven'?t improved|stagnat\w*|setbacks?|challenges?|no progress)\b"
    )
    PATTERN_PATTERN = re.compile(r"\b(patterns?|recurring|usually|habits?|themes?|trends?|tend to|always|often)\b")
    CAUSAL_PATTERN = re.compile(
        r"\b(why|causes?|caused|because|triggers?|triggered|leads? to|led to|due to|affect\w*|impact\w*)\b"
    )
    FOLLOW_UP_PATTERN = re.compile(r"^(what|how) about\b|^(and|also|but)\b|\b(that|those|it|them)\b")

    # Split points for multi-part questions: question marks, ". also", and
    # conjunctions that start a new predicate
    PART_SPLIT = re.compile(
        r"\?+\s*"
        r"|\s*[.;]\s*(?:also|additionally),?\s+"
        r"|,?\s+(?:and|but|or)\s+(?:also\s+)?"
        r"(?=(?:how|what|why|when|where|which|who|did|do|does|am|is|are|was|were|have|has|had|can|could|should|will|would)\b)",
        re.IGNORECASE,
    )

    # (template, type, strategy)
    TEMPLATES = {
        "improvement_positive": (
            "What improvements and positive changes are evident in {areas} based on journal entries?",
            SubQuestionType.COMPARATIVE,
            Strategy.HYBRID,
        ),
        "improvement_negative": (
            "What ongoing challenges or areas of concern persist in {areas} based on journal entries?",
            SubQuestionType.COMPARATIVE,
            Strategy.HYBRID,
        ),
        "positive_progress": (
            "What positive changes and progress are mentioned in recent entries{about}?",
            SubQuestionType.PATTERN,
            Strategy.VECTOR,
        ),
        "persistent_challenges": (
            "What are the persistent challenges or ongoing issues mentioned in recent entries{about}?",
            SubQuestionType.PATTERN,
            Strategy.SQL,
        ),
        "stagnation": (
            "What areas show stagnation or lack of progress over {period}?",
            SubQuestionType.TEMPORAL,
            Strategy.VECTOR,
        ),
        "period_change": (
            "How have patterns{around} changed over {period}?",
            SubQuestionType.TEMPORAL,
            Strategy.SQL,
        ),
        "comparison_topics": (
            "How do my entries about {first} compare with my entries about {second}?",
            SubQuestionType.COMPARATIVE,
            Strategy.HYBRID,
        ),
        "comparison_period": (
            "How does {period} compare with the period before it{around}?",
            SubQuestionType.COMPARATIVE,
            Strategy.HYBRID,
        ),
        "comparison_general": (
            "How has {areas} changed over time?",
            SubQuestionType.COMPARATIVE,
            Strategy.HYBRID,
        ),
        "emotional": (
            "What emotional patterns and mood changes are evident in the entries{about}?",
            SubQuestionType.EMOTIONAL,
            Strategy.SQL,
        ),
        "behavioral": (
            "What behavioral patterns and recurring themes appear frequently{about}?",
            SubQuestionType.PATTERN,
            Strategy.VECTOR,
        ),
        "causal": (
            "What cause-and-effect relationships or triggers are mentioned{around}?",
            SubQuestionType.CAUSAL,
            Strategy.HYBRID,
        ),
        "quoted": (
            'What do my entries say about "{phrase}"?',
            SubQuestionType.SPECIFIC,
            Strategy.HYBRID,
        ),
    }

    @property
    def available(self) -> bool:
        return True

    def decompose(
        self,
        question: Question,
        classification: ClassificationResult,
    ) -> tuple[SubQuestion, ...]:
        """Decompose a question into sub-questions.

        Args:
            question: The user question (history is used for follow-ups).
            classification: Classifier output for the same question.

        Returns:
            One to four SubQuestions sorted by priority.
        """
        if classification.complexity == Complexity.SIMPLE or classification.unrelated_to_corpus:
            return self._finalize([self._core(question.text, question, classification)])

        text = question.normalized_text
        topics = self._topics(question, classification)
        quoted = quoted_phrases(question.text)

        candidates: list[_Candidate] = []
        improvement = bool(self.IMPROVEMENT_PATTERN.search(text))

        # Core facets first
        if improvement:
            candidates.extend(self._improvement(text, topics, classification))
        elif classification.complexity == Complexity.MULTI_PART:
            parts = self.split_parts(question.text)
            if len(parts) > 1:
                candidates.extend(self._core(p, question, classification, part=True) for p in parts)
            else:
                candidates.append(self._core(question.text, question, classification))
        else:
            candidates.append(self._core(question.text, question, classification))

        candidates.extend(
            self._render("quoted", topics, classification, phrase=phrase)
            for phrase in quoted[: self.MAX_QUOTED]
        )

        fired = self._fired_templates(text, improvement, topics, classification, candidates)
        candidates.extend(self._render(name, topics, classification) for name in fired)

        if len(candidates) == 1:
            logger.debug("No decomposition rule fired; using the question as-is")

        return self._finalize(candidates)

    def split_parts(self, text: str) -> list[str]:
        """Split a multi-part question into separate questions."""
        parts = []
        for raw in self.PART_SPLIT.split(text):
            part = raw.strip(" ,.;") if raw else ""
            if len(part.split()) < 2:
                continue
            parts.append(part[0].upper() + part[1:] + ("" if part.endswith("?") else "?"))
        return parts

    # ------------------------------------------------------------------ helpers

    def _topics(self, question: Question, classification: ClassificationResult) -> tuple[str, ...]:
        """Quoted phrases first, then domain areas; borrows from the last user turn on follow-ups."""
        quoted = quoted_phrases(question.text)
        areas = classification.themes
        if not areas and self.FOLLOW_UP_PATTERN.search(question.normalized_text):
            for turn in reversed(question.history):
                if turn.role == "user":
                    areas = rules.THEME_AREAS.labels(" ".join(turn.text.lower().split()))
                    break
        return tuple(dict.fromkeys(quoted + areas))

    def _core(
        self,
        text: str,
        question: Question,
        classification: ClassificationResult,
        part: bool = False,
    ) -> _Candidate:
        """The question (or one part of it) as a core-topic sub-question."""
        lowered = " ".join(text.lower().split())
        if part:
            emotions = rules.EMOTION_TERMS.labels(lowered)
            quantitative = rules.QUANTITATIVE_MARKERS.matches(lowered)
            topical = bool(emotions) or rules.THEME_AREAS.matches(lowered) or rules.EMOTION_MARKERS.matches(lowered)
            targets = rules.THEME_AREAS.labels(lowered)
        else:
            emotions = classification.emotions
            quantitative = classification.quantitative
            topical = classification.emotion_focused or classification.theme_focused
            targets = tuple(dict.fromkeys(quoted_phrases(question.text) + classification.themes))

        if quantitative:
            strategy = Strategy.SQL
        elif topical and not (classification.person_focused or classification.entity_focused):
            strategy = Strategy.VECTOR
        else:
            strategy = Strategy.HYBRID

        kind = SubQuestionType.EMOTIONAL if emotions else SubQuestionType.SPECIFIC
        return _Candidate(
            text=text.strip() if part else text,
            type=kind,
            strategy=strategy,
            priority=self.TYPE_PRIORITY[kind],
            targets=targets,
            target_emotions=emotions,
        )

    def _improvement(
        self,
        text: str,
        topics: tuple[str, ...],
        classification: ClassificationResult,
    ) -> list[_Candidate]:
        if self.NEGATIVE_PATTERN.search(text):
            names = ["improvement_negative", "persistent_challenges", "stagnation"]
        else:
            names = ["improvement_positive", "positive_progress"]
            if classification.time_range or rules.TEMPORAL_MARKERS.matches(text):
                names.append("period_change")
        return [self._render(name, topics, classification) for name in names]

    def _fired_templates(
        self,
        text: str,
        improvement: bool,
        topics: tuple[str, ...],
        classification: ClassificationResult,
        candidates: list[_Candidate],
    ) -> list[str]:
        """Names of the additional templates that apply, in source order."""
        present = {c.type for c in candidates}
        fired = []
        if classification.comparison and not improvement:
            fired.append(self._comparison_template(topics, classification))
        if classification.emotion_focused and SubQuestionType.EMOTIONAL not in present:
            fired.append("emotional")
        if self.PATTERN_PATTERN.search(text) and not improvement:
            fired.append("behavioral")
        temporal = classification.time_range is not None or rules.TEMPORAL_MARKERS.matches(text)
        if temporal and not improvement:
            fired.append("period_change")
        if self.CAUSAL_PATTERN.search(text):
            fired.append("causal")
        return fired

    def _comparison_template(self, topics: tuple[str, ...], classification: ClassificationResult) -> str:
        if len(topics) >= 2:
            return "comparison_topics"
        if classification.time_range is not None:
            return "comparison_period"
        return "comparison_general"

    def _render(
        self,
        name: str,
        topics: tuple[str, ...],
        classification: ClassificationResult,
        phrase: str = "",
    ) -> _Candidate:
        template, kind, strategy = self.TEMPLATES[name]
        areas = _join(topics) if topics else "my life"
        period = classification.time_range.label if classification.time_range else "time"
        text = template.format(
            areas=areas,
            about=f" about {_join(topics)}" if topics else "",
            around=f" around {_join(topics)}" if topics else "",
            period=period,
            first=topics[0] if topics else "",
            second=topics[1] if len(topics) > 1 else "",
            phrase=phrase,
        )
        emotions = classification.emotions if kind == SubQuestionType.EMOTIONAL else ()
        return _Candidate(
            text=text,
            type=kind,
            strategy=strategy,
            priority=self.TYPE_PRIORITY[kind],
            targets=(phrase,) if phrase else topics,
            target_emotions=emotions,
        )

    def _finalize(self, candidates: list[_Candidate]) -> tuple[SubQuestion, ...]:
        """Dedupe by text, stable-sort by priority, cap, and assign ids."""
        unique: dict[str, _Candidate] = {}
        for c in candidates:
            unique.setdefault(c.text.casefold(), c)

        ordered = sorted(unique.values(), key=lambda c: c.priority)[: self.MAX_SUB_QUESTIONS]
        return tuple(
            SubQuestion(
                id=f"sq{i}",
                text=c.text,
                type=c.type,
                priority=c.priority,
                suggested_strategy=c.strategy,
                targets=c.targets,
                target_emotions=c.target_emotions,
            )
            for i, c in enumerate(ordered, start=1)
        )


def _join(items: tuple[str, ...]) -> str:
    """sleep / sleep and work / sleep, work and mood"""
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + " and " + items[-1]
