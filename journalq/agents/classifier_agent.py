"""Classifier Agent - Cheap deterministic triage of a journal question.

First stage of the pipeline. Pure pattern matching over normalized text,
no I/O and no model calls:
1. Complexity (simple / complex / multi_part)
2. Time range, resolved in the caller's timezone
3. Topical flags (emotion, theme, comparison, person, entity, mental health)
4. Whether the question can be answered from the journal at all

Every branch has a safe default; classify() never raises.
"""

import logging
import re

from journalq.exceptions import ClassificationDefault

from . import rules
from .models import ClassificationResult, Complexity, Question
from .time_ranges import TIME_RULES_VERSION, resolve_time_range

logger = logging.getLogger(__name__)

QUOTED = re.compile(r"[\"“]([^\"”]{2,60})[\"”]")


def quoted_phrases(text: str) -> tuple[str, ...]:
    """Double-quoted substrings of the raw question, in order."""
    return tuple(q.strip() for q in QUOTED.findall(text) if q.strip())


class ClassifierAgent:
    """Classifies complexity, time scope and topical focus of a question."""
    __slots__ = ()

    @property
    def available(self) -> bool:
        return True

    @property
    def rule_version(self) -> str:
        return f"{rules.RULES_VERSION}/{TIME_RULES_VERSION}"

    def classify(self, question: Question) -> ClassificationResult:
        """Classify a question.

        Args:
            question: The user question.

        Returns:
            ClassificationResult; defaults to simple with no time range
            when nothing can be determined.
        """
        text = question.normalized_text
        if not text:
            return ClassificationResult(rule_version=self.rule_version, signals={"empty": True})

        try:
            return self._classify(question, text)
        except Exception as e:
            logger.warning(f"Classifier fell back to defaults: {e}")
            return ClassificationResult(rule_version=self.rule_version, signals={"error": str(e)})

    def _classify(self, question: Question, text: str) -> ClassificationResult:
        signals: dict = {}

        time_range = None
        try:
            time_range = resolve_time_range(text, question.current_time(), question.timezone)
        except ClassificationDefault as e:
            signals["time_default"] = str(e)
            logger.debug(f"Time range defaulted: {e}")

        emotions = rules.EMOTION_TERMS.labels(text)
        themes = rules.THEME_AREAS.labels(text)
        persons = rules.PERSON_MARKERS.terms(text)
        entities = rules.ENTITY_MARKERS.terms(text)
        quoted = quoted_phrases(question.text)

        complexity = self.complexity(text, themes=themes, has_time_range=time_range is not None, signals=signals)

        result = ClassificationResult(
            complexity=complexity,
            time_range=time_range,
            emotion_focused=bool(emotions) or rules.EMOTION_MARKERS.matches(text),
            theme_focused=bool(themes) or rules.THEME_MARKERS.matches(text),
            comparison=rules.COMPARISON_MARKERS.matches(text),
            person_focused=bool(persons),
            entity_focused=bool(entities) or bool(quoted),
            mental_health_sensitive=rules.MENTAL_HEALTH_MARKERS.matches(text),
            quantitative=rules.QUANTITATIVE_MARKERS.matches(text),
            unrelated_to_corpus=self.is_unrelated(text),
            emotions=emotions,
            themes=themes,
            entities=tuple(t for t in persons if t != "who") + entities + quoted,
            rule_version=self.rule_version,
            signals=signals,
        )
        logger.debug(
            f"Classified '{text[:60]}' as {complexity.value} "
            f"(time={time_range.type.value if time_range else None}, signals={signals})"
        )
        return result

    def complexity(
        self,
        text: str,
        themes: tuple[str, ...] = (),
        has_time_range: bool = False,
        signals: dict | None = None,
    ) -> Complexity:
        """Complexity of normalized text.

        multi_part: more than one question mark, or a conjunction joining
        two predicates. complex: at least two of the analysis, temporal and
        multi-aspect axes match. Otherwise simple.
        """
        signals = signals if signals is not None else {}

        question_marks = text.count("?")
        conjunctions = rules.MULTI_PART_MARKERS.labels(text)
        if question_marks > 1 or conjunctions:
            signals["multi_part"] = {"question_marks": question_marks, "conjunctions": list(conjunctions)}
            return Complexity.MULTI_PART

        axes = []
        if rules.ANALYSIS_MARKERS.matches(text):
            axes.append("analysis")
        if has_time_range or rules.TEMPORAL_MARKERS.matches(text):
            axes.append("temporal")
        # Two distinct domain areas also count as a multi-aspect question
        if rules.MULTI_ASPECT_MARKERS.matches(text) or len(themes) > 1:
            axes.append("multi_aspect")
        signals["complexity_axes"] = axes

        return Complexity.COMPLEX if len(axes) >= 2 else Complexity.SIMPLE

    def is_unrelated(self, text: str) -> bool:
        """True for greetings and general questions with no personal reference."""
        if rules.GREETINGS.matches(text):
            return True
        return rules.OUT_OF_SCOPE_MARKERS.matches(text) and not rules.PERSONAL_REFERENCES.matches(text)
