"""Structured query rendering for the journal schema.

Queries target the "Journal Entries" table (aliased `entries`) and are
always scoped with `entries.user_id = auth.uid()`; the store substitutes
the owner's id before execution. Values taken from the question are
reduced to a safe character set and quoted as literals.

Schema notes: "refined text" and "transcription text" contain spaces and
must be double-quoted; emotions and entities are jsonb; master_themes is
text[]; sentiment is real and must be cast to numeric for aggregates.
"""

import re

from . import rules
from .models import PlanFilter, PlanParameters, RetrievalMethod, SubQuestion, TimeRange

JOURNAL_TABLE = '"Journal Entries"'
OWNER_SCOPE = "entries.user_id = auth.uid()"
CONTENT = 'COALESCE(entries."refined text", entries."transcription text")'

_UNSAFE = re.compile(r"[^\w\s\-.,&]")


def _clean(value: str) -> str:
    return _UNSAFE.sub("", value).strip()[:80].replace("'", "''")


def sql_literal(value: str) -> str:
    """Quote a user-derived value as a SQL string literal."""
    return f"'{_clean(value)}'"


def sql_like(value: str) -> str:
    """ILIKE pattern matching value anywhere in the text."""
    return f"'%{_clean(value)}%'"


def sql_literal_ts(iso: str) -> str:
    return f"'{iso}'::timestamptz"


def _time_conditions(time_filter: TimeRange | None) -> list[str]:
    if time_filter is None:
        return []
    return [
        f"entries.created_at >= {sql_literal_ts(time_filter.start.isoformat())}",
        f"entries.created_at < {sql_literal_ts(time_filter.end.isoformat())}",
    ]


def _topic_condition(filters: tuple[PlanFilter, ...]) -> str | None:
    values = [f.value for f in filters if f.kind in ("theme", "phrase", "entity")]
    if not values:
        return None
    clauses = []
    for value in values:
        literal = sql_literal(value)
        clauses.append(f"({CONTENT} ILIKE {sql_like(value)} OR {literal} = ANY(entries.master_themes))")
    return "(" + " OR ".join(clauses) + ")"


def _where(conditions: list[str]) -> str:
    return "WHERE " + "\n  AND ".join([OWNER_SCOPE] + conditions)


def render_structured_query(
    method: RetrievalMethod,
    sub_question: SubQuestion,
    parameters: PlanParameters,
) -> str | None:
    """Render query text for a structured or hybrid plan, None for pure vector plans."""
    match method:
        case RetrievalMethod.SQL_QUERY:
            return _sql_query(sub_question, parameters)
        case RetrievalMethod.HYBRID_SEARCH:
            return _listing(parameters, _topic_condition(parameters.filters))
        case RetrievalMethod.EMOTION_ANALYSIS:
            return _emotion_analysis(parameters)
        case RetrievalMethod.ENTITY_LOOKUP:
            return _entity_lookup(parameters)
    return None


def _sql_query(sub_question: SubQuestion, parameters: PlanParameters) -> str:
    lowered = sub_question.text.lower()
    kinds = rules.QUANTITATIVE_MARKERS.labels(lowered)
    topic = _topic_condition(parameters.filters)
    conditions = _time_conditions(parameters.time_filter) + ([topic] if topic else [])

    if "average" in kinds or "sentiment" in lowered:
        return (
            "SELECT COUNT(*) AS entry_count, ROUND(AVG(entries.sentiment::numeric), 3) AS average_sentiment\n"
            f"FROM {JOURNAL_TABLE} entries\n"
            f"{_where(conditions)}"
        )
    if "ranking" in kinds:
        return (
            "SELECT theme, COUNT(*) AS entry_count\n"
            f"FROM {JOURNAL_TABLE} entries, unnest(entries.master_themes) AS theme\n"
            f"{_where(_time_conditions(parameters.time_filter))}\n"
            "GROUP BY theme\n"
            "ORDER BY entry_count DESC\n"
            f"LIMIT {parameters.max_results}"
        )
    if kinds:
        return (
            "SELECT COUNT(*) AS entry_count, MIN(entries.created_at) AS first_entry, "
            "MAX(entries.created_at) AS last_entry\n"
            f"FROM {JOURNAL_TABLE} entries\n"
            f"{_where(conditions)}"
        )
    return _listing(parameters, topic)


def _listing(parameters: PlanParameters, topic: str | None) -> str:
    conditions = _time_conditions(parameters.time_filter) + ([topic] if topic else [])
    return (
        f"SELECT entries.id, entries.created_at, {CONTENT} AS content, "
        "entries.sentiment, entries.master_themes\n"
        f"FROM {JOURNAL_TABLE} entries\n"
        f"{_where(conditions)}\n"
        "ORDER BY entries.created_at DESC\n"
        f"LIMIT {parameters.max_results}"
    )


def _emotion_analysis(parameters: PlanParameters) -> str:
    emotions = [f.value for f in parameters.filters if f.kind == "emotion"]
    conditions = _time_conditions(parameters.time_filter)
    if emotions:
        conditions.append("emotion.key IN (" + ", ".join(sql_literal(e) for e in emotions) + ")")
    return (
        "SELECT emotion.key AS emotion, COUNT(*) AS entry_count, "
        "ROUND(AVG((emotion.value #>> '{}')::numeric), 3) AS average_score, "
        "MAX(entries.created_at) AS last_seen\n"
        f"FROM {JOURNAL_TABLE} entries, jsonb_each(entries.emotions) AS emotion\n"
        f"{_where(conditions)}\n"
        "GROUP BY emotion.key\n"
        "ORDER BY average_score DESC\n"
        f"LIMIT {parameters.max_results}"
    )


def _entity_lookup(parameters: PlanParameters) -> str:
    names = [f.value for f in parameters.filters if f.kind in ("entity", "phrase")]
    conditions = _time_conditions(parameters.time_filter)
    if names:
        matches = " OR ".join(
            "entity_name ILIKE " + sql_like(n) for n in names
        )
        conditions.append(f"({matches})")
    return (
        f"SELECT entries.id, entries.created_at, {CONTENT} AS content, "
        "entity.key AS entity_type, entity_name\n"
        f"FROM {JOURNAL_TABLE} entries, jsonb_each(entries.entities) AS entity, "
        "jsonb_array_elements_text(entity.value) AS entity_name\n"
        f"{_where(conditions)}\n"
        "ORDER BY entries.created_at DESC\n"
        f"LIMIT {parameters.max_results}"
    )
