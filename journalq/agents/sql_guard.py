"""Structural checklist and deterministic repair for structured queries.

Query text reaching the store must be a single read-only SELECT over the
"Journal Entries" table, scoped to one owner with `user_id = auth.uid()`.
Known bad patterns (unquoted spaced identifiers, renamed columns, json_*
functions on jsonb columns, casts applied before extraction, uncast
sentiment aggregates) are rewritten textually. The owner scope is never
synthesized: an unscoped query is rejected.
"""

import logging
import re
from dataclasses import dataclass

from journalq.exceptions import StructuredQueryRejected

logger = logging.getLogger(__name__)

JOURNAL_TABLE = '"Journal Entries"'

_LITERAL = re.compile(r"('(?:[^']|'')*')")

READ_ONLY_START = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)
FORBIDDEN_KEYWORDS = re.compile(
    r"\b(drop|delete|insert|update|create|alter|truncate|grant|revoke|copy|vacuum|execute)\b",
    re.IGNORECASE,
)
OWNER_SCOPE = re.compile(r"\buser_id\s*=\s*auth\.uid\(\)", re.IGNORECASE)

UNQUOTED_SPACED = re.compile(r'(?<!")\b(refined|transcription)\s+text\b(?!")', re.IGNORECASE)
UNQUOTED_TABLE = re.compile(r'(?<!")\bjournal\s+entries\b(?!")', re.IGNORECASE)
MISCASED_TABLE = re.compile(r'"journal\s+entries"', re.IGNORECASE)

RENAMED_COLUMNS = {
    "refined_text": '"refined text"',
    "refinedtext": '"refined text"',
    "transcription_text": '"transcription text"',
    "transcriptiontext": '"transcription text"',
    "journal_entries": JOURNAL_TABLE,
    "journalentries": JOURNAL_TABLE,
    "master_theme": "master_themes",
    "entry_date": "created_at",
}
RENAMED = re.compile(r"\b(" + "|".join(RENAMED_COLUMNS) + r")\b", re.IGNORECASE)

# emotions, entities, themeemotion and entityemotion are stored as jsonb
JSON_FUNCTIONS = re.compile(
    r"\bjson_(each_text|each|object_keys|array_elements_text|array_elements|array_length"
    r"|extract_path_text|extract_path|typeof|strip_nulls)\s*\(",
    re.IGNORECASE,
)
CAST_BEFORE_EXTRACT = re.compile(
    r"([\w.\"]+)\s*->>?\s*'([^']+)'\s*::\s*(numeric|float8|float|integer|int|real|double precision)\b",
    re.IGNORECASE,
)
UNCAST_SENTIMENT = re.compile(
    r"\b(avg|sum|min|max|stddev|variance)\s*\(\s*((?:[\w\"]+\.)?sentiment)\s*\)",
    re.IGNORECASE,
)
UNCAST_SENTIMENT_ROUND = re.compile(r"\b(round)\s*\(\s*((?:[\w\"]+\.)?sentiment)\s*,", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class SqlCheckResult:
    """Outcome of the structural checklist.

    Attributes:
        issues: Every problem found, in checklist order.
        fatal: Problems a textual rewrite must not fix.
    """
    issues: tuple[str, ...] = ()
    fatal: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def repairable(self) -> bool:
        return bool(self.issues) and not self.fatal


def _mask_literals(sql: str) -> str:
    """Blank out string literals so keywords inside them are ignored."""
    return _LITERAL.sub(lambda m: "'" + " " * (len(m.group(0)) - 2) + "'", sql)


def _outside_literals(sql: str, fn) -> str:
    """Apply fn to the parts of sql that are not string literals."""
    parts = _LITERAL.split(sql)
    return "".join(part if i % 2 else fn(part) for i, part in enumerate(parts))


def check_structured_query(sql: str | None) -> SqlCheckResult:
    """Run the structural checklist over query text."""
    if not sql or not sql.strip():
        return SqlCheckResult(issues=("empty query",), fatal=("empty query",))

    masked = _mask_literals(sql)
    issues: list[str] = []
    fatal: list[str] = []

    body = masked.strip()
    if body.endswith(";"):
        issues.append("trailing semicolon")
        body = body.rstrip(";").rstrip()
    if ";" in body:
        fatal.append("multiple statements")

    if not READ_ONLY_START.match(body):
        fatal.append("not a read-only SELECT")
    for m in FORBIDDEN_KEYWORDS.finditer(body):
        fatal.append(f"forbidden keyword: {m.group(1).upper()}")

    for m in UNQUOTED_SPACED.finditer(body):
        issues.append(f"unquoted identifier: {m.group(0)}")
    for m in UNQUOTED_TABLE.finditer(body):
        issues.append(f"unquoted identifier: {m.group(0)}")
    for m in MISCASED_TABLE.finditer(body):
        if m.group(0) != JOURNAL_TABLE:
            issues.append(f"miscased identifier: {m.group(0)}")
    for m in RENAMED.finditer(body):
        issues.append(f"renamed column: {m.group(1)}")

    for m in JSON_FUNCTIONS.finditer(body):
        issues.append(f"json function on jsonb column: json_{m.group(1).lower()}")
    for m in CAST_BEFORE_EXTRACT.finditer(sql):
        issues.append(f"cast before extraction: {m.group(0)}")
    for m in UNCAST_SENTIMENT.finditer(body):
        issues.append(f"uncast sentiment aggregate: {m.group(0)}")
    for m in UNCAST_SENTIMENT_ROUND.finditer(body):
        issues.append(f"uncast sentiment aggregate: {m.group(0)}")

    mentions_table = JOURNAL_TABLE in body or UNQUOTED_TABLE.search(body) or MISCASED_TABLE.search(body)
    if not mentions_table and not re.search(r"\bjournal_?entries\b", body, re.IGNORECASE):
        fatal.append("journal table not referenced")
    if not OWNER_SCOPE.search(body):
        fatal.append("missing owner scope")

    return SqlCheckResult(issues=tuple(issues + fatal), fatal=tuple(fatal))


def _rewrite_identifiers(part: str) -> str:
    part = RENAMED.sub(lambda m: RENAMED_COLUMNS[m.group(1).lower()], part)
    part = UNQUOTED_SPACED.sub(lambda m: f'"{m.group(1).lower()} text"', part)
    part = UNQUOTED_TABLE.sub(JOURNAL_TABLE, part)
    part = MISCASED_TABLE.sub(JOURNAL_TABLE, part)
    part = JSON_FUNCTIONS.sub(lambda m: f"jsonb_{m.group(1).lower()}(", part)
    part = UNCAST_SENTIMENT.sub(lambda m: f"{m.group(1)}({m.group(2)}::numeric)", part)
    part = UNCAST_SENTIMENT_ROUND.sub(lambda m: f"{m.group(1)}({m.group(2)}::numeric,", part)
    return part


def rewrite_structured_query(sql: str) -> str:
    """Deterministically rewrite known bad patterns.

    Safe to apply to valid text: a valid query is returned unchanged.
    """
    text = sql.strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    # The cast fix spans a literal ('key'), so it runs on the whole text
    text = CAST_BEFORE_EXTRACT.sub(lambda m: f"({m.group(1)}->>'{m.group(2)}')::{m.group(3)}", text)
    return _outside_literals(text, _rewrite_identifiers)


def prepare_structured_query(sql: str | None) -> tuple[str, bool]:
    """Validate query text, rewriting it once if needed.

    Returns:
        (query text ready for the store, whether it was rewritten)

    Raises:
        StructuredQueryRejected: the text is invalid and rewriting did not fix it.
    """
    result = check_structured_query(sql)
    if result.valid:
        return sql.strip(), False
    if not result.repairable:
        raise StructuredQueryRejected(result.issues)

    rewritten = rewrite_structured_query(sql)
    after = check_structured_query(rewritten)
    if not after.valid:
        raise StructuredQueryRejected(after.issues)

    logger.info(f"Structured query repaired: {', '.join(result.issues)}")
    return rewritten, True
