"""Layered recovery of the consolidator's JSON payload from model output.

Strategies, in order:
1. Strip code-fence markers
2. Parse directly when the text starts with "{"
3. Scan for balanced {...} spans by bracket depth and parse each in turn
4. Read status/answer through lower-cased keys and known aliases

Each strategy is a plain function so it can be tested on its own.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator

from journalq.exceptions import ConsolidationParseFailure

logger = logging.getLogger(__name__)

DEFAULT_STATUS_SUMMARY = "Summarizing what your entries show"

CODE_FENCE = re.compile(r"```[\w+-]*")

STATUS_KEYS = ("statussummary", "userstatusmessage", "statusmessage", "status_summary", "status")
ANSWER_KEYS = ("answertext", "answer_text", "answer", "response", "content", "message", "text")


@dataclass(slots=True, frozen=True)
class SanitizedOutput:
    """Payload recovered from model output.

    Attributes:
        status_summary: Raw status text, None when the model omitted it.
        answer_text: Non-empty answer text.
        strategy: Which strategy recovered it (direct or balanced_span).
    """
    status_summary: str | None
    answer_text: str
    strategy: str


def strip_code_fences(text: str) -> str:
    return CODE_FENCE.sub("", text or "").strip()


def lower_keys(payload: dict[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in payload.items()}


def balanced_spans(text: str) -> Iterator[str]:
    """Yield each balanced {...} span, left to right, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield text[start:i + 1]
                    break
        start = text.find("{", start + 1)


def _first_text(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_payload(payload: Any) -> tuple[str | None, str]:
    """Read (status, answer) from a parsed object.

    Raises:
        ConsolidationParseFailure: not an object, or no usable answer text.
    """
    if not isinstance(payload, dict):
        raise ConsolidationParseFailure(f"expected a JSON object, got {type(payload).__name__}")
    normalized = lower_keys(payload)
    answer = _first_text(normalized, ANSWER_KEYS)
    if answer is None:
        raise ConsolidationParseFailure(f"no answer text among keys {sorted(normalized)}")
    return _first_text(normalized, STATUS_KEYS), answer


def _loads(text: str) -> Any:
    # strict=False accepts raw newlines inside strings, which models emit often
    return json.loads(text, strict=False)


def sanitize(raw: str | None) -> SanitizedOutput:
    """Recover {status, answer} from raw model output.

    Raises:
        ConsolidationParseFailure: every strategy failed.
    """
    text = strip_code_fences(raw or "")
    if not text:
        raise ConsolidationParseFailure("empty model output")

    if text.startswith("{"):
        try:
            status, answer = extract_payload(_loads(text))
            return SanitizedOutput(status, answer, "direct")
        except (ValueError, ConsolidationParseFailure) as e:
            logger.debug(f"Direct parse failed: {e}")

    for span in balanced_spans(text):
        try:
            status, answer = extract_payload(_loads(span))
        except (ValueError, ConsolidationParseFailure):
            continue
        logger.warning("Consolidator output recovered from surrounding text")
        return SanitizedOutput(status, answer, "balanced_span")

    raise ConsolidationParseFailure(f"no parsable object in model output ({len(text)} chars)")


def normalize_status_summary(status: str | None) -> str:
    """Exactly five words: truncate longer summaries, replace shorter ones."""
    words = (status or "").strip().strip('"').split()
    if len(words) < 5:
        return DEFAULT_STATUS_SUMMARY
    return " ".join(words[:5])
