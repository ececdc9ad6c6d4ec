"""Time range resolution for journal questions.

Relative phrases ("last month", "past 10 days") resolve against the
caller's clock and IANA timezone, never the server's. Weeks start on
Monday. Every range is half-open: the start instant is included, the end
instant is not. Boundaries are computed as local midnights and returned
in UTC.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from journalq.exceptions import ClassificationDefault

from .models import TimeRange, TimeRangeType

logger = logging.getLogger(__name__)

TIME_RULES_VERSION = "2025.2"

MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
# Month names that are also common English words need a prefix or a year
AMBIGUOUS_MONTHS = frozenset({"march", "may"})

ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
LAST_N = re.compile(r"\b(?:last|past|previous)\s+(\d{1,3})\s+(day|week|month)s?\b")
MONTH_NAME = re.compile(
    r"\b(?:(?P<prefix>in|during|since|of|from|last|this)\s+)?"
    r"(?P<month>" + "|".join(MONTHS) + r")"
    r"(?:\s+(?P<year>\d{4}))?\b"
)

FIXED_PHRASES = (
    (re.compile(r"\b(yesterday|last night)\b"), "yesterday"),
    (re.compile(r"\b(today|tonight|this (morning|afternoon|evening))\b"), "today"),
    (re.compile(r"\b(last|previous) week\b"), "last_week"),
    (re.compile(r"\bpast week\b"), "past_week"),
    (re.compile(r"\bthis week\b"), "this_week"),
    (re.compile(r"\b(last|previous) month\b"), "last_month"),
    (re.compile(r"\bpast month\b"), "past_month"),
    (re.compile(r"\bthis month\b"), "this_month"),
    (re.compile(r"\bthis year\b"), "this_year"),
    (re.compile(r"\b(last|previous) year\b"), "last_year"),
)


def resolve_zone(tz_name: str | None) -> ZoneInfo | timezone:
    """Look up an IANA zone, falling back to UTC for unknown names."""
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}', using UTC")
        return timezone.utc


def _midnight(day: date, zone) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=zone)


def _add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _range(kind: TimeRangeType, start: datetime, end: datetime, label: str) -> TimeRange:
    return TimeRange(
        type=kind,
        start=start.astimezone(timezone.utc),
        end=end.astimezone(timezone.utc),
        label=label,
    )


def _month_range(year: int, month: int, zone, kind: TimeRangeType, label: str) -> TimeRange:
    next_year, next_month = _add_months(year, month, 1)
    return _range(
        kind,
        _midnight(date(year, month, 1), zone),
        _midnight(date(next_year, next_month, 1), zone),
        label,
    )


def _explicit_dates(text: str, today: date, zone) -> TimeRange | None:
    found: list[tuple[int, tuple[int, int, int]]] = []
    for m in ISO_DATE.finditer(text):
        found.append((m.start(), (int(m.group(1)), int(m.group(2)), int(m.group(3)))))
    for m in US_DATE.finditer(text):
        found.append((m.start(), (int(m.group(3)), int(m.group(1)), int(m.group(2)))))
    if not found:
        return None

    try:
        days = [date(*ymd) for _, ymd in sorted(found)]
    except ValueError as e:
        raise ClassificationDefault(f"unresolvable date: {e}") from e

    first, last = min(days), max(days)
    label = first.isoformat() if first == last else f"{first.isoformat()} to {last.isoformat()}"
    return _range(
        TimeRangeType.EXPLICIT_RANGE,
        _midnight(first, zone),
        _midnight(last + timedelta(days=1), zone),
        label,
    )


def _last_n(text: str, today: date, zone) -> TimeRange | None:
    m = LAST_N.search(text)
    if not m:
        return None
    count, unit = int(m.group(1)), m.group(2)
    if count <= 0:
        raise ClassificationDefault(f"empty window: {m.group(0)}")

    end = today + timedelta(days=1)
    if unit == "day":
        start = today - timedelta(days=count - 1)
    elif unit == "week":
        start = today - timedelta(days=count * 7 - 1)
    else:
        year, month = _add_months(today.year, today.month, -count)
        # Clamp the day for short months (e.g. March 31 minus one month)
        day = min(today.day, 28)
        start = date(year, month, day) + timedelta(days=1)
    return _range(
        TimeRangeType.EXPLICIT_RANGE,
        _midnight(start, zone),
        _midnight(end, zone),
        f"last {count} {unit}s",
    )


def _specific_month(text: str, today: date, zone) -> TimeRange | None:
    for m in MONTH_NAME.finditer(text):
        name = m.group("month")
        prefix, year_text = m.group("prefix"), m.group("year")
        if name in AMBIGUOUS_MONTHS and not (prefix or year_text):
            continue

        month = MONTHS.index(name) + 1
        if year_text:
            year = int(year_text)
        elif prefix == "this":
            year = today.year
        elif prefix == "last":
            year = today.year if month < today.month else today.year - 1
        else:
            # A bare month name later than the current month means last year's
            year = today.year if month <= today.month else today.year - 1

        return _month_range(year, month, zone, TimeRangeType.SPECIFIC_MONTH, f"{name.title()} {year}")
    return None


def _fixed_phrase(text: str, today: date, zone) -> TimeRange | None:
    for pattern, key in FIXED_PHRASES:
        if not pattern.search(text):
            continue

        tomorrow = today + timedelta(days=1)
        monday = today - timedelta(days=today.weekday())
        match key:
            case "yesterday":
                return _range(
                    TimeRangeType.EXPLICIT_RANGE,
                    _midnight(today - timedelta(days=1), zone),
                    _midnight(today, zone),
                    "yesterday",
                )
            case "today":
                return _range(TimeRangeType.TODAY, _midnight(today, zone), _midnight(tomorrow, zone), "today")
            case "last_week":
                return _range(
                    TimeRangeType.LAST_WEEK,
                    _midnight(monday - timedelta(days=7), zone),
                    _midnight(monday, zone),
                    "last week",
                )
            case "past_week":
                return _range(
                    TimeRangeType.EXPLICIT_RANGE,
                    _midnight(today - timedelta(days=6), zone),
                    _midnight(tomorrow, zone),
                    "past week",
                )
            case "this_week":
                return _range(
                    TimeRangeType.THIS_WEEK,
                    _midnight(monday, zone),
                    _midnight(monday + timedelta(days=7), zone),
                    "this week",
                )
            case "last_month":
                year, month = _add_months(today.year, today.month, -1)
                return _month_range(year, month, zone, TimeRangeType.LAST_MONTH, "last month")
            case "past_month":
                return _range(
                    TimeRangeType.EXPLICIT_RANGE,
                    _midnight(today - timedelta(days=29), zone),
                    _midnight(tomorrow, zone),
                    "past month",
                )
            case "this_month":
                return _month_range(today.year, today.month, zone, TimeRangeType.THIS_MONTH, "this month")
            case "this_year":
                return _range(
                    TimeRangeType.EXPLICIT_RANGE,
                    _midnight(date(today.year, 1, 1), zone),
                    _midnight(date(today.year + 1, 1, 1), zone),
                    "this year",
                )
            case "last_year":
                return _range(
                    TimeRangeType.EXPLICIT_RANGE,
                    _midnight(date(today.year - 1, 1, 1), zone),
                    _midnight(date(today.year, 1, 1), zone),
                    "last year",
                )
    return None


# Most specific first: explicit dates beat named months beat relative phrases
_RESOLVERS = (_explicit_dates, _last_n, _specific_month, _fixed_phrase)


def resolve_time_range(text: str, now: datetime, tz_name: str | None = "UTC") -> TimeRange | None:
    """Resolve the first time expression in normalized text.

    Args:
        text: Lower-cased question text.
        now: Caller's current instant (aware; naive is treated as UTC).
        tz_name: Caller's IANA timezone.

    Returns:
        TimeRange in UTC, or None when the text has no time expression.

    Raises:
        ClassificationDefault: an expression was found but cannot be resolved
            (e.g. 2024-02-30, or a date at the edge of the calendar).
    """
    zone = resolve_zone(tz_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(zone).date()

    for resolver in _RESOLVERS:
        try:
            found = resolver(text, today, zone)
        except OverflowError as e:
            # 9999-12-31 has no following midnight
            raise ClassificationDefault(f"date out of range: {e}") from e
        if found is not None:
            return found
    return None
