"""
EduBot — Smart Task Parser.

Turns a free-text task description (English or Arabic) into structured
fields: due time, priority, category, tags, title and description.

Deterministic and pure: no I/O, no clock access (the caller passes `now`).
Extraction runs in a fixed order and each step sees only the text left over
by the steps before it. Keyword matching is plain substring search over the
lower-cased text, so a keyword inside a longer word (or inside a #tag) counts
as a hit.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field

from edubot.data.models import Category, Priority

logger = logging.getLogger(__name__)

MISSING_TITLE = "missing title"


class ParsedTask(BaseModel):
    """Structured task extracted from natural language.

    Example for "study math tomorrow by review chapter 5 #exam":
    {
        "title": "study math",
        "description": "review chapter 5",
        "priority": "medium",
        "category": "study",
        "due_at": "<tomorrow 09:00>",
        "tags": {"exam"}
    }
    """
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    category: Category = Category.GENERAL
    due_at: datetime | None = None
    tags: set[str] = Field(default_factory=set)


@dataclass(frozen=True)
class ParseError:
    """Input could not be turned into a task; `reason` is safe to show users."""

    reason: str


@dataclass(frozen=True)
class TimeMatch:
    """A recognised time expression and the span it occupied in the input."""

    due_at: datetime
    start: int
    end: int


# ---------------------------------------------------------------------------
# Time expressions
# ---------------------------------------------------------------------------

Resolver = Callable[[re.Match, datetime], datetime | None]


def _at_nine(day: datetime) -> datetime:
    return day.replace(hour=9, minute=0, second=0, microsecond=0)


def _to_24h(hour: int, minute: int, meridiem: str | None) -> tuple[int, int] | None:
    """Validate a wall-clock time and convert 12h notation. None when out of range."""
    if not 0 <= minute <= 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        meridiem = meridiem.lower()
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    elif not 0 <= hour <= 23:
        return None
    return hour, minute


def _at_clock(day: datetime, m: re.Match) -> datetime | None:
    converted = _to_24h(int(m.group(1)), int(m.group(2) or 0), m.group(3))
    if converted is None:
        return None
    hour, minute = converted
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _minutes_from_now(m: re.Match, now: datetime) -> datetime:
    return now + timedelta(minutes=int(m.group(1)))


def _hours_from_now(m: re.Match, now: datetime) -> datetime:
    return now + timedelta(hours=int(m.group(1)))


def _one_hour_from_now(m: re.Match, now: datetime) -> datetime:
    return now + timedelta(hours=1)


def _today_at(m: re.Match, now: datetime) -> datetime | None:
    return _at_clock(now, m)


def _tomorrow_at(m: re.Match, now: datetime) -> datetime | None:
    return _at_clock(now + timedelta(days=1), m)


def _tomorrow(m: re.Match, now: datetime) -> datetime:
    return _at_nine(now + timedelta(days=1))


def _next_week(m: re.Match, now: datetime) -> datetime:
    return _at_nine(now + timedelta(days=7))


_CLOCK = r"(\d{1,2})(?::(\d{2}))?(?:\s*(am|pm)\b)?"

# Ordered: the first pattern with a valid match wins, so the more specific
# "tomorrow at ..." must come before the bare "tomorrow".
TIME_PHRASES: tuple[tuple[re.Pattern, Resolver], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), resolver)
    for pattern, resolver in (
        (r"in\s+(\d+)\s+minutes?", _minutes_from_now),
        (r"in\s+(\d+)\s+hours?", _hours_from_now),
        (r"in\s+an\s+hour", _one_hour_from_now),
        (r"today\s+at\s+" + _CLOCK, _today_at),
        (r"tomorrow\s+at\s+" + _CLOCK, _tomorrow_at),
        (r"tomorrow", _tomorrow),
        (r"next\s+week", _next_week),
        (r"بعد\s+(\d+)\s+(?:دقائق|دقيقة)", _minutes_from_now),
        (r"بعد\s+(\d+)\s+(?:ساعات|ساعة)", _hours_from_now),
        (r"بعد\s+ساعة", _one_hour_from_now),
        (r"غداً|غدا", _tomorrow),
        (r"الأسبوع\s+القادم", _next_week),
    )
)

_CLOCK_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})(?:\s*(am|pm)\b)?", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})")


def _resolve_clock_time(m: re.Match, now: datetime) -> datetime | None:
    """H:MM today, or tomorrow when that time of day is not after `now`."""
    candidate = _at_clock(now, m)
    if candidate is None:
        return None
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _resolve_iso_date(m: re.Match, now: datetime) -> datetime:
    return datetime(int(m.group(1)), int(m.group(2)), int(m.group(3)), tzinfo=now.tzinfo)


_TIME_RULES: tuple[tuple[re.Pattern, Resolver], ...] = TIME_PHRASES + (
    (_CLOCK_TIME_RE, _resolve_clock_time),
    (_ISO_DATE_RE, _resolve_iso_date),
)


def extract_time(text: str, now: datetime) -> TimeMatch | None:
    """Find the first recognised time expression in `text`.

    Rules are tried in priority order (relative phrases, then H:MM, then
    YYYY-MM-DD). Within a rule, occurrences that resolve to an impossible
    time (25:00, 2026-02-30, an overflowing offset) are skipped.
    """
    for pattern, resolver in _TIME_RULES:
        for m in pattern.finditer(text):
            try:
                due_at = resolver(m, now)
            except (ValueError, OverflowError):
                continue
            if due_at is not None:
                return TimeMatch(due_at=due_at, start=m.start(), end=m.end())
    return None


# ---------------------------------------------------------------------------
# Keyword tables
# ---------------------------------------------------------------------------

PRIORITY_KEYWORDS: tuple[tuple[Priority, tuple[str, ...]], ...] = (
    (Priority.HIGH, ("urgent", "important", "critical", "asap", "مهم", "عاجل", "ضروري")),
    (Priority.MEDIUM, ("normal", "regular", "عادي")),
    (Priority.LOW, ("low", "when possible", "متاح")),
)

CATEGORY_KEYWORDS: tuple[tuple[Category, tuple[str, ...]], ...] = (
    (Category.WORK, ("work", "job", "office", "meeting", "project", "عمل", "وظيفة", "مشروع")),
    (Category.STUDY, ("study", "homework", "assignment", "exam", "test",
                      "دراسة", "واجب", "امتحان")),
    (Category.PERSONAL, ("personal", "family", "health", "exercise", "شخصي", "عائلة", "صحة")),
    (Category.SHOPPING, ("buy", "purchase", "shopping", "store", "شراء", "تسوق")),
    (Category.REMINDER, ("remind", "remember", "تذكير", "تذكر")),
)

_TAG_RE = re.compile(r"#(\w+)")
_SEPARATOR_RE = re.compile(r"\s+by\s+|\s+في\s+")


def extract_priority(text: str) -> Priority:
    lowered = text.lower()
    for priority, keywords in PRIORITY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return priority
    return Priority.MEDIUM


def extract_category(text: str) -> Category:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return Category.GENERAL


def extract_tags(text: str) -> tuple[set[str], str]:
    """Collect #tags (without the #) and return them with the text minus the tags."""
    tags = set(_TAG_RE.findall(text))
    if not tags:
        return tags, text
    return tags, _TAG_RE.sub("", text).strip()


def split_title(text: str) -> tuple[str, str]:
    """Split on the first separator phrase into (title, description)."""
    parts = _SEPARATOR_RE.split(text, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return text.strip(), ""


# ---------------------------------------------------------------------------
# Parser function
# ---------------------------------------------------------------------------


def parse_task_input(text: str, now: datetime) -> ParsedTask | ParseError:
    """Parse a task description (command prefix already stripped).

    Returns a ParseError only when no title is left; any other string,
    however malformed, yields a ParsedTask.
    """
    working = text.strip()
    if not working:
        return ParseError(MISSING_TITLE)

    due_at = None
    time_match = extract_time(working, now)
    if time_match is not None:
        due_at = time_match.due_at
        working = (working[:time_match.start] + working[time_match.end:]).strip()

    priority = extract_priority(working)
    category = extract_category(working)
    tags, working = extract_tags(working)
    title, description = split_title(working)

    if not title:
        logger.debug("No title left after extraction from %r", text[:80])
        return ParseError(MISSING_TITLE)

    parsed = ParsedTask(
        title=title,
        description=description,
        priority=priority,
        category=category,
        due_at=due_at,
        tags=tags,
    )
    logger.debug(
        "Parsed task %r: priority=%s category=%s due=%s tags=%s",
        parsed.title, parsed.priority.value, parsed.category.value, parsed.due_at, sorted(tags),
    )
    return parsed
