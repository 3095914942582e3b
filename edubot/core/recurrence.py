"""Recurrence expansion — pure date arithmetic.

Every occurrence is computed from the series anchor (`start + k * interval`)
rather than from the previous occurrence, so month-end overflow never drifts
the series. Expansion is always bounded by a horizon.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Iterator

from edubot.data.models import Frequency, RecurrenceRule

_DAYS_PER_UNIT = {Frequency.DAILY: 1, Frequency.WEEKLY: 7}


def add_interval(instant: datetime, frequency: Frequency, steps: int) -> datetime:
    """Move `instant` forward by `steps` days, weeks or calendar months.

    Months keep the day of month; when the target month is shorter, the
    excess days carry into the following month (Jan 31 + 1 month is Mar 3
    in a non-leap year).
    """
    if frequency is not Frequency.MONTHLY:
        return instant + timedelta(days=_DAYS_PER_UNIT[frequency] * steps)

    month_index = instant.month - 1 + steps
    year = instant.year + month_index // 12
    month = month_index % 12 + 1
    days_in_month = calendar.monthrange(year, month)[1]
    if instant.day <= days_in_month:
        return instant.replace(year=year, month=month)
    overflow = instant.day - days_in_month
    return instant.replace(year=year, month=month, day=days_in_month) + timedelta(days=overflow)


def max_gap(rule: RecurrenceRule) -> timedelta:
    """Upper bound on the distance between two consecutive occurrences."""
    if rule.frequency is Frequency.MONTHLY:
        return timedelta(days=31 * rule.interval + 3)
    return timedelta(days=_DAYS_PER_UNIT[rule.frequency] * rule.interval)


def _stop(rule: RecurrenceRule, horizon: datetime) -> datetime:
    if rule.until is None:
        return horizon
    return min(rule.until, horizon)


def _index_before(rule: RecurrenceRule, start: datetime, instant: datetime) -> int:
    """An occurrence index guaranteed not to be past `instant`."""
    if instant <= start:
        return 0
    if rule.frequency is Frequency.MONTHLY:
        months = (instant.year - start.year) * 12 + (instant.month - start.month)
        return max(0, months // rule.interval - 1)
    step = timedelta(days=_DAYS_PER_UNIT[rule.frequency] * rule.interval)
    return max(0, (instant - start) // step - 1)


def occurrences(
    rule: RecurrenceRule,
    start: datetime,
    horizon: datetime,
    first_index: int = 0,
) -> Iterator[datetime]:
    """Lazily yield occurrences from `start`, strictly before min(until, horizon)."""
    stop = _stop(rule, horizon)
    k = first_index
    while True:
        occurrence = add_interval(start, rule.frequency, k * rule.interval)
        if occurrence >= stop:
            return
        yield occurrence
        k += 1


def expand(
    rule: RecurrenceRule,
    start: datetime,
    now: datetime,
    horizon: datetime,
) -> list[datetime]:
    """All occurrences that are not earlier than `now`, bounded by the horizon."""
    return [
        occurrence
        for occurrence in occurrences(rule, start, horizon, _index_before(rule, start, now))
        if occurrence >= now
    ]


def next_occurrence(
    rule: RecurrenceRule,
    start: datetime,
    after: datetime,
    horizon: datetime,
) -> datetime | None:
    """First occurrence strictly after `after`, or None once the series is exhausted."""
    for occurrence in occurrences(rule, start, horizon, _index_before(rule, start, after)):
        if occurrence > after:
            return occurrence
    return None
