"""Time providers.

Core modules never call `datetime.now()` directly; they ask a Clock, so tests
can pin and advance time deterministically.
"""

from __future__ import annotations

from datetime import datetime, timedelta, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Source of the current, timezone-aware instant."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in a fixed timezone."""

    def __init__(self, tz: tzinfo | str) -> None:
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(self._tz)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        if start.tzinfo is None:
            raise ValueError("ManualClock needs a timezone-aware start instant")
        self._now = start

    @property
    def tz(self) -> tzinfo:
        return self._now.tzinfo

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = instant

    def advance(self, **kwargs: float) -> datetime:
        """Move forward by a timedelta built from kwargs, e.g. advance(hours=1)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
