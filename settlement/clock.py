"""
clock.py - Sources of "now" for expiry comparisons

Positions persist entry and expiry as aware UTC datetimes, so every clock here
returns aware UTC datetimes as well. Reload math stays correct because the
persisted timestamps and the clock share one basis.

Classes:
- SystemClock: Wall-clock time in UTC
- ManualClock: Deterministic, externally advanced time for tests and replays
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from .core import utc


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __repr__(self):
        return "SystemClock()"


class ManualClock:
    """
    Clock that only moves when told to.

    Example:
        clock = ManualClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        clock.advance(seconds=60)
        clock.now()  # 2025-01-01 00:01:00+00:00
    """

    DEFAULT_START = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __init__(self, start: Optional[datetime] = None):
        self._now = utc(start) if start is not None else self.DEFAULT_START

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        """Jump to an absolute time. Moving backwards is rejected."""
        when = utc(when)
        if when < self._now:
            raise ValueError(f"Cannot move clock backwards: {when} < {self._now}")
        self._now = when

    def advance(self, delta: Union[timedelta, float, int, None] = None, *, seconds: float = 0,
                days: float = 0) -> datetime:
        """Advance by a timedelta, or by seconds/days keyword amounts. Returns the new time."""
        if delta is None:
            delta = timedelta(seconds=seconds, days=days)
        elif not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance by a negative amount: {delta}")
        self._now = self._now + delta
        return self._now

    def __repr__(self):
        return f"ManualClock({self._now.isoformat()})"
