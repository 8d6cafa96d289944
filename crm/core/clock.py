"""
Injectable time source.

Stage timestamps, alert day counts and default completion dates all read the
current time through ``utcnow()``. Tests swap the source with ``set_clock``
(usually a ``FrozenClock``) and restore it with ``reset_clock``.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable


def _system_now() -> datetime:
    return datetime.now(timezone.utc)


_now: Callable[[], datetime] = _system_now


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return _now()


def today() -> date:
    return utcnow().date()


def set_clock(fn: Callable[[], datetime]) -> None:
    global _now
    _now = fn


def reset_clock() -> None:
    global _now
    _now = _system_now


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class FrozenClock:
    """A clock that only moves when told to.

    Usage:
        clock = FrozenClock(datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))
        set_clock(clock)
        clock.advance(days=10)
    """

    def __init__(self, start: datetime) -> None:
        self.current = as_utc(start)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, *, days: int = 0, hours: int = 0, minutes: int = 0) -> datetime:
        self.current = self.current + timedelta(days=days, hours=hours, minutes=minutes)
        return self.current
