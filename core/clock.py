"""
core/clock.py -- Wall-clock access and datetime normalization.

Every service takes a `clock` callable instead of calling datetime.now()
inline, so tests can drive expiry deterministically with FakeClock.

Stores persist naive UTC datetimes (SQLite drops tzinfo anyway); to_db() and
from_db() are the only two places that convert.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(value: datetime) -> datetime:
    """Convert an aware datetime to the naive UTC form stored in the DB."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_db(value: datetime | None) -> datetime | None:
    """Re-attach UTC to a datetime read back from the DB."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FakeClock:
    """Controllable clock for tests. Starts at a fixed instant unless given one."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
