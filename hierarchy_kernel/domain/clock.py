"""
Clock -- injectable time source.

Responsibility:
    Services and the cascade calculator never call ``datetime.now()``
    directly; they receive a Clock.  Audit timestamps, history entries,
    overdue sweeps and the "timeline must be in the future" check all
    read the same injected instance.

Architecture position:
    Kernel > Domain.  SystemClock is the only sanctioned source of wall time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Abstract clock. ``now()`` always returns an aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value until ``advance()`` or
          ``set_time()`` is called.
        - Naive datetimes passed in are treated as UTC.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = ensure_utc(
            fixed_time or datetime(2025, 5, 1, 9, 0, 0, tzinfo=timezone.utc)
        )

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = ensure_utc(time)

    def advance(self, seconds: float = 0, *, days: float = 0, hours: float = 0) -> datetime:
        self._current += timedelta(days=days, hours=hours, seconds=seconds)
        return self._current


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
