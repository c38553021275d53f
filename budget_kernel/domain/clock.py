"""
Injectable time source.

Services take a ``Clock`` instead of reading the system time, so period
checks ("is today inside an open period?") and audit timestamps are
reproducible in tests.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current instant (always timezone-aware, UTC)."""

    @abstractmethod
    def now(self) -> datetime: ...

    def today(self) -> date:
        """Business date used for period and cost center activity checks."""
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock frozen at a chosen instant.

    ``now()`` keeps returning the same value until ``set_time`` or
    ``advance`` moves it.
    """

    DEFAULT_INSTANT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or self.DEFAULT_INSTANT

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._current = time

    def advance(self, *, days: int = 0, seconds: int = 0) -> datetime:
        self._current += timedelta(days=days, seconds=seconds)
        return self._current
