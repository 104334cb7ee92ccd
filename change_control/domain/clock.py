"""
Clock -- injectable time source.

Services that stamp ``requested_at``, ``decided_at``, ``approved_at`` or
``changed_at`` receive a Clock through their constructor and never call
``datetime.now()`` themselves.  Tests inject ``DeterministicClock`` so that
approval timestamps and change-log ordering are reproducible.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Abstract clock; ``now()`` is always timezone-aware UTC."""

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

    ``now()`` returns the same value until ``advance()``, ``tick()`` or
    ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._offset = timedelta()

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._offset = timedelta()

    def advance(self, seconds: int = 1) -> None:
        self._offset += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        """Advance by one second and return the new time."""
        self.advance(1)
        return self.now()
