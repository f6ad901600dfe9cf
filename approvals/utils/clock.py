"""
Injectable Clock.

Services that stamp history entries receive a ``Clock`` through their
constructor instead of calling ``datetime.now()`` directly, so tests can
pin and advance time deterministically.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

__all__ = ["Clock", "DeterministicClock", "SystemClock"]


class Clock(ABC):
    """Abstract clock.  ``now()`` always returns a timezone-aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Test clock that only moves when told to.

    ``now()`` returns the same value until :meth:`advance`, :meth:`tick`
    or :meth:`set_time` is called.
    """

    def __init__(self, fixed_time: Optional[datetime] = None) -> None:
        self._fixed_time: datetime = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds: int = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        self._advance_seconds += seconds

    def tick(self) -> datetime:
        """Advance by one second and return the new time."""
        self.advance(1)
        return self.now()
