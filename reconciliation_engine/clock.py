"""
Reconciliation Engine - Clock.

============================================================
RESPONSIBILITY
============================================================
Unified, testable UTC clock for lookback windows, timestamps,
circuit-breaker cooldowns and cache TTLs.

- UTC only, always timezone-aware
- Mockable for deterministic tests

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import time


class ClockProtocol(ABC):
    """Abstract interface for the clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Get a monotonic reading in seconds."""
        pass


class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._time

    def monotonic(self) -> float:
        return self._monotonic

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        delta = timedelta(seconds=seconds, **kwargs)
        self._time = self._time + delta
        self._monotonic += delta.total_seconds()


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_millis(value) -> Optional[datetime]:
    """Convert an exchange millisecond timestamp (str or int) to UTC datetime."""
    if value in (None, "", "0", 0):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def to_millis(value: datetime) -> int:
    """Convert a datetime to exchange milliseconds."""
    return int(ensure_utc(value).timestamp() * 1000)
