"""
Injectable clocks.

Everything that compares timestamps (interval pacing, hold gating, failure
windows) asks a Clock for the current time instead of calling
``datetime.now`` directly, so the runner and coordinator can be driven
deterministically in tests.

Example:
    >>> clock = FrozenClock(datetime(2026, 1, 1, tzinfo=UTC))
    >>> t1 = clock.now()
    >>> clock.advance(timedelta(minutes=2))
    >>> clock.now() - t1
    datetime.timedelta(seconds=120)
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current time (timezone-aware, UTC)."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """
    A clock that only moves when told to.

    Args:
        start: Initial time. Defaults to the current UTC time.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime.now(UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward by ``delta`` and return the new time."""
        with self._lock:
            self._now = self._now + delta
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


__all__ = ["Clock", "SystemClock", "FrozenClock"]
