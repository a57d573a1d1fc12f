"""
Clock -- injectable time source.

Lease expiry, scheduled retries, batch ``started_at``/``completed_at`` and
submission attempt stamps all read time through a Clock, never through
``datetime.now()`` directly.  Worker threads share one clock, so the test
clock is safe to read while another thread advances it.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2025, 7, 1, 9, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """``now()`` is timezone-aware; ``now_utc()`` is the same instant in UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock that only moves when told to.

    ``now()`` returns the same value until ``advance()``, ``tick()`` or
    ``set_time()`` is called.
    """

    def __init__(self, start: datetime | None = None):
        self._current = _aware(start or DEFAULT_TEST_TIME)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set_time(self, when: datetime) -> None:
        with self._lock:
            self._current = _aware(when)

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new time."""
        if seconds < 0:
            raise ValueError("A clock cannot move backwards")
        with self._lock:
            self._current += timedelta(seconds=seconds)
            return self._current

    def tick(self) -> datetime:
        return self.advance(1)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"Clock times must be timezone-aware, got {value!r}")
    return value
