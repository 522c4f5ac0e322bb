"""
Clock Module

Injectable time source so maturity and overdue logic can be driven
deterministically in tests.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time"""
        pass

    def today(self):
        return self.now().date()


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually advanced clock for tests and simulations"""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = value

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward, e.g. ``advance(days=31)``"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
