"""
Time sources.

Recalculation, FX lookups and snapshot creation read time through a Clock so
that results are reproducible in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta, date
from typing import Optional


class Clock(ABC):
    """Abstract time source"""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC instant"""
        pass

    def today(self) -> date:
        """Current UTC calendar date"""
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually driven clock for tests and replays"""

    def __init__(self, instant: Optional[datetime] = None):
        self._now = instant or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._now = instant

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (seconds=, days=, ...)"""
        self._now = self._now + timedelta(**kwargs)
        return self._now
