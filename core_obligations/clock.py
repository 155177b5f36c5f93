"""
Clock Module

Injectable time source. "Today" drives late fees and overdue promotion, so
the engine never calls date.today() directly.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Optional


class Clock(ABC):
    """Abstract clock interface"""
    
    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time"""
        pass
    
    def today(self) -> date:
        """Current calendar date"""
        return self.now().date()


class SystemClock(Clock):
    """Production clock returning actual system time"""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
    
    def today(self) -> date:
        # Calendar dates follow the host's local day, like the rest of the back office
        return date.today()


class FixedClock(Clock):
    """Test clock pinned to a given day, movable with advance_to()"""
    
    def __init__(self, today: date, now: Optional[datetime] = None):
        self._today = today
        self._now = now or datetime(today.year, today.month, today.day, 12, 0, tzinfo=timezone.utc)
    
    def now(self) -> datetime:
        return self._now
    
    def today(self) -> date:
        return self._today
    
    def advance_to(self, today: date) -> None:
        self._today = today
        self._now = datetime(today.year, today.month, today.day, 12, 0, tzinfo=timezone.utc)
