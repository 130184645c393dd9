"""
Date and time helpers.
Handles clock access, timezone normalization and local-hour checks.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

Clock = Callable[[], datetime]


class DateService:
    """Service for date-related operations"""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock

    def now(self) -> datetime:
        """Current time, timezone-aware"""
        if self._clock is not None:
            return self.ensure_aware(self._clock())
        return datetime.now(timezone.utc).astimezone()

    def today(self) -> date:
        """Current local date"""
        return self.now().date()

    @staticmethod
    def ensure_aware(value: datetime) -> datetime:
        """
        Attach UTC to naive datetimes.

        Some stores (SQLite) hand back naive values for timezone-aware columns.
        """
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @staticmethod
    def is_before_hour(moment: datetime, hour: int) -> bool:
        """Check whether a moment falls before the given hour of its own day"""
        return moment.hour < hour

    def time_remaining(self, deadline: datetime) -> Tuple[int, int, int]:
        """
        Time left until a deadline.

        Args:
            deadline: Target moment

        Returns:
            Tuple of (days, hours, minutes); all zero once the deadline passed
        """
        difference = self.ensure_aware(deadline) - self.now()
        if difference <= timedelta(0):
            return 0, 0, 0

        days = difference.days
        hours, remainder = divmod(difference.seconds, 3600)
        minutes = remainder // 60
        return days, hours, minutes
