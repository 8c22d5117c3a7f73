"""
Injectable wall clock
"""
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time"""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Clock backed by the system time (naive UTC, as stored in the database)"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


# Global instance
system_clock = SystemClock()
