"""
Clock helpers.

All timestamps in this service are naive UTC datetimes. Components take a
``Clock`` callable so tests can freeze and advance time.
"""

from datetime import datetime, date, timedelta, timezone
from typing import Callable, Tuple

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) datetime range covering a UTC calendar day."""
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


class FrozenClock:
    """
    Manually advanced clock.

    Used by tests and by backfill jobs that need a deterministic "now".
    """

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
