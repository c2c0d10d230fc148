"""
Civil Calendar

Every "today" in the engine is the civil date in the jurisdiction's timezone,
never the host's local date. Day counts, idempotency windows and task dates
all derive from this clock.
"""

from datetime import datetime, date, time, timezone
from typing import Optional

import pytz


DEFAULT_TIMEZONE = "Asia/Kolkata"


class CivilClock:
    """Clock pinned to a single named timezone"""

    def __init__(self, tz_name: str = DEFAULT_TIMEZONE):
        self.tz_name = tz_name
        self.tz = pytz.timezone(tz_name)

    def now(self) -> datetime:
        """Current instant as an aware datetime in the civil timezone"""
        return datetime.now(timezone.utc).astimezone(self.tz)

    def today(self) -> date:
        """Current civil date"""
        return self.now().date()

    def start_of_day(self, day: date) -> datetime:
        """Aware datetime at civil midnight of a date"""
        return self.tz.localize(datetime.combine(day, time.min))

    def civil_date(self, instant: datetime) -> date:
        """Civil date of an instant; naive datetimes are taken as UTC"""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz).date()


class FixedClock(CivilClock):
    """Clock frozen at a given instant, for batch replays and tests"""

    def __init__(self, frozen: datetime, tz_name: str = DEFAULT_TIMEZONE):
        super().__init__(tz_name)
        if frozen.tzinfo is None:
            frozen = self.tz.localize(frozen)
        self._frozen = frozen

    def now(self) -> datetime:
        return self._frozen.astimezone(self.tz)

    def set(self, frozen: datetime) -> None:
        """Move the clock to another instant"""
        if frozen.tzinfo is None:
            frozen = self.tz.localize(frozen)
        self._frozen = frozen

    @classmethod
    def at_date(cls, day: date, hour: int = 10, tz_name: str = DEFAULT_TIMEZONE) -> "FixedClock":
        """Clock frozen at a given hour of a civil date"""
        return cls(datetime(day.year, day.month, day.day, hour, 0, 0), tz_name)


def civil_today(clock: Optional[CivilClock] = None) -> date:
    """Today's civil date from the given clock, or the default jurisdiction clock"""
    return (clock or CivilClock()).today()
