"""
Market calendar helpers.
"""

from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo


def _parse_clock(value: str) -> time:
    hour, minute = (int(part) for part in value.split(":"))
    return time(hour, minute)


class MarketCalendar:
    """Weekday trading session in a fixed timezone."""

    def __init__(
        self,
        timezone: str = "America/New_York",
        market_open: str = "09:30",
        market_close: str = "16:00",
    ):
        self.tz = ZoneInfo(timezone)
        self.open_time = _parse_clock(market_open)
        self.close_time = _parse_clock(market_close)

    def is_open(self, now: datetime) -> bool:
        """Check whether the session is open at now (an aware datetime)."""
        local = now.astimezone(self.tz)
        if local.weekday() >= 5:
            return False
        return self.open_time <= local.time() < self.close_time

    def last_close(self, now: datetime) -> datetime:
        """Most recent session close at or before now."""
        local = now.astimezone(self.tz)
        day = local.date()
        while True:
            if day.weekday() < 5:
                close = datetime.combine(day, self.close_time, tzinfo=self.tz)
                if close <= local:
                    return close
            day -= timedelta(days=1)

    def is_stale_after_close(self, last_check: Optional[datetime], now: datetime) -> bool:
        """
        True when the market is closed and last_check already saw the
        closing price, so a new quote cannot differ.
        """
        if last_check is None or self.is_open(now):
            return False
        return last_check >= self.last_close(now)
