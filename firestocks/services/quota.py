"""
Daily price-check quota.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from firestocks.database.repository import UsageRepository

logger = logging.getLogger(__name__)


class QuotaExceededError(Exception):
    """Raised when a user has used up today's price checks."""

    def __init__(self, usage_count: int, limit: int):
        super().__init__(f"Daily price check limit reached ({usage_count}/{limit})")
        self.usage_count = usage_count
        self.limit = limit


class PriceCheckQuota:
    """Fixed daily window (UTC date) with an atomic increment-and-check."""

    def __init__(self, usage: UsageRepository, max_daily_checks: int = 100):
        self.usage = usage
        self.max_daily_checks = max_daily_checks

    @staticmethod
    def _window(now: datetime) -> str:
        return now.astimezone(timezone.utc).date().isoformat()

    def consume(self, user_id: str, now: Optional[datetime] = None) -> tuple[int, int]:
        """
        Take one check from today's quota.

        Returns:
            (usage_count, remaining) after this check

        Raises:
            QuotaExceededError: If the daily limit is already reached
        """
        now = now or datetime.now(timezone.utc)
        allowed, count = self.usage.consume(
            user_id, self._window(now), self.max_daily_checks, now
        )
        if not allowed:
            logger.info(f"User {user_id} hit the daily price check limit")
            raise QuotaExceededError(count, self.max_daily_checks)
        return count, max(self.max_daily_checks - count, 0)

    def status(self, user_id: str, now: Optional[datetime] = None) -> tuple[int, int]:
        """Return (usage_count, remaining) without consuming a check."""
        now = now or datetime.now(timezone.utc)
        count = self.usage.get_count(user_id, self._window(now))
        return count, max(self.max_daily_checks - count, 0)
