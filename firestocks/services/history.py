"""
Price-check run history: the per-user audit log of finished runs.
"""

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from firestocks.database.models import HistoryEntry
from firestocks.database.repository import HistoryRepository

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 50


class RunHistory:
    """Stores one summary per run, newest first, capped at max_entries."""

    def __init__(
        self,
        repository: HistoryRepository,
        max_entries: int = MAX_HISTORY_ENTRIES,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
    ):
        self.repository = repository
        self.max_entries = max_entries
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

    def build_entry(
        self, user_id: str, result: dict[str, Any], now: Optional[datetime] = None
    ) -> HistoryEntry:
        """Wrap a run response in a history entry."""
        now = now or datetime.now(timezone.utc)
        entry_id = f"price_check_{int(now.timestamp() * 1000)}"
        payload = {
            "id": entry_id,
            "timestamp": now.isoformat(),
            "type": "price_check",
            "title": f"Check Post Prices - {now.strftime('%Y-%m-%d')}",
            **result,
            "summary": {
                "checkedPosts": result.get("checkedPosts") or 0,
                "updatedPosts": result.get("updatedPosts") or 0,
                "remainingChecks": result.get("remainingChecks") or 0,
                "usageCount": result.get("usageCount") or 0,
            },
        }
        return HistoryEntry(id=entry_id, user_id=user_id, timestamp=now, payload=payload)

    def record(
        self, user_id: str, result: dict[str, Any], now: Optional[datetime] = None
    ) -> Optional[str]:
        """
        Append a run summary, retrying on failure.

        Never raises: the prediction table stays the source of truth, so a
        history write that keeps failing is only logged.

        Returns:
            The new entry ID, or None if every attempt failed
        """
        entry = self.build_entry(user_id, result, now)
        base_id, suffix = entry.id, 1
        # Two runs in the same millisecond
        while self.repository.get(user_id, entry.id) is not None:
            entry.id = f"{base_id}_{suffix}"
            suffix += 1
        entry.payload["id"] = entry.id

        for attempt in range(self.max_retries + 1):
            try:
                self.repository.add(entry, self.max_entries)
                logger.info(f"Saved price check {entry.id} for user {user_id}")
                return entry.id
            except Exception as e:
                logger.warning(
                    f"Failed to save price check history (attempt {attempt + 1}): {e}"
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay_seconds)

        logger.error(f"Giving up on price check history for user {user_id}")
        return None

    def list(self, user_id: str) -> list[dict[str, Any]]:
        """Get the user's history payloads, newest first."""
        return [entry.payload for entry in self.repository.list_for_user(user_id)]

    def get(self, user_id: str, entry_id: str) -> Optional[dict[str, Any]]:
        entry = self.repository.get(user_id, entry_id)
        return entry.payload if entry else None

    def delete(self, user_id: str, entry_id: str) -> bool:
        deleted = self.repository.delete(user_id, entry_id)
        if deleted:
            logger.info(f"Deleted history entry {entry_id}")
        return deleted

    def clear(self, user_id: str) -> int:
        removed = self.repository.clear(user_id)
        logger.info(f"Cleared {removed} history entries for user {user_id}")
        return removed

    def statistics(self, user_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        """Aggregate counters over the stored history."""
        history = self.repository.list_for_user(user_id)
        if not history:
            return {
                "totalChecks": 0,
                "totalPostsChecked": 0,
                "totalPostsUpdated": 0,
                "averageUpdatesPerCheck": 0,
                "lastCheckDate": None,
                "checksThisWeek": 0,
                "checksThisMonth": 0,
            }

        now = now or datetime.now(timezone.utc)
        one_week_ago = now - timedelta(days=7)
        one_month_ago = now - timedelta(days=30)

        total_checked = sum(e.payload.get("summary", {}).get("checkedPosts", 0) for e in history)
        total_updated = sum(e.payload.get("summary", {}).get("updatedPosts", 0) for e in history)

        return {
            "totalChecks": len(history),
            "totalPostsChecked": total_checked,
            "totalPostsUpdated": total_updated,
            "averageUpdatesPerCheck": round(total_updated / len(history), 2),
            "lastCheckDate": history[0].timestamp.isoformat(),
            "checksThisWeek": sum(1 for e in history if e.timestamp > one_week_ago),
            "checksThisMonth": sum(1 for e in history if e.timestamp > one_month_ago),
        }

    def export_json(self, user_id: str) -> str:
        """Serialize the full history array, pretty printed."""
        return json.dumps(self.list(user_id), indent=2, ensure_ascii=False)

    @staticmethod
    def export_filename(now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return f"price_check_history_{now.strftime('%Y-%m-%d')}.json"
