"""
Repository classes for CRUD operations.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from .connection import Database
from .models import (
    User,
    Prediction,
    Follow,
    TelegramBot,
    Subscriber,
    Broadcast,
    BroadcastRecipient,
    TelegramNotification,
    WhatsAppTemplate,
    WhatsAppNotification,
    Subscription,
    HistoryEntry,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # CURRENT_TIMESTAMP defaults are UTC without an offset
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users
                (id, username, full_name, email, whatsapp_number,
                 whatsapp_notifications_enabled, notification_preferences)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.username,
                    user.full_name,
                    user.email,
                    user.whatsapp_number,
                    1 if user.whatsapp_notifications_enabled else 0,
                    json.dumps(user.notification_preferences),
                ),
            )
            return user

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_user(row)

    def update(self, user: User) -> None:
        """Update user details."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET username = ?, full_name = ?, email = ?, whatsapp_number = ?,
                    whatsapp_notifications_enabled = ?, notification_preferences = ?
                WHERE id = ?
                """,
                (
                    user.username,
                    user.full_name,
                    user.email,
                    user.whatsapp_number,
                    1 if user.whatsapp_notifications_enabled else 0,
                    json.dumps(user.notification_preferences),
                    user.id,
                ),
            )

    def list_all(self) -> list[User]:
        """List all users."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users ORDER BY created_at, id")
            return [self._row_to_user(row) for row in cursor.fetchall()]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            username=row["username"],
            full_name=row["full_name"],
            email=row["email"],
            whatsapp_number=row["whatsapp_number"],
            whatsapp_notifications_enabled=bool(row["whatsapp_notifications_enabled"]),
            notification_preferences=json.loads(row["notification_preferences"] or "{}"),
            created_at=_from_iso(row["created_at"]),
        )


class FollowRepository:
    """Follower relationships between users."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, follower_id: str, following_id: str) -> Follow:
        """Make follower_id follow following_id."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT INTO follows (follower_id, following_id) VALUES (?, ?)",
                (follower_id, following_id),
            )
            return Follow(id=cursor.lastrowid, follower_id=follower_id, following_id=following_id)

    def remove(self, follower_id: str, following_id: str) -> None:
        """Remove a follow relationship."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "DELETE FROM follows WHERE follower_id = ? AND following_id = ?",
                (follower_id, following_id),
            )

    def get_followers(self, user_id: str) -> list[User]:
        """Get all users following user_id."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT u.* FROM users u
                JOIN follows f ON u.id = f.follower_id
                WHERE f.following_id = ?
                ORDER BY f.id
                """,
                (user_id,),
            )
            users = UserRepository(self.db)
            return [users._row_to_user(row) for row in cursor.fetchall()]


class PredictionRepository:
    """CRUD operations for predictions (posts)."""

    # Columns the price-check pipeline may write
    MUTABLE_FIELDS = (
        "current_price",
        "last_price",
        "last_price_check",
        "closed",
        "target_reached",
        "target_reached_date",
        "stop_loss_triggered",
        "stop_loss_triggered_date",
    )

    def __init__(self, db: Database):
        self.db = db

    def create(self, prediction: Prediction) -> Prediction:
        """Create a new prediction."""
        if prediction.id is None:
            prediction.id = uuid.uuid4().hex
        if prediction.created_at is None:
            prediction.created_at = _now()
        if prediction.current_price is None:
            prediction.current_price = prediction.initial_price

        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO posts
                (id, user_id, symbol, company_name, exchange, country, initial_price,
                 current_price, last_price, target_price, stop_loss_price, strategy,
                 content, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    prediction.id,
                    prediction.user_id,
                    prediction.symbol,
                    prediction.company_name,
                    prediction.exchange,
                    prediction.country,
                    prediction.initial_price,
                    prediction.current_price,
                    prediction.last_price,
                    prediction.target_price,
                    prediction.stop_loss_price,
                    prediction.strategy,
                    prediction.content,
                    _to_iso(prediction.created_at),
                ),
            )
            return prediction

    def get_by_id(self, prediction_id: str) -> Optional[Prediction]:
        """Get prediction by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM posts WHERE id = ?", (prediction_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_prediction(row)

    def get_many(self, prediction_ids: list[str]) -> list[Prediction]:
        """Get predictions by ID, in the order given. Unknown IDs are skipped."""
        found = []
        for prediction_id in prediction_ids:
            prediction = self.get_by_id(prediction_id)
            if prediction is not None:
                found.append(prediction)
        return found

    def list_open(self, user_id: str) -> list[Prediction]:
        """Get the user's predictions that are not closed, oldest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM posts
                WHERE user_id = ? AND closed = 0
                ORDER BY created_at, rowid
                """,
                (user_id,),
            )
            return [self._row_to_prediction(row) for row in cursor.fetchall()]

    def list_by_user(self, user_id: str) -> list[Prediction]:
        """Get all of the user's predictions, oldest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM posts WHERE user_id = ? ORDER BY created_at, rowid",
                (user_id,),
            )
            return [self._row_to_prediction(row) for row in cursor.fetchall()]

    def count_closed(self, user_id: str) -> int:
        """Count the user's closed predictions."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM posts WHERE user_id = ? AND closed = 1",
                (user_id,),
            )
            return cursor.fetchone()[0]

    def apply_update(
        self, prediction_id: str, expected_version: int, changes: dict[str, Any]
    ) -> bool:
        """
        Apply a compare-and-swap update to one prediction.

        The row is only written when its version still equals
        expected_version; the version is bumped on success.

        Args:
            prediction_id: Prediction to update
            expected_version: Version read before evaluation
            changes: Column values, restricted to MUTABLE_FIELDS

        Returns:
            True if the row was updated, False if another writer got there first
        """
        unknown = set(changes) - set(self.MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        assignments = []
        values: list[Any] = []
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bool):
                value = 1 if value else 0
            values.append(value)
        assignments.append("version = version + 1")

        with self.db.transaction() as cursor:
            cursor.execute(
                f"UPDATE posts SET {', '.join(assignments)} WHERE id = ? AND version = ?",
                (*values, prediction_id, expected_version),
            )
            return cursor.rowcount == 1

    def delete(self, prediction_id: str) -> None:
        """Delete a prediction."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM posts WHERE id = ?", (prediction_id,))

    def _row_to_prediction(self, row) -> Prediction:
        """Convert database row to Prediction."""
        return Prediction(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            company_name=row["company_name"],
            exchange=row["exchange"],
            country=row["country"],
            initial_price=row["initial_price"],
            current_price=row["current_price"],
            last_price=row["last_price"],
            target_price=row["target_price"],
            stop_loss_price=row["stop_loss_price"],
            strategy=row["strategy"],
            content=row["content"],
            created_at=_from_iso(row["created_at"]),
            last_price_check=_from_iso(row["last_price_check"]),
            closed=bool(row["closed"]),
            target_reached=bool(row["target_reached"]),
            target_reached_date=_from_iso(row["target_reached_date"]),
            stop_loss_triggered=bool(row["stop_loss_triggered"]),
            stop_loss_triggered_date=_from_iso(row["stop_loss_triggered_date"]),
            version=row["version"],
        )


class UsageRepository:
    """Per-user daily price-check counters."""

    def __init__(self, db: Database):
        self.db = db

    def consume(
        self, user_id: str, check_date: str, limit: int, now: Optional[datetime] = None
    ) -> tuple[bool, int]:
        """
        Atomically take one check from the user's quota for check_date.

        Returns:
            (allowed, count) where count is the usage after this call
        """
        now = now or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO price_check_usage (user_id, check_date, count)
                VALUES (?, ?, 0)
                ON CONFLICT(user_id, check_date) DO NOTHING
                """,
                (user_id, check_date),
            )
            cursor.execute(
                """
                UPDATE price_check_usage
                SET count = count + 1, last_check = ?
                WHERE user_id = ? AND check_date = ? AND count < ?
                """,
                (now.isoformat(), user_id, check_date, limit),
            )
            allowed = cursor.rowcount == 1
            return allowed, self.get_count(user_id, check_date)

    def get_count(self, user_id: str, check_date: str) -> int:
        """Get checks consumed on check_date."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT count FROM price_check_usage WHERE user_id = ? AND check_date = ?",
                (user_id, check_date),
            )
            row = cursor.fetchone()
            return row["count"] if row else 0


class HistoryRepository:
    """Per-user price-check run history, newest first."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, entry: HistoryEntry, max_entries: int) -> None:
        """Insert an entry and evict the oldest beyond max_entries."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM price_check_history WHERE user_id = ?",
                (entry.user_id,),
            )
            seq = cursor.fetchone()[0] + 1
            cursor.execute(
                """
                INSERT INTO price_check_history (id, user_id, created_at, seq, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.timestamp.isoformat(),
                    seq,
                    json.dumps(entry.payload),
                ),
            )
            cursor.execute(
                """
                DELETE FROM price_check_history
                WHERE user_id = ? AND id NOT IN (
                    SELECT id FROM price_check_history
                    WHERE user_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                )
                """,
                (entry.user_id, entry.user_id, max_entries),
            )

    def list_for_user(self, user_id: str) -> list[HistoryEntry]:
        """Get the user's history, newest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM price_check_history WHERE user_id = ? ORDER BY seq DESC",
                (user_id,),
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get(self, user_id: str, entry_id: str) -> Optional[HistoryEntry]:
        """Get one of the user's entries."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM price_check_history WHERE user_id = ? AND id = ?",
                (user_id, entry_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_entry(row)

    def delete(self, user_id: str, entry_id: str) -> bool:
        """Delete one entry. Returns False if it did not exist."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "DELETE FROM price_check_history WHERE user_id = ? AND id = ?",
                (user_id, entry_id),
            )
            return cursor.rowcount > 0

    def clear(self, user_id: str) -> int:
        """Delete all of the user's entries. Returns the number removed."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM price_check_history WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def _row_to_entry(self, row) -> HistoryEntry:
        """Convert database row to HistoryEntry."""
        return HistoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            timestamp=_from_iso(row["created_at"]),
            payload=json.loads(row["payload"]),
        )


class TelegramBotRepository:
    """CRUD operations for traders' Telegram bots."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, bot: TelegramBot) -> TelegramBot:
        """Register a bot."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO telegram_bots (user_id, bot_token, bot_name, is_active)
                VALUES (?, ?, ?, ?)
                """,
                (bot.user_id, bot.bot_token, bot.bot_name, 1 if bot.is_active else 0),
            )
            bot.id = cursor.lastrowid
            return bot

    def get_by_id(self, bot_id: int) -> Optional[TelegramBot]:
        """Get bot by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM telegram_bots WHERE id = ?", (bot_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_bot(row)

    def get_active_for_user(self, user_id: str) -> Optional[TelegramBot]:
        """Get the user's active bot, if any."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM telegram_bots
                WHERE user_id = ? AND is_active = 1
                ORDER BY id LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_bot(row)

    def list_active(self) -> list[TelegramBot]:
        """List all active bots."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM telegram_bots WHERE is_active = 1 ORDER BY id")
            return [self._row_to_bot(row) for row in cursor.fetchall()]

    def _row_to_bot(self, row) -> TelegramBot:
        """Convert database row to TelegramBot."""
        return TelegramBot(
            id=row["id"],
            user_id=row["user_id"],
            bot_token=row["bot_token"],
            bot_name=row["bot_name"],
            is_active=bool(row["is_active"]),
        )


class SubscriberRepository:
    """Telegram subscribers. Rows are toggled, never deleted."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, subscriber: Subscriber, now: Optional[datetime] = None) -> Subscriber:
        """Create the subscriber or re-subscribe an existing one."""
        now = now or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO telegram_subscribers
                (bot_id, telegram_user_id, telegram_username, telegram_first_name,
                 telegram_last_name, is_subscribed, subscribed_at, last_interaction)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(bot_id, telegram_user_id) DO UPDATE SET
                    telegram_username = excluded.telegram_username,
                    telegram_first_name = excluded.telegram_first_name,
                    telegram_last_name = excluded.telegram_last_name,
                    is_subscribed = 1,
                    subscribed_at = excluded.subscribed_at,
                    last_interaction = excluded.last_interaction
                """,
                (
                    subscriber.bot_id,
                    subscriber.telegram_user_id,
                    subscriber.telegram_username,
                    subscriber.telegram_first_name,
                    subscriber.telegram_last_name,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            return self.get_by_telegram_user(subscriber.bot_id, subscriber.telegram_user_id)

    def set_subscribed(
        self,
        bot_id: int,
        telegram_user_id: int,
        is_subscribed: bool,
        now: Optional[datetime] = None,
    ) -> bool:
        """Toggle a subscription. Returns False if the subscriber is unknown."""
        now = now or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE telegram_subscribers
                SET is_subscribed = ?, last_interaction = ?
                WHERE bot_id = ? AND telegram_user_id = ?
                """,
                (1 if is_subscribed else 0, now.isoformat(), bot_id, telegram_user_id),
            )
            return cursor.rowcount > 0

    def set_notification_flags(
        self,
        subscriber_id: int,
        notify_broadcasts: Optional[bool] = None,
        notify_price_alerts: Optional[bool] = None,
    ) -> None:
        """Update per-type notification flags."""
        current = self.get_by_id(subscriber_id)
        if current is None:
            return
        if notify_broadcasts is None:
            notify_broadcasts = current.notify_broadcasts
        if notify_price_alerts is None:
            notify_price_alerts = current.notify_price_alerts
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE telegram_subscribers
                SET notify_broadcasts = ?, notify_price_alerts = ?
                WHERE id = ?
                """,
                (int(notify_broadcasts), int(notify_price_alerts), subscriber_id),
            )

    def get_by_id(self, subscriber_id: int) -> Optional[Subscriber]:
        """Get subscriber by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM telegram_subscribers WHERE id = ?", (subscriber_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_subscriber(row)

    def get_by_telegram_user(self, bot_id: int, telegram_user_id: int) -> Optional[Subscriber]:
        """Get a bot's subscriber by Telegram user ID."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM telegram_subscribers
                WHERE bot_id = ? AND telegram_user_id = ?
                """,
                (bot_id, telegram_user_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_subscriber(row)

    def list_for_bot(self, bot_id: int, only_subscribed: bool = True) -> list[Subscriber]:
        """List a bot's subscribers."""
        with self.db.transaction() as cursor:
            query = "SELECT * FROM telegram_subscribers WHERE bot_id = ?"
            if only_subscribed:
                query += " AND is_subscribed = 1"
            cursor.execute(query + " ORDER BY id", (bot_id,))
            return [self._row_to_subscriber(row) for row in cursor.fetchall()]

    def list_for_telegram_user(self, telegram_user_id: int) -> list[Subscriber]:
        """List every bot registration of one Telegram user."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM telegram_subscribers WHERE telegram_user_id = ? ORDER BY bot_id",
                (telegram_user_id,),
            )
            return [self._row_to_subscriber(row) for row in cursor.fetchall()]

    def _row_to_subscriber(self, row) -> Subscriber:
        """Convert database row to Subscriber."""
        return Subscriber(
            id=row["id"],
            bot_id=row["bot_id"],
            telegram_user_id=row["telegram_user_id"],
            telegram_username=row["telegram_username"],
            telegram_first_name=row["telegram_first_name"],
            telegram_last_name=row["telegram_last_name"],
            is_subscribed=bool(row["is_subscribed"]),
            notify_broadcasts=bool(row["notify_broadcasts"]),
            notify_price_alerts=bool(row["notify_price_alerts"]),
            subscribed_at=_from_iso(row["subscribed_at"]),
            last_interaction=_from_iso(row["last_interaction"]),
        )


class BroadcastRepository:
    """Broadcasts, their selected posts and per-recipient delivery rows."""

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        broadcast: Broadcast,
        post_ids: list[str],
        subscriber_ids: list[int],
    ) -> Broadcast:
        """Create a pending broadcast with its post and recipient rows."""
        broadcast.status = "pending"
        broadcast.created_at = broadcast.created_at or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO telegram_broadcasts
                (bot_id, sender_id, title, message, broadcast_type, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    broadcast.bot_id,
                    broadcast.sender_id,
                    broadcast.title,
                    broadcast.message,
                    broadcast.broadcast_type,
                    broadcast.created_at.isoformat(),
                ),
            )
            broadcast.id = cursor.lastrowid
            cursor.executemany(
                """
                INSERT OR IGNORE INTO telegram_broadcast_posts (broadcast_id, post_id, position)
                VALUES (?, ?, ?)
                """,
                [(broadcast.id, post_id, i) for i, post_id in enumerate(post_ids)],
            )
            cursor.executemany(
                """
                INSERT OR IGNORE INTO telegram_broadcast_recipients (broadcast_id, subscriber_id)
                VALUES (?, ?)
                """,
                [(broadcast.id, subscriber_id) for subscriber_id in subscriber_ids],
            )
            return broadcast

    def get_by_id(self, broadcast_id: int) -> Optional[Broadcast]:
        """Get broadcast by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM telegram_broadcasts WHERE id = ?", (broadcast_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_broadcast(row)

    def get_post_ids(self, broadcast_id: int) -> list[str]:
        """Get the broadcast's selected post IDs in selection order."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT post_id FROM telegram_broadcast_posts
                WHERE broadcast_id = ? ORDER BY position
                """,
                (broadcast_id,),
            )
            return [row["post_id"] for row in cursor.fetchall()]

    def list_recipients(
        self, broadcast_id: int, status: Optional[str] = None
    ) -> list[tuple[BroadcastRecipient, Subscriber]]:
        """Get recipients joined with their subscriber rows."""
        query = """
            SELECT r.id AS recipient_id, r.broadcast_id, r.status AS recipient_status,
                   r.telegram_message_id, r.error_message, r.sent_at, s.*
            FROM telegram_broadcast_recipients r
            JOIN telegram_subscribers s ON s.id = r.subscriber_id
            WHERE r.broadcast_id = ?
        """
        params: list[Any] = [broadcast_id]
        if status is not None:
            query += " AND r.status = ?"
            params.append(status)
        with self.db.transaction() as cursor:
            cursor.execute(query + " ORDER BY r.id", params)

            subscribers = SubscriberRepository(self.db)
            result = []
            for row in cursor.fetchall():
                recipient = BroadcastRecipient(
                    id=row["recipient_id"],
                    broadcast_id=row["broadcast_id"],
                    subscriber_id=row["id"],
                    status=row["recipient_status"],
                    telegram_message_id=row["telegram_message_id"],
                    error_message=row["error_message"],
                    sent_at=_from_iso(row["sent_at"]),
                )
                result.append((recipient, subscribers._row_to_subscriber(row)))
            return result

    def mark_recipient_sent(
        self, recipient_id: int, telegram_message_id: Optional[int], now: Optional[datetime] = None
    ) -> None:
        """Record a successful delivery."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE telegram_broadcast_recipients
                SET status = 'sent', sent_at = ?, telegram_message_id = ?
                WHERE id = ?
                """,
                ((now or _now()).isoformat(), telegram_message_id, recipient_id),
            )

    def mark_recipient_failed(self, recipient_id: int, error_message: str) -> None:
        """Record a failed delivery."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE telegram_broadcast_recipients
                SET status = 'failed', error_message = ?
                WHERE id = ?
                """,
                (error_message, recipient_id),
            )

    def mark_recipient_skipped(self, recipient_id: int, reason: str) -> None:
        """Record a recipient that opted out before delivery."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE telegram_broadcast_recipients
                SET status = 'skipped', error_message = ?
                WHERE id = ?
                """,
                (reason, recipient_id),
            )

    def transition(
        self,
        broadcast_id: int,
        from_statuses: tuple[str, ...],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """
        Move a broadcast to to_status if it is currently in from_statuses.

        Extra keyword arguments are written alongside the status
        (sent_at, completed_at, sent_count, failed_count).
        """
        allowed = {"sent_at", "completed_at", "sent_count", "failed_count"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        assignments = ["status = ?"]
        values: list[Any] = [to_status]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            values.append(value.isoformat() if isinstance(value, datetime) else value)

        placeholders = ", ".join("?" for _ in from_statuses)
        with self.db.transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE telegram_broadcasts
                SET {', '.join(assignments)}
                WHERE id = ? AND status IN ({placeholders})
                """,
                (*values, broadcast_id, *from_statuses),
            )
            return cursor.rowcount == 1

    def _row_to_broadcast(self, row) -> Broadcast:
        """Convert database row to Broadcast."""
        return Broadcast(
            id=row["id"],
            bot_id=row["bot_id"],
            sender_id=row["sender_id"],
            title=row["title"],
            message=row["message"],
            broadcast_type=row["broadcast_type"],
            status=row["status"],
            sent_count=row["sent_count"],
            failed_count=row["failed_count"],
            created_at=_from_iso(row["created_at"]),
            sent_at=_from_iso(row["sent_at"]),
            completed_at=_from_iso(row["completed_at"]),
        )


class TelegramNotificationRepository:
    """Audit log of delivered Telegram messages."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, notification: TelegramNotification) -> TelegramNotification:
        """Insert an audit row."""
        notification.created_at = notification.created_at or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO telegram_notifications
                (bot_id, subscriber_id, notification_type, broadcast_id,
                 telegram_message_id, message_text, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.bot_id,
                    notification.subscriber_id,
                    notification.notification_type,
                    notification.broadcast_id,
                    notification.telegram_message_id,
                    notification.message_text,
                    notification.status,
                    notification.created_at.isoformat(),
                ),
            )
            notification.id = cursor.lastrowid
            return notification

    def list_for_broadcast(self, broadcast_id: int) -> list[TelegramNotification]:
        """Get audit rows for one broadcast."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM telegram_notifications WHERE broadcast_id = ? ORDER BY id",
                (broadcast_id,),
            )
            return [
                TelegramNotification(
                    id=row["id"],
                    bot_id=row["bot_id"],
                    subscriber_id=row["subscriber_id"],
                    notification_type=row["notification_type"],
                    broadcast_id=row["broadcast_id"],
                    telegram_message_id=row["telegram_message_id"],
                    message_text=row["message_text"],
                    status=row["status"],
                    created_at=_from_iso(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]


class WhatsAppRepository:
    """WhatsApp templates and per-recipient notification rows."""

    def __init__(self, db: Database):
        self.db = db

    def create_template(self, template: WhatsAppTemplate) -> WhatsAppTemplate:
        """Add a message template."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO whatsapp_message_templates
                (template_name, template_type, language_code, subject, body_template, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    template.template_name,
                    template.template_type,
                    template.language_code,
                    template.subject,
                    template.body_template,
                    1 if template.is_active else 0,
                ),
            )
            template.id = cursor.lastrowid
            return template

    def get_template(self, template_type: str, language_code: str) -> Optional[WhatsAppTemplate]:
        """Get the active template for a type and language."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM whatsapp_message_templates
                WHERE template_type = ? AND language_code = ? AND is_active = 1
                ORDER BY id DESC LIMIT 1
                """,
                (template_type, language_code),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return WhatsAppTemplate(
                id=row["id"],
                template_name=row["template_name"],
                template_type=row["template_type"],
                language_code=row["language_code"],
                subject=row["subject"],
                body_template=row["body_template"],
                is_active=bool(row["is_active"]),
            )

    def log_notification(self, notification: WhatsAppNotification) -> WhatsAppNotification:
        """Insert a notification row (normally status 'pending')."""
        now = _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO whatsapp_notifications
                (recipient_id, post_id, message_content, message_type, status,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.recipient_id,
                    notification.post_id,
                    notification.message_content,
                    notification.message_type,
                    notification.status,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            notification.id = cursor.lastrowid
            notification.created_at = now
            return notification

    def update_status(
        self,
        notification_id: int,
        status: str,
        whatsapp_message_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome of a send attempt."""
        now = _now().isoformat()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE whatsapp_notifications
                SET status = ?, whatsapp_message_id = ?, error_message = ?,
                    sent_at = CASE WHEN ? = 'sent' THEN ? ELSE sent_at END,
                    updated_at = ?
                WHERE id = ?
                """,
                (status, whatsapp_message_id, error_message, status, now, now, notification_id),
            )

    def list_notifications(self, post_id: Optional[str] = None) -> list[WhatsAppNotification]:
        """List notification rows, optionally for one post."""
        with self.db.transaction() as cursor:
            if post_id is None:
                cursor.execute("SELECT * FROM whatsapp_notifications ORDER BY id")
            else:
                cursor.execute(
                    "SELECT * FROM whatsapp_notifications WHERE post_id = ? ORDER BY id",
                    (post_id,),
                )
            return [
                WhatsAppNotification(
                    id=row["id"],
                    recipient_id=row["recipient_id"],
                    post_id=row["post_id"],
                    message_content=row["message_content"],
                    message_type=row["message_type"],
                    status=row["status"],
                    whatsapp_message_id=row["whatsapp_message_id"],
                    error_message=row["error_message"],
                    sent_at=_from_iso(row["sent_at"]),
                    created_at=_from_iso(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]


class SubscriptionRepository:
    """Billing subscriptions and their event log."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, subscription: Subscription) -> Subscription:
        """Create a subscription row."""
        subscription.updated_at = subscription.updated_at or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO user_subscriptions
                (user_id, plan_name, status, paypal_subscription_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    subscription.user_id,
                    subscription.plan_name,
                    subscription.status,
                    subscription.paypal_subscription_id,
                    subscription.updated_at.isoformat(),
                ),
            )
            subscription.id = cursor.lastrowid
            return subscription

    def get_active(self, user_id: str) -> Optional[Subscription]:
        """Get the user's active subscription row."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM user_subscriptions
                WHERE user_id = ? AND status = 'active'
                ORDER BY id DESC LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_subscription(row)

    def get_by_paypal_id(self, paypal_subscription_id: str) -> Optional[Subscription]:
        """Find a subscription by its PayPal subscription ID."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM user_subscriptions
                WHERE paypal_subscription_id = ?
                ORDER BY id DESC LIMIT 1
                """,
                (paypal_subscription_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_subscription(row)

    def list_for_user(self, user_id: str) -> list[Subscription]:
        """List all of a user's subscription rows."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM user_subscriptions WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
            return [self._row_to_subscription(row) for row in cursor.fetchall()]

    def expire_cancelled(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Move previously cancelled rows to 'expired'."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE user_subscriptions
                SET status = 'expired', updated_at = ?
                WHERE user_id = ? AND status = 'cancelled'
                """,
                ((now or _now()).isoformat(), user_id),
            )

    def cancel_active(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Cancel the user's active rows. Returns the number of rows changed."""
        now = now or _now()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE user_subscriptions
                SET status = 'cancelled', cancelled_at = ?, updated_at = ?
                WHERE user_id = ? AND status = 'active'
                """,
                (now.isoformat(), now.isoformat(), user_id),
            )
            return cursor.rowcount

    def log_event(self, user_id: str, event_type: str, event_data: dict[str, Any]) -> None:
        """Append to the subscription event log."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_events (user_id, event_type, event_data, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, event_type, json.dumps(event_data), _now().isoformat()),
            )

    def list_events(self, user_id: str) -> list[dict[str, Any]]:
        """Get the user's subscription events, oldest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM subscription_events WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
            return [
                {
                    "event_type": row["event_type"],
                    "event_data": json.loads(row["event_data"]),
                    "created_at": row["created_at"],
                }
                for row in cursor.fetchall()
            ]

    def record_webhook_event(self, event_id: str, event_type: Optional[str]) -> bool:
        """Remember a PayPal webhook event ID. Returns False if already seen."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO paypal_webhook_events (event_id, event_type, received_at)
                VALUES (?, ?, ?)
                """,
                (event_id, event_type, _now().isoformat()),
            )
            return cursor.rowcount == 1

    def _row_to_subscription(self, row) -> Subscription:
        """Convert database row to Subscription."""
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            plan_name=row["plan_name"],
            status=row["status"],
            paypal_subscription_id=row["paypal_subscription_id"],
            cancelled_at=_from_iso(row["cancelled_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )
