"""
Telegram broadcasts: user-curated fan-out of predictions to bot subscribers.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from firestocks.database.connection import Database
from firestocks.database.models import Broadcast, Prediction, Subscriber, TelegramNotification
from firestocks.database.repository import (
    BroadcastRepository,
    PredictionRepository,
    SubscriberRepository,
    TelegramBotRepository,
    TelegramNotificationRepository,
    UserRepository,
)
from firestocks.notifiers.base import Notifier
from firestocks.notifiers.telegram import TelegramNotifier

logger = logging.getLogger(__name__)

RECIPIENT_TYPES = ("followers", "all_subscribers", "manual")


class BroadcastError(Exception):
    """Raised when a broadcast cannot be created."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def format_broadcast_message(
    title: str,
    message: str,
    posts: list[Prediction],
    sender_name: str,
    now: Optional[datetime] = None,
) -> str:
    """Render the Markdown text sent to every recipient."""
    now = now or datetime.now(timezone.utc)
    text = f"📢 *{title}*\n\n"

    if message:
        text += f"{message}\n\n"

    if posts:
        text += "📊 *Selected posts:*\n\n"
        for index, post in enumerate(posts, start=1):
            text += f"{index}. *{post.symbol}* - {post.company_name}\n"
            text += f"💰 Current price: {post.current_price}\n"
            text += f"🎯 Target: {post.target_price}\n"
            text += f"🛑 Stop loss: {post.stop_loss_price}\n"
            if post.strategy:
                text += f"📈 Strategy: {post.strategy}\n"
            text += "\n"

    text += f"\n👤 From: *{sender_name}*"
    text += f"\n🕒 {now.strftime('%Y-%m-%d %H:%M:%S')} UTC"
    return text


def is_eligible(subscriber: Subscriber) -> bool:
    return subscriber.is_subscribed and subscriber.notify_broadcasts


class BroadcastService:
    """Creates broadcasts and delivers them in the background."""

    def __init__(
        self,
        db: Database,
        send_delay_ms: int = 100,
        api_base_url: str = "https://api.telegram.org",
        notifier_factory: Optional[Callable[[str], Notifier]] = None,
    ):
        """
        Initialize broadcast service.

        Args:
            db: Database instance
            send_delay_ms: Pause between two sends
            api_base_url: Telegram Bot API base URL
            notifier_factory: Builds a notifier from a bot token
        """
        self.broadcasts = BroadcastRepository(db)
        self.bots = TelegramBotRepository(db)
        self.subscribers = SubscriberRepository(db)
        self.predictions = PredictionRepository(db)
        self.users = UserRepository(db)
        self.audit = TelegramNotificationRepository(db)
        self.send_delay_ms = send_delay_ms
        self.notifier_factory = notifier_factory or (
            lambda token: TelegramNotifier(bot_token=token, api_base_url=api_base_url)
        )

    def create(
        self,
        sender_id: str,
        title: str,
        message: str = "",
        selected_posts: Optional[list[str]] = None,
        selected_recipients: Optional[list[int]] = None,
        recipient_type: str = "followers",
    ) -> Broadcast:
        """
        Validate and store a pending broadcast.

        Raises:
            BroadcastError: On a missing title, unknown recipient type or
                when the sender has no active bot
        """
        if not title or not title.strip():
            raise BroadcastError("title is required")
        if recipient_type not in RECIPIENT_TYPES:
            raise BroadcastError(f"recipientType must be one of {', '.join(RECIPIENT_TYPES)}")

        bot = self.bots.get_active_for_user(sender_id)
        if bot is None:
            raise BroadcastError("No active bot found. Please setup your bot first.")

        post_ids = [p.id for p in self.predictions.get_many(selected_posts or [])]
        recipients = self._resolve_recipients(bot.id, recipient_type, selected_recipients or [])

        broadcast = self.broadcasts.create(
            Broadcast(bot_id=bot.id, sender_id=sender_id, title=title.strip(), message=message or ""),
            post_ids,
            [s.id for s in recipients],
        )
        logger.info(
            f"Created broadcast {broadcast.id} with {len(post_ids)} posts "
            f"and {len(recipients)} recipients"
        )
        return broadcast

    def create_from_history(
        self,
        sender_id: str,
        history_entries: list[dict[str, Any]],
        title: Optional[str] = None,
        message: str = "",
    ) -> Broadcast:
        """
        Broadcast the predictions that hit target or stop loss in past runs.

        Raises:
            BroadcastError: If the entries contain no transitions
        """
        post_ids = []
        for entry in history_entries:
            for result in entry.get("results") or []:
                if not (result.get("targetReached") or result.get("stopLossTriggered")):
                    continue
                if result.get("id") and result["id"] not in post_ids:
                    post_ids.append(result["id"])

        if not post_ids:
            raise BroadcastError("No target or stop loss results in the selected history")

        return self.create(
            sender_id=sender_id,
            title=title or "Price check results",
            message=message,
            selected_posts=post_ids,
            recipient_type="all_subscribers",
        )

    def _resolve_recipients(
        self, bot_id: int, recipient_type: str, selected: list[int]
    ) -> list[Subscriber]:
        subscribers = [s for s in self.subscribers.list_for_bot(bot_id) if is_eligible(s)]
        if recipient_type == "manual":
            wanted = set(selected)
            subscribers = [s for s in subscribers if s.id in wanted]
        return subscribers

    def process(self, broadcast_id: int) -> Optional[Broadcast]:
        """
        Deliver a pending broadcast.

        Runs after the HTTP response has been sent. Per-recipient failures
        are recorded and the loop continues; anything else marks the
        broadcast failed.
        """
        if not self.broadcasts.transition(
            broadcast_id, ("pending",), "sending", sent_at=datetime.now(timezone.utc)
        ):
            logger.warning(f"Broadcast {broadcast_id} is not pending; skipping")
            return self.broadcasts.get_by_id(broadcast_id)

        try:
            sent_count, failed_count = self._deliver(broadcast_id)
        except Exception as e:
            logger.error(f"Error processing broadcast {broadcast_id}: {e}")
            self.broadcasts.transition(
                broadcast_id,
                ("sending",),
                "failed",
                completed_at=datetime.now(timezone.utc),
            )
            return self.broadcasts.get_by_id(broadcast_id)

        self.broadcasts.transition(
            broadcast_id,
            ("sending",),
            "completed",
            sent_count=sent_count,
            failed_count=failed_count,
            completed_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"Broadcast {broadcast_id} completed: {sent_count} sent, {failed_count} failed"
        )
        return self.broadcasts.get_by_id(broadcast_id)

    def _deliver(self, broadcast_id: int) -> tuple[int, int]:
        broadcast = self.broadcasts.get_by_id(broadcast_id)
        bot = self.bots.get_by_id(broadcast.bot_id)
        if bot is None or not bot.bot_token:
            raise RuntimeError("Telegram bot token is missing for this broadcast")

        recipients = self.broadcasts.list_recipients(broadcast_id, status="pending")
        if not recipients:
            return 0, 0

        sender = self.users.get_by_id(broadcast.sender_id)
        text = format_broadcast_message(
            broadcast.title,
            broadcast.message,
            self.predictions.get_many(self.broadcasts.get_post_ids(broadcast_id)),
            sender.display_name if sender else broadcast.sender_id,
        )
        notifier = self.notifier_factory(bot.bot_token)

        sent_count = 0
        failed_count = 0
        for recipient, subscriber in recipients:
            if not is_eligible(subscriber):
                self.broadcasts.mark_recipient_skipped(recipient.id, "Subscriber opted out")
                continue

            result = notifier.send(str(subscriber.telegram_user_id), text)
            if result.success:
                message_id = int(result.message_id) if result.message_id else None
                self.broadcasts.mark_recipient_sent(recipient.id, message_id)
                self.audit.create(
                    TelegramNotification(
                        bot_id=bot.id,
                        subscriber_id=subscriber.id,
                        notification_type="broadcast",
                        broadcast_id=broadcast_id,
                        telegram_message_id=message_id,
                        message_text=text,
                        status="sent",
                    )
                )
                sent_count += 1
            else:
                logger.warning(
                    f"Error sending to {subscriber.telegram_user_id}: {result.error}"
                )
                self.broadcasts.mark_recipient_failed(recipient.id, result.error or "Failed to send message")
                failed_count += 1

            if self.send_delay_ms:
                time.sleep(self.send_delay_ms / 1000)

        return sent_count, failed_count

    def get_status(self, broadcast_id: int, sender_id: str) -> Optional[dict[str, Any]]:
        """Status and counters of one of the sender's broadcasts."""
        broadcast = self.broadcasts.get_by_id(broadcast_id)
        if broadcast is None or broadcast.sender_id != sender_id:
            return None

        recipients = self.broadcasts.list_recipients(broadcast_id)
        return {
            "id": broadcast.id,
            "title": broadcast.title,
            "status": broadcast.status,
            "sentCount": broadcast.sent_count,
            "failedCount": broadcast.failed_count,
            "recipientCount": len(recipients),
            "postIds": self.broadcasts.get_post_ids(broadcast_id),
            "createdAt": broadcast.created_at.isoformat() if broadcast.created_at else None,
            "sentAt": broadcast.sent_at.isoformat() if broadcast.sent_at else None,
            "completedAt": broadcast.completed_at.isoformat() if broadcast.completed_at else None,
        }
