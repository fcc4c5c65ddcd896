"""
Inbound Telegram bot updates: subscribe, unsubscribe and settings.
"""

import hmac
import logging
from typing import Any, Optional

from firestocks.database.connection import Database
from firestocks.database.models import Subscriber, TelegramBot
from firestocks.database.repository import SubscriberRepository, TelegramBotRepository
from firestocks.notifiers.base import Notifier

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

WELCOME = "Welcome! Please start from our website link to subscribe to a broker."
START_WITHOUT_BROKER = (
    "Please open the bot using the link from our website "
    "so we can associate you with a broker."
)
BROKER_NOT_FOUND = "Broker not found or bot not configured."

SETTING_FLAGS = {
    "broadcasts": "notify_broadcasts",
    "alerts": "notify_price_alerts",
}


class TelegramWebhookHandler:
    """Handles /start, /subscribe, /unsubscribe, /settings and inline callbacks."""

    def __init__(self, db: Database, notifier: Notifier, webhook_secret: str = ""):
        self.bots = TelegramBotRepository(db)
        self.subscribers = SubscriberRepository(db)
        self.notifier = notifier
        self.webhook_secret = webhook_secret

    def verify_secret(self, received: Optional[str]) -> bool:
        """An unset secret rejects every request."""
        if not self.webhook_secret or not received:
            return False
        return hmac.compare_digest(received, self.webhook_secret)

    def handle_update(self, update: dict[str, Any]) -> Optional[str]:
        """
        Process one update.

        Returns:
            The reply text that was sent, or None if the update was ignored
        """
        if "message" in update:
            message = update["message"]
            reply = self._handle_message(message)
            chat_id = message.get("chat", {}).get("id")
        elif "callback_query" in update:
            query = update["callback_query"]
            reply = self._handle_callback(query)
            chat_id = (query.get("message") or {}).get("chat", {}).get("id") or query.get(
                "from", {}
            ).get("id")
        else:
            return None

        if reply is None or chat_id is None:
            return None

        result = self.notifier.send(str(chat_id), reply)
        if not result.success:
            logger.warning(f"Failed to reply to chat {chat_id}: {result.error}")
        return reply

    def _handle_message(self, message: dict[str, Any]) -> Optional[str]:
        text = (message.get("text") or "").strip()
        sender = message.get("from") or {}
        parts = text.split()
        command = parts[0].split("@")[0] if parts else ""
        argument = parts[1] if len(parts) > 1 else None

        if command == "/start":
            if not argument:
                return START_WITHOUT_BROKER
            bot = self.bots.get_active_for_user(argument)
            if bot is None:
                return BROKER_NOT_FOUND
            self._subscribe(bot, sender)
            return f"✅ Subscribed to {bot.bot_name}. You can /unsubscribe {argument} anytime."

        if command == "/subscribe":
            if not argument:
                return "Usage: /subscribe <brokerId> (open link from the website)."
            bot = self.bots.get_active_for_user(argument)
            if bot is None:
                return BROKER_NOT_FOUND
            self._subscribe(bot, sender)
            return f"✅ Subscribed to {bot.bot_name}."

        if command == "/unsubscribe":
            if not argument:
                return "Usage: /unsubscribe <brokerId>"
            bot = self.bots.get_active_for_user(argument)
            if bot is None:
                return "Broker not found."
            self.subscribers.set_subscribed(bot.id, sender.get("id"), False)
            return f"🛑 Unsubscribed from {bot.bot_name}."

        if command == "/settings":
            return self._settings(sender.get("id"), parts[1:])

        return WELCOME

    def _handle_callback(self, query: dict[str, Any]) -> Optional[str]:
        data = query.get("data") or ""
        sender = query.get("from") or {}
        action, _, bot_id = data.partition("_")

        if action not in ("subscribe", "unsubscribe") or not bot_id.isdigit():
            logger.info(f"Ignoring callback data {data!r}")
            return None

        bot = self.bots.get_by_id(int(bot_id))
        if bot is None or not bot.is_active:
            return BROKER_NOT_FOUND

        if action == "subscribe":
            self._subscribe(bot, sender)
            return f"✅ Subscribed to {bot.bot_name}."

        self.subscribers.set_subscribed(bot.id, sender.get("id"), False)
        return f"🛑 Unsubscribed from {bot.bot_name}."

    def _subscribe(self, bot: TelegramBot, sender: dict[str, Any]) -> Subscriber:
        subscriber = self.subscribers.upsert(
            Subscriber(
                bot_id=bot.id,
                telegram_user_id=sender.get("id"),
                telegram_username=sender.get("username"),
                telegram_first_name=sender.get("first_name"),
                telegram_last_name=sender.get("last_name"),
            )
        )
        logger.info(f"Telegram user {subscriber.telegram_user_id} subscribed to bot {bot.id}")
        return subscriber

    def _settings(self, telegram_user_id: Optional[int], args: list[str]) -> str:
        """
        Show or change notification settings.

        /settings lists every subscription; /settings <brokerId> broadcasts|alerts on|off
        flips one flag.
        """
        if telegram_user_id is None:
            return WELCOME

        if len(args) == 3:
            broker_id, flag, value = args
            if flag not in SETTING_FLAGS or value not in ("on", "off"):
                return "Usage: /settings <brokerId> broadcasts|alerts on|off"
            bot = self.bots.get_active_for_user(broker_id)
            subscriber = self.subscribers.get_by_telegram_user(bot.id, telegram_user_id) if bot else None
            if subscriber is None:
                return "You are not subscribed to this broker."
            self.subscribers.set_notification_flags(
                subscriber.id, **{SETTING_FLAGS[flag]: value == "on"}
            )
            return f"⚙️ {flag.capitalize()} turned {value} for {bot.bot_name}."

        subscriptions = self.subscribers.list_for_telegram_user(telegram_user_id)
        if not subscriptions:
            return "You have no subscriptions yet."

        lines = ["⚙️ *Your subscriptions:*", ""]
        for subscriber in subscriptions:
            bot = self.bots.get_by_id(subscriber.bot_id)
            name = bot.bot_name if bot else f"Bot {subscriber.bot_id}"
            status = "subscribed" if subscriber.is_subscribed else "unsubscribed"
            lines.append(
                f"• *{name}*: {status}, broadcasts "
                f"{'on' if subscriber.notify_broadcasts else 'off'}, alerts "
                f"{'on' if subscriber.notify_price_alerts else 'off'}"
            )
        return "\n".join(lines)
