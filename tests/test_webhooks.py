"""
Webhook tests.
Tests for Telegram bot commands and PayPal event dispatch.
"""

import pytest
from unittest.mock import MagicMock

from firestocks.billing.paypal import WebhookVerificationError
from firestocks.database.models import Subscription, TelegramBot
from firestocks.database.repository import (
    SubscriberRepository,
    SubscriptionRepository,
    TelegramBotRepository,
)
from firestocks.notifiers.base import NotificationResult
from firestocks.services.subscription import SubscriptionService
from firestocks.webhooks.paypal import PayPalWebhookHandler
from firestocks.webhooks.telegram import (
    BROKER_NOT_FOUND,
    START_WITHOUT_BROKER,
    WELCOME,
    TelegramWebhookHandler,
)


def _message(text, telegram_user_id=555, username="investor"):
    return {
        "message": {
            "text": text,
            "chat": {"id": telegram_user_id},
            "from": {"id": telegram_user_id, "username": username, "first_name": "Nora"},
        }
    }


class TestTelegramWebhookHandler:
    """Test inbound bot commands."""

    @pytest.fixture
    def bot(self, db, user):
        return TelegramBotRepository(db).create(
            TelegramBot(user_id=user.id, bot_token="123:abc", bot_name="Trader Bot")
        )

    @pytest.fixture
    def notifier(self):
        notifier = MagicMock()
        notifier.send.return_value = NotificationResult(success=True, channel="telegram")
        return notifier

    @pytest.fixture
    def handler(self, db, notifier):
        return TelegramWebhookHandler(db, notifier, webhook_secret="s3cret")

    def test_verify_secret(self, handler, db, notifier):
        """Should accept only the configured secret."""
        assert handler.verify_secret("s3cret") is True
        assert handler.verify_secret("wrong") is False
        assert handler.verify_secret(None) is False
        assert TelegramWebhookHandler(db, notifier).verify_secret("") is False

    def test_start_subscribes(self, db, handler, notifier, bot, user):
        """Should subscribe the sender to the broker's bot."""
        reply = handler.handle_update(_message(f"/start {user.id}"))

        assert reply == f"✅ Subscribed to Trader Bot. You can /unsubscribe {user.id} anytime."
        notifier.send.assert_called_once_with("555", reply)
        subscriber = SubscriberRepository(db).get_by_telegram_user(bot.id, 555)
        assert subscriber.is_subscribed is True
        assert subscriber.telegram_username == "investor"

    def test_start_without_broker(self, handler):
        """Should ask the user to come from the website."""
        assert handler.handle_update(_message("/start")) == START_WITHOUT_BROKER

    def test_unknown_broker(self, handler):
        """Should report unknown brokers."""
        assert handler.handle_update(_message("/subscribe nobody")) == BROKER_NOT_FOUND

    def test_unsubscribe(self, db, handler, bot, user):
        """Should flip the subscription off."""
        handler.handle_update(_message(f"/start {user.id}"))
        reply = handler.handle_update(_message(f"/unsubscribe {user.id}"))

        assert reply == "🛑 Unsubscribed from Trader Bot."
        assert SubscriberRepository(db).get_by_telegram_user(bot.id, 555).is_subscribed is False

    def test_settings_toggle(self, db, handler, bot, user):
        """Should turn broadcasts off for one broker."""
        handler.handle_update(_message(f"/start {user.id}"))
        reply = handler.handle_update(_message(f"/settings {user.id} broadcasts off"))

        assert "turned off" in reply
        subscriber = SubscriberRepository(db).get_by_telegram_user(bot.id, 555)
        assert subscriber.notify_broadcasts is False
        assert subscriber.notify_price_alerts is True

    def test_settings_list(self, handler, bot, user):
        """Should list the sender's subscriptions."""
        handler.handle_update(_message(f"/start {user.id}"))
        reply = handler.handle_update(_message("/settings"))
        assert "*Trader Bot*: subscribed" in reply

    def test_other_text_gets_welcome(self, handler):
        """Should answer anything else with the welcome text."""
        assert handler.handle_update(_message("hello")) == WELCOME

    def test_callback_query(self, db, handler, bot):
        """Should handle inline subscribe buttons."""
        update = {
            "callback_query": {
                "data": f"subscribe_{bot.id}",
                "from": {"id": 777, "first_name": "Sami"},
                "message": {"chat": {"id": 777}},
            }
        }
        assert handler.handle_update(update) == "✅ Subscribed to Trader Bot."
        assert SubscriberRepository(db).get_by_telegram_user(bot.id, 777) is not None

    def test_unknown_update_ignored(self, handler, notifier):
        """Should ignore updates it does not understand."""
        assert handler.handle_update({"edited_message": {}}) is None
        notifier.send.assert_not_called()


class TestPayPalWebhookHandler:
    """Test PayPal event verification and dispatch."""

    @pytest.fixture
    def paypal(self):
        return MagicMock()

    @pytest.fixture
    def handler(self, db, paypal):
        return PayPalWebhookHandler(db, paypal, SubscriptionService(db, paypal))

    @pytest.fixture
    def subscription(self, db):
        return SubscriptionRepository(db).create(
            Subscription(user_id="user-1", plan_name="pro", paypal_subscription_id="I-1")
        )

    def test_missing_headers_case_insensitive(self, handler):
        """Should accept headers in any case."""
        headers = {
            "PayPal-Transmission-Id": "t",
            "PayPal-Transmission-Time": "t",
            "PayPal-Cert-Url": "c",
            "PayPal-Auth-Algo": "a",
            "PayPal-Transmission-Sig": "s",
        }
        assert handler.missing_headers(headers) == []

    def test_verify_rejects_invalid(self, handler, paypal):
        """Should raise on an invalid signature."""
        paypal.verify_webhook_signature.return_value = False
        with pytest.raises(WebhookVerificationError):
            handler.verify({}, {})

    def test_verify_without_paypal(self, db):
        """Should reject everything when PayPal is not configured."""
        handler = PayPalWebhookHandler(db, None, SubscriptionService(db))
        with pytest.raises(WebhookVerificationError):
            handler.verify({}, {})

    def test_cancelled_event(self, db, handler, paypal, subscription):
        """Should cancel locally without calling PayPal back."""
        event = {
            "id": "WH-1",
            "event_type": "BILLING.SUBSCRIPTION.CANCELLED",
            "resource": {"id": "I-1"},
        }

        assert handler.dispatch(event) == "cancelled"
        assert SubscriptionRepository(db).get_active("user-1") is None
        paypal.cancel_subscription.assert_not_called()

    def test_duplicate_event(self, handler, subscription):
        """Should process each event id once."""
        event = {
            "id": "WH-1",
            "event_type": "BILLING.SUBSCRIPTION.EXPIRED",
            "resource": {"id": "I-1"},
        }
        assert handler.dispatch(event) == "cancelled"
        assert handler.dispatch(event) == "duplicate"

    def test_unknown_subscription(self, handler):
        """Should report events for subscriptions we do not know."""
        event = {
            "id": "WH-2",
            "event_type": "BILLING.SUBSCRIPTION.CANCELLED",
            "resource": {"id": "I-404"},
        }
        assert handler.dispatch(event) == "unknown_subscription"

    def test_logged_and_unhandled(self, handler):
        """Should log known events and ignore the rest."""
        assert handler.dispatch({"id": "WH-3", "event_type": "PAYMENT.SALE.COMPLETED"}) == "logged"
        assert handler.dispatch({"id": "WH-4", "event_type": "CUSTOMER.DISPUTE.CREATED"}) == "unhandled"
