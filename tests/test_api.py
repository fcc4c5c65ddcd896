"""
HTTP API tests.
"""

import asyncio

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from firestocks.app import create_app
from firestocks.config import AppConfig, PriceCheckConfig, TelegramConfig
from firestocks.data.fetcher import Quote, QuoteProvider, QuoteUnavailableError
from firestocks.database.models import Subscriber, Subscription, TelegramBot
from firestocks.database.repository import (
    SubscriberRepository,
    SubscriptionRepository,
    TelegramBotRepository,
)
from firestocks.notifiers.base import NotificationResult


class StaticProvider(QuoteProvider):
    name = "static"

    def __init__(self, prices):
        self.prices = prices

    def get_quote(self, symbol, timeout=None):
        if symbol not in self.prices:
            raise QuoteUnavailableError(symbol)
        return Quote(symbol=symbol, price=self.prices[symbol], timestamp=datetime.now(timezone.utc))


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


@pytest.fixture
def config():
    return AppConfig(
        price_check=PriceCheckConfig(max_daily_checks=2),
        telegram=TelegramConfig(bot_token="platform:token", webhook_secret="s3cret", send_delay_ms=0),
    )


@pytest.fixture
def app(db, config):
    app = create_app(config, db)
    app.state.services.pipeline.fetcher.provider = StaticProvider(
        {"AAPL": 125.0, "NVDA": 105.0}
    )
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth(user):
    return {"X-User-Id": user.id}


class TestHealth:
    def test_health(self, client):
        """Should report healthy."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestCheckPrices:
    """Test the price-check trigger endpoint."""

    def test_requires_user(self, client):
        """Should reject anonymous callers."""
        assert client.post("/api/posts/check-prices").status_code == 401

    def test_other_user_forbidden(self, client, auth):
        """Should not check another user's posts."""
        response = client.post("/api/posts/check-prices", json={"userId": "other"}, headers=auth)
        assert response.status_code == 403

    def test_run(self, client, auth, make_prediction):
        """Should run the pipeline and return the summary."""
        make_prediction("AAPL")
        make_prediction("NVDA")
        make_prediction("GONE")

        response = client.post("/api/posts/check-prices", headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["checkedPosts"] == 3
        assert body["updatedPosts"] == 2
        assert body["usageCount"] == 1
        assert body["remainingChecks"] == 1
        assert body["results"][0]["targetReached"] is True

    def test_quota(self, client, auth):
        """Should answer 429 once the daily limit is used."""
        client.post("/api/posts/check-prices", headers=auth)
        client.post("/api/posts/check-prices", headers=auth)

        response = client.post("/api/posts/check-prices", headers=auth)

        assert response.status_code == 429
        assert response.json()["remainingChecks"] == 0
        assert response.json()["usageCount"] == 2

    def test_failure_is_500(self, app, client, auth, make_prediction):
        """Should hide details of unexpected failures."""
        make_prediction("AAPL")
        app.state.services.pipeline.prediction_repo.count_closed = MagicMock(
            side_effect=RuntimeError("db gone")
        )

        response = client.post("/api/posts/check-prices", headers=auth)

        assert response.status_code == 500
        assert response.json()["success"] is False


class TestPosts:
    """Test creating predictions."""

    def test_create_post(self, app, client, auth):
        """Should store the post and notify followers in the background."""
        with patch.object(app.state.services.followers, "notify_safely") as mock_notify:
            response = client.post(
                "/api/posts",
                json={"symbol": "aapl", "initialPrice": 100, "targetPrice": 120, "stopLossPrice": 90},
                headers=auth,
            )

        assert response.status_code == 201
        post = response.json()["post"]
        assert post["symbol"] == "AAPL"
        assert post["currentPrice"] == 100
        mock_notify.assert_called_once()

    def test_invalid_body(self, client, auth):
        """Should validate the request body."""
        response = client.post("/api/posts", json={"symbol": ""}, headers=auth)
        assert response.status_code == 422


class TestHistoryEndpoints:
    """Test history listing, export and deletion."""

    def test_history_flow(self, client, auth, make_prediction):
        """Should list, export and delete entries."""
        make_prediction("AAPL")
        client.post("/api/posts/check-prices", headers=auth)

        listing = client.get("/api/price-check-history", headers=auth).json()
        assert len(listing["history"]) == 1
        assert listing["statistics"]["totalChecks"] == 1
        entry_id = listing["history"][0]["id"]

        export = client.get("/api/price-check-history/export", headers=auth)
        assert export.status_code == 200
        assert "price_check_history_" in export.headers["content-disposition"]
        assert export.json()[0]["id"] == entry_id

        assert client.delete(f"/api/price-check-history/{entry_id}", headers=auth).status_code == 200
        assert client.delete(f"/api/price-check-history/{entry_id}", headers=auth).status_code == 404

    def test_clear(self, client, auth):
        """Should clear all entries."""
        client.post("/api/posts/check-prices", headers=auth)
        response = client.delete("/api/price-check-history", headers=auth)
        assert response.json() == {"success": True, "deleted": 1}


class TestTelegramEndpoints:
    """Test broadcasts and the bot webhook."""

    @pytest.fixture
    def bot(self, db, user):
        bot = TelegramBotRepository(db).create(
            TelegramBot(user_id=user.id, bot_token="123:abc", bot_name="Trader Bot")
        )
        SubscriberRepository(db).upsert(Subscriber(bot_id=bot.id, telegram_user_id=1001))
        return bot

    def test_broadcast_without_bot(self, client, auth):
        """Should ask the sender to set up a bot."""
        response = client.post("/api/telegram/send-broadcast", json={"title": "Hi"}, headers=auth)
        assert response.status_code == 400
        assert response.json()["error"] == "No active bot found. Please setup your bot first."

    def test_broadcast_delivered(self, app, client, auth, bot):
        """Should accept the broadcast and deliver it in the background."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200
            mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 9}}

            response = client.post(
                "/api/telegram/send-broadcast",
                json={"title": "Weekly picks", "recipientType": "all_subscribers"},
                headers=auth,
            )

        assert response.status_code == 200
        broadcast_id = response.json()["broadcastId"]
        status = client.get(f"/api/telegram/broadcasts/{broadcast_id}", headers=auth).json()
        assert status["broadcast"]["status"] == "completed"
        assert status["broadcast"]["sentCount"] == 1
        assert mock_post.call_args.args[0].endswith("/bot123:abc/sendMessage")

    def test_send_historical_missing_entry(self, client, auth, bot):
        """Should 404 on unknown history entries."""
        response = client.post(
            "/api/telegram/send-historical", json={"entryIds": ["nope"]}, headers=auth
        )
        assert response.status_code == 404

    def test_webhook_secret(self, client):
        """Should reject updates without the secret."""
        response = client.post("/api/telegram/webhook", json={"update_id": 1})
        assert response.status_code == 401

    def test_webhook_start(self, db, client, user, bot):
        """Should subscribe through /start and reply via the platform bot."""
        update = {
            "update_id": 1,
            "message": {
                "text": f"/start {user.id}",
                "chat": {"id": 2002},
                "from": {"id": 2002, "first_name": "Nora"},
            },
        }
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200
            mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 1}}

            response = client.post(
                "/api/telegram/webhook",
                json=update,
                headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
            )

        assert response.json() == {"ok": True}
        assert SubscriberRepository(db).get_by_telegram_user(bot.id, 2002) is not None
        assert "/botplatform:token/" in mock_post.call_args.args[0]

    def test_webhook_reply_off_event_loop(self, client, user, bot):
        """Should send the bot reply from a worker thread."""
        on_loop = []

        def reply(*args, **kwargs):
            on_loop.append(_on_event_loop())
            response = MagicMock(status_code=200)
            response.json.return_value = {"ok": True, "result": {"message_id": 1}}
            return response

        update = {
            "update_id": 2,
            "message": {
                "text": f"/start {user.id}",
                "chat": {"id": 3003},
                "from": {"id": 3003, "first_name": "Omar"},
            },
        }
        with patch("requests.post", side_effect=reply):
            response = client.post(
                "/api/telegram/webhook",
                json=update,
                headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
            )

        assert response.status_code == 200
        assert on_loop == [False]


class TestBillingEndpoints:
    """Test PayPal webhook and cancellation."""

    def test_paypal_missing_headers(self, client):
        """Should reject deliveries without PayPal headers."""
        response = client.post("/api/webhooks/paypal", json={"id": "WH-1"})
        assert response.status_code == 400
        assert "paypal-transmission-id" in response.json()["missing"]

    def test_paypal_not_configured(self, client):
        """Should reject signed deliveries when PayPal is not configured."""
        headers = {
            "paypal-transmission-id": "t",
            "paypal-transmission-time": "t",
            "paypal-cert-url": "c",
            "paypal-auth-algo": "a",
            "paypal-transmission-sig": "s",
        }
        response = client.post("/api/webhooks/paypal", json={"id": "WH-1"}, headers=headers)
        assert response.status_code == 400

    def test_paypal_verified_off_event_loop(self, app, client):
        """Should verify the signature from a worker thread."""
        on_loop = []
        svc = app.state.services
        headers = {
            "paypal-transmission-id": "t",
            "paypal-transmission-time": "t",
            "paypal-cert-url": "c",
            "paypal-auth-algo": "a",
            "paypal-transmission-sig": "s",
        }

        with patch.object(
            svc.paypal_webhook, "verify", side_effect=lambda *a: on_loop.append(_on_event_loop())
        ), patch.object(svc.paypal_webhook, "dispatch") as mock_dispatch:
            response = client.post("/api/webhooks/paypal", json={"id": "WH-2"}, headers=headers)

        assert response.status_code == 200
        assert response.text == "OK"
        assert on_loop == [False]
        mock_dispatch.assert_called_once_with({"id": "WH-2"})

    def test_cancel_free_user(self, client, auth):
        """Should report that a free user is already free."""
        response = client.post("/api/subscription/cancel", headers=auth)
        assert response.status_code == 200
        assert response.json()["alreadyFree"] is True

    def test_cancel_paid_user(self, db, client, auth, user):
        """Should cancel the active plan."""
        SubscriptionRepository(db).create(Subscription(user_id=user.id, plan_name="pro"))

        response = client.post(
            "/api/subscription/cancel", json={"reason": "Switching"}, headers=auth
        )

        assert response.status_code == 200
        assert response.json()["data"]["previous_plan"] == "pro"
