"""
Notifier tests.
Tests for Telegram, WhatsApp and Email notification delivery.
"""

import pytest
from unittest.mock import Mock, patch, MagicMock
from datetime import datetime, timezone
import smtplib

import requests

from firestocks.notifiers.base import NotificationResult, NotifierFactory
from firestocks.notifiers.email import EmailNotifier
from firestocks.notifiers.telegram import TelegramNotifier
from firestocks.notifiers.whatsapp import (
    MetaWhatsAppNotifier,
    TwilioWhatsAppNotifier,
    WhatsAppNotifier,
    format_phone_number,
    render_template,
)
from firestocks.rules.types import Classification, Outcome


class TestNotificationResult:
    """Test NotificationResult model."""

    def test_success_result(self):
        """Should create success result."""
        result = NotificationResult(success=True, channel="telegram", message_id="7")
        assert result.success is True
        assert result.channel == "telegram"
        assert result.error is None
        assert result.message_id == "7"

    def test_failure_result(self):
        """Should create failure result with error."""
        result = NotificationResult(
            success=False, channel="email", error="SMTP connection failed"
        )
        assert result.success is False
        assert result.error == "SMTP connection failed"


class TestTelegramNotifier:
    """Test Telegram Bot API delivery."""

    @pytest.fixture
    def notifier(self):
        return TelegramNotifier(bot_token="123:abc", api_base_url="https://api.telegram.test")

    def test_send_success(self, notifier):
        """Should send a Markdown message and return the message id."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200
            mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 42}}

            result = notifier.send("1001", "*Hello*")

        assert result.success is True
        assert result.message_id == "42"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://api.telegram.test/bot123:abc/sendMessage"
        assert kwargs["json"]["chat_id"] == "1001"
        assert kwargs["json"]["parse_mode"] == "Markdown"

    def test_send_api_error(self, notifier):
        """Should report the Bot API description."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 403
            mock_post.return_value.json.return_value = {
                "ok": False,
                "description": "Forbidden: bot was blocked by the user",
            }

            result = notifier.send("1001", "Hello")

        assert result.success is False
        assert "blocked" in result.error

    def test_rate_limit_retry(self, notifier):
        """Should wait retry_after seconds and retry once."""
        limited = Mock(status_code=429)
        limited.json.return_value = {"ok": False, "parameters": {"retry_after": 2}}
        ok = Mock(status_code=200)
        ok.json.return_value = {"ok": True, "result": {"message_id": 1}}

        with patch("requests.post", side_effect=[limited, ok]) as mock_post:
            with patch("time.sleep") as mock_sleep:
                result = notifier.send("1001", "Hello")

        assert result.success is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(2.0)

    def test_connection_error(self, notifier):
        """Should handle connection errors."""
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("refused")):
            result = notifier.send("1001", "Hello")

        assert result.success is False
        assert "Connection error" in result.error

    def test_missing_token(self):
        """Should fail without calling the API."""
        with patch("requests.post") as mock_post:
            result = TelegramNotifier(bot_token="").send("1001", "Hello")

        assert result.success is False
        mock_post.assert_not_called()

    def test_send_batch(self, notifier):
        """Should return one result per recipient."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200
            mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 1}}

            results = notifier.send_batch(["1", "2"], "Hello")

        assert len(results) == 2
        assert all(r.success for r in results)


class TestWhatsAppHelpers:
    """Test phone formatting and template rendering."""

    @pytest.mark.parametrize(
        "number, expected",
        [
            ("0501234567", "9660501234567"),
            ("+966 50 123 4567", "966501234567"),
            ("966501234567", "966501234567"),
        ],
    )
    def test_format_phone_number(self, number, expected):
        """Should strip formatting and add the country code."""
        assert format_phone_number(number) == expected

    def test_render_template(self):
        """Should replace every placeholder."""
        message = render_template(
            "{{author_name}} posted {{symbol}} target {{target_price}}{{strategy}}",
            {"author_name": "Sara", "symbol": "2222", "target_price": 35.5, "strategy": None},
        )
        assert message == "Sara posted 2222 target 35.5"

    def test_provider_must_implement_send(self):
        """Should not build a WhatsApp notifier without a delivery method."""
        with pytest.raises(TypeError):
            WhatsAppNotifier()


class TestMetaWhatsAppNotifier:
    """Test the Meta Cloud API provider."""

    @pytest.fixture
    def notifier(self):
        return MetaWhatsAppNotifier(
            api_url="https://graph.facebook.test/v18.0",
            api_token="token",
            phone_number_id="555",
        )

    def test_send_success(self, notifier):
        """Should post a text message and return the message id."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True
            mock_post.return_value.json.return_value = {"messages": [{"id": "wamid.1"}]}

            result = notifier.send("0501234567", "Hello")

        assert result.success is True
        assert result.message_id == "wamid.1"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://graph.facebook.test/v18.0/555/messages"
        assert kwargs["json"]["to"] == "9660501234567"
        assert kwargs["headers"]["Authorization"] == "Bearer token"

    def test_send_failure(self, notifier):
        """Should report the API error message."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = False
            mock_post.return_value.status_code = 400
            mock_post.return_value.json.return_value = {"error": {"message": "Invalid number"}}

            result = notifier.send("123", "Hello")

        assert result.success is False
        assert result.error == "Invalid number"

    def test_test_mode_without_credentials(self):
        """Should succeed without sending when not configured."""
        notifier = MetaWhatsAppNotifier(api_url="https://x", api_token="", phone_number_id="")
        with patch("requests.post") as mock_post:
            result = notifier.send("0501234567", "Hello")

        assert result.success is True
        assert result.message_id.startswith("test_")
        mock_post.assert_not_called()


class TestTwilioWhatsAppNotifier:
    """Test the Twilio provider."""

    def test_send_success(self):
        """Should post form data with basic auth."""
        notifier = TwilioWhatsAppNotifier(
            account_sid="AC1", auth_token="secret", from_number="+14155238886"
        )
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True
            mock_post.return_value.json.return_value = {"sid": "SM1"}

            result = notifier.send("0501234567", "Hello")

        assert result.success is True
        assert result.message_id == "SM1"
        args, kwargs = mock_post.call_args
        assert args[0].endswith("/Accounts/AC1/Messages.json")
        assert kwargs["data"]["To"] == "whatsapp:+9660501234567"
        assert kwargs["auth"] == ("AC1", "secret")


class TestEmailNotifier:
    """Test email notifications."""

    @pytest.fixture
    def notifier(self, sample_smtp_config):
        return EmailNotifier(**sample_smtp_config)

    @pytest.fixture
    def outcomes(self):
        def make(symbol, classification, price):
            return Outcome(
                prediction_id=symbol,
                symbol=symbol,
                company_name=f"{symbol} Corp",
                current_price=price,
                target_price=120.0,
                stop_loss_price=90.0,
                classification=classification,
                closed=classification.is_terminal,
            )

        return [
            make("AAPL", Classification.TARGET_REACHED, 125.0),
            make("MSFT", Classification.STOP_LOSS_TRIGGERED, 85.0),
            make("NVDA", Classification.CHECKED_NO_CHANGE, 105.0),
        ]

    def test_send_run_summary(self, notifier, outcomes):
        """Should email only the closed predictions."""
        checked_at = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send_run_summary("trader@example.com", outcomes, checked_at)

        assert result.success is True
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("test@gmail.com", "test-app-password")
        message = mock_server.send_message.call_args[0][0]
        assert message["Subject"] == "[FireStocks] 2 prediction(s) closed: AAPL, MSFT"
        assert message["To"] == "trader@example.com"

    def test_text_body(self, notifier, outcomes):
        """Should describe each transition."""
        checked_at = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)
        body = notifier._create_text_body(outcomes[:2], checked_at)

        assert "AAPL (AAPL Corp): Target reached at 125.00" in body
        assert "MSFT (MSFT Corp): Stop loss triggered at 85.00" in body
        assert "2024-03-13 15:00:00 UTC" in body

    def test_auth_failure(self, notifier):
        """Should report SMTP authentication failures."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send("trader@example.com", "Hello")

        assert result.success is False
        assert "Authentication failed" in result.error


class TestNotifierFactory:
    """Test notifier construction from config."""

    def test_create_telegram(self):
        """Should build a Telegram notifier."""
        notifier = NotifierFactory.create({"type": "telegram", "bot_token": "123:abc"})
        assert isinstance(notifier, TelegramNotifier)
        assert notifier.bot_token == "123:abc"

    def test_create_whatsapp_providers(self):
        """Should pick the WhatsApp provider from config."""
        meta = NotifierFactory.create({"type": "whatsapp", "provider": "meta"})
        twilio = NotifierFactory.create(
            {"type": "whatsapp", "provider": "twilio", "twilio_account_sid": "AC1"}
        )
        assert isinstance(meta, MetaWhatsAppNotifier)
        assert isinstance(twilio, TwilioWhatsAppNotifier)
        assert twilio.account_sid == "AC1"

    def test_create_email(self, sample_smtp_config):
        """Should build an email notifier."""
        notifier = NotifierFactory.create({"type": "email", **sample_smtp_config})
        assert isinstance(notifier, EmailNotifier)
        assert notifier.smtp_port == 587

    def test_unknown_type(self):
        """Should reject unknown notifier types."""
        with pytest.raises(ValueError):
            NotifierFactory.create({"type": "sms"})
