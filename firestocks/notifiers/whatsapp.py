"""
WhatsApp Business API notifiers (Meta Cloud API and Twilio).
"""

import logging
import re
import time
from abc import abstractmethod
from typing import Any

import requests

from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)


def format_phone_number(number: str, country_code: str = "966") -> str:
    """Strip non-digits and make sure the number carries the country code."""
    digits = re.sub(r"\D", "", number or "")
    if not digits.startswith(country_code):
        digits = country_code + digits
    return digits


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace every {{key}} placeholder with its value."""
    message = template
    for key, value in variables.items():
        message = message.replace("{{" + key + "}}", "" if value is None else str(value))
    return message


class WhatsAppNotifier(Notifier):
    """Shared behaviour for WhatsApp providers."""

    channel = "whatsapp"

    def __init__(self, default_country_code: str = "966", timeout: float = 10):
        self.default_country_code = default_country_code
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return False

    def send(self, recipient: str, text: str) -> NotificationResult:
        """Send a text message to a phone number."""
        phone = format_phone_number(recipient, self.default_country_code)

        # Without credentials messages are only logged
        if not self.configured:
            message_id = f"test_{int(time.time() * 1000)}"
            logger.info(f"WhatsApp not configured; would send to {phone}")
            return NotificationResult(success=True, channel=self.channel, message_id=message_id)

        try:
            return self._send(phone, text)
        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(success=False, channel=self.channel, error=str(e))

    @abstractmethod
    def _send(self, phone: str, text: str) -> NotificationResult:
        """Deliver one message to a formatted phone number."""
        pass


class MetaWhatsAppNotifier(WhatsAppNotifier):
    """Sends messages through the Meta WhatsApp Cloud API."""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        phone_number_id: str,
        default_country_code: str = "966",
        timeout: float = 10,
    ):
        super().__init__(default_country_code, timeout)
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.phone_number_id = phone_number_id

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.phone_number_id)

    def _send(self, phone: str, text: str) -> NotificationResult:
        response = requests.post(
            f"{self.api_url}/{self.phone_number_id}/messages",
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            json={
                "messaging_product": "whatsapp",
                "to": phone,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
            timeout=self.timeout,
        )
        data = response.json()

        if not response.ok:
            error = data.get("error", {}).get("message") or f"HTTP {response.status_code}"
            return NotificationResult(success=False, channel=self.channel, error=error)

        messages = data.get("messages") or [{}]
        return NotificationResult(
            success=True, channel=self.channel, message_id=messages[0].get("id")
        )


class TwilioWhatsAppNotifier(WhatsAppNotifier):
    """Sends WhatsApp messages through Twilio."""

    API_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        default_country_code: str = "966",
        timeout: float = 10,
    ):
        super().__init__(default_country_code, timeout)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def _send(self, phone: str, text: str) -> NotificationResult:
        response = requests.post(
            f"{self.API_URL}/Accounts/{self.account_sid}/Messages.json",
            data={
                "From": f"whatsapp:{self.from_number}",
                "To": f"whatsapp:+{phone}",
                "Body": text,
            },
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
        data = response.json()

        if not response.ok:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=data.get("message") or f"HTTP {response.status_code}",
            )

        return NotificationResult(success=True, channel=self.channel, message_id=data.get("sid"))
