"""
Telegram Bot API notifier.
"""

import time
from typing import Any

import requests

from .base import Notifier, NotificationResult


class TelegramNotifier(Notifier):
    """Sends Markdown messages through a Telegram bot."""

    channel = "telegram"

    def __init__(
        self,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        timeout: float = 10,
    ):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Bot token issued by BotFather
            api_base_url: Bot API base URL
            timeout: Request timeout in seconds
        """
        self.bot_token = bot_token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout

    @property
    def send_url(self) -> str:
        return f"{self.api_base_url}/bot{self.bot_token}/sendMessage"

    def send(self, recipient: str, text: str) -> NotificationResult:
        """Send a message to a chat."""
        if not self.bot_token:
            return NotificationResult(
                success=False, channel=self.channel, error="Bot token not configured"
            )

        try:
            payload = self._create_payload(recipient, text)
            response = self._post(payload)
            data = self._parse_response(response)

            if data.get("ok"):
                message_id = data.get("result", {}).get("message_id")
                return NotificationResult(
                    success=True,
                    channel=self.channel,
                    message_id=str(message_id) if message_id is not None else None,
                )
            else:
                return NotificationResult(
                    success=False,
                    channel=self.channel,
                    error=data.get("description") or f"HTTP {response.status_code}",
                )

        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=str(e),
            )

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Send request with rate limit handling."""
        response = requests.post(self.send_url, json=payload, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = self._parse_response(response).get("parameters", {}).get("retry_after", 1)
            time.sleep(float(retry_after))
            response = requests.post(self.send_url, json=payload, timeout=self.timeout)

        return response

    def _create_payload(self, chat_id: str, text: str) -> dict[str, Any]:
        """Create sendMessage payload."""
        return {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }

    @staticmethod
    def _parse_response(response: requests.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"ok": False, "description": f"HTTP {response.status_code}: {response.text}"}
        return data if isinstance(data, dict) else {}
