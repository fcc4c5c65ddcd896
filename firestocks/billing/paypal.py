"""
PayPal REST API client.
"""

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# Headers PayPal signs every webhook delivery with
WEBHOOK_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
    "paypal-transmission-sig",
)


class PayPalError(Exception):
    """Raised when a PayPal API call fails."""

    pass


class WebhookVerificationError(PayPalError):
    """Raised when a webhook cannot be verified."""

    pass


class PayPalClient:
    """Thin client for the OAuth, subscription and webhook endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        webhook_id: str = "",
        timeout: float = 15,
    ):
        if mode not in BASE_URLS:
            raise ValueError(f"Unknown PayPal mode: {mode}")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = BASE_URLS[mode]
        self.webhook_id = webhook_id
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def get_access_token(self) -> str:
        """Exchange client credentials for a bearer token."""
        if not self.configured:
            raise PayPalError("PayPal credentials are not configured")

        try:
            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PayPalError(f"Failed to get PayPal access token: {e}") from e

        if not response.ok:
            raise PayPalError(f"Failed to get PayPal access token: HTTP {response.status_code}")
        return response.json()["access_token"]

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }

    def cancel_subscription(self, subscription_id: str, reason: str) -> None:
        """
        Cancel a billing subscription.

        Raises:
            PayPalError: If PayPal rejects the request
        """
        try:
            response = requests.post(
                f"{self.base_url}/v1/billing/subscriptions/{subscription_id}/cancel",
                headers=self._headers(),
                json={"reason": reason},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PayPalError(f"PayPal cancellation failed: {e}") from e

        # 204 No Content on success
        if not response.ok:
            raise PayPalError(
                f"PayPal cancellation failed: HTTP {response.status_code}: {response.text}"
            )
        logger.info(f"Cancelled PayPal subscription {subscription_id}")

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Look up a billing subscription."""
        try:
            response = requests.get(
                f"{self.base_url}/v1/billing/subscriptions/{subscription_id}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PayPalError(f"PayPal lookup failed: {e}") from e

        if not response.ok:
            raise PayPalError(f"PayPal lookup failed: HTTP {response.status_code}")
        return response.json()

    def verify_webhook_signature(
        self, headers: dict[str, str], event: dict[str, Any]
    ) -> bool:
        """
        Ask PayPal to verify a webhook delivery.

        Args:
            headers: Request headers (lower-case keys)
            event: Parsed webhook body

        Raises:
            WebhookVerificationError: If headers are missing or the call fails
        """
        missing = missing_webhook_headers(headers)
        if missing:
            raise WebhookVerificationError(f"Missing headers: {', '.join(missing)}")
        if not self.webhook_id:
            raise WebhookVerificationError("PayPal webhook id is not configured")

        payload = {
            "auth_algo": headers["paypal-auth-algo"],
            "cert_url": headers["paypal-cert-url"],
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "transmission_time": headers["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }

        try:
            response = requests.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except (requests.RequestException, PayPalError) as e:
            raise WebhookVerificationError(f"Webhook verification failed: {e}") from e

        if not response.ok:
            raise WebhookVerificationError(
                f"Webhook verification failed: HTTP {response.status_code}"
            )
        return response.json().get("verification_status") == "SUCCESS"


def missing_webhook_headers(headers: dict[str, str]) -> list[str]:
    """Names of the required PayPal headers absent from headers."""
    return [name for name in WEBHOOK_HEADERS if not headers.get(name)]


def create_paypal_client(config) -> Optional[PayPalClient]:
    """Build a client from PayPalConfig, or None without credentials."""
    if not (config.client_id and config.client_secret):
        return None
    return PayPalClient(
        client_id=config.client_id,
        client_secret=config.client_secret,
        mode=config.mode,
        webhook_id=config.webhook_id,
    )
