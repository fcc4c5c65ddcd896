"""
PayPal webhook verification and event dispatch.
"""

import logging
from typing import Any, Optional

from firestocks.billing.paypal import (
    PayPalClient,
    WebhookVerificationError,
    missing_webhook_headers,
)
from firestocks.database.connection import Database
from firestocks.database.repository import SubscriptionRepository
from firestocks.services.subscription import SubscriptionService

logger = logging.getLogger(__name__)

# Event types that end the subscription locally
ENDING_EVENTS = {
    "BILLING.SUBSCRIPTION.CANCELLED": "PayPal subscription cancelled",
    "BILLING.SUBSCRIPTION.EXPIRED": "PayPal subscription expired",
}

LOGGED_EVENTS = (
    "CHECKOUT.ORDER.APPROVED",
    "PAYMENT.SALE.COMPLETED",
    "BILLING.SUBSCRIPTION.ACTIVATED",
    "BILLING.SUBSCRIPTION.CREATED",
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
    "BILLING.SUBSCRIPTION.RE_ACTIVATED",
    "BILLING.SUBSCRIPTION.RE-ACTIVATED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.UPDATED",
)


class PayPalWebhookHandler:
    """Verifies webhook deliveries and handles them after acknowledgement."""

    def __init__(
        self,
        db: Database,
        paypal: Optional[PayPalClient],
        subscriptions: SubscriptionService,
    ):
        self.repository = SubscriptionRepository(db)
        self.paypal = paypal
        self.subscriptions = subscriptions

    @staticmethod
    def missing_headers(headers: dict[str, str]) -> list[str]:
        return missing_webhook_headers({k.lower(): v for k, v in headers.items()})

    def verify(self, headers: dict[str, str], event: dict[str, Any]) -> None:
        """
        Verify a delivery with PayPal.

        Raises:
            WebhookVerificationError: If the delivery is not authentic
        """
        if self.paypal is None:
            raise WebhookVerificationError("PayPal is not configured")
        headers = {k.lower(): v for k, v in headers.items()}
        if not self.paypal.verify_webhook_signature(headers, event):
            raise WebhookVerificationError("Invalid webhook signature")

    def dispatch(self, event: dict[str, Any]) -> str:
        """
        Handle a verified event. Never raises.

        Returns:
            What happened: "cancelled", "duplicate", "logged", "unknown_subscription",
            "unhandled" or "error"
        """
        event_type = event.get("event_type")
        event_id = event.get("id")
        resource_id = (event.get("resource") or {}).get("id")
        logger.info(f"Processing PayPal event_id={event_id} type={event_type}")

        try:
            if event_id and not self.repository.record_webhook_event(event_id, event_type):
                logger.info(f"PayPal event {event_id} already processed")
                return "duplicate"

            if event_type in ENDING_EVENTS:
                return self._end_subscription(resource_id, ENDING_EVENTS[event_type])

            if event_type in LOGGED_EVENTS:
                logger.info(f"PayPal {event_type}: {resource_id}")
                return "logged"

            logger.info(f"Unhandled PayPal event type: {event_type}")
            return "unhandled"

        except Exception as e:
            logger.error(f"Error processing PayPal event {event_id}: {e}")
            return "error"

    def _end_subscription(self, paypal_subscription_id: Optional[str], reason: str) -> str:
        subscription = (
            self.repository.get_by_paypal_id(paypal_subscription_id)
            if paypal_subscription_id
            else None
        )
        if subscription is None:
            logger.warning(f"No local subscription for PayPal id {paypal_subscription_id}")
            return "unknown_subscription"

        result = self.subscriptions.cancel(
            user_id=subscription.user_id,
            reason=reason,
            source="paypal_webhook",
            paypal_subscription_id=paypal_subscription_id,
        )
        if not result.get("success"):
            logger.error(f"Cancellation from PayPal webhook failed: {result.get('error')}")
            return "error"
        return "cancelled"
