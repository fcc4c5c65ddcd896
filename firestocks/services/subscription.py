"""
Subscription cancellation.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from firestocks.billing.paypal import PayPalClient, PayPalError
from firestocks.database.connection import Database
from firestocks.database.repository import SubscriptionRepository

logger = logging.getLogger(__name__)

ALREADY_FREE = {
    "success": True,
    "message": "User is already on free plan",
    "alreadyFree": True,
}


class SubscriptionService:
    """Cancels paid plans locally and, best effort, at PayPal."""

    def __init__(self, db: Database, paypal: Optional[PayPalClient] = None):
        self.subscriptions = SubscriptionRepository(db)
        self.paypal = paypal

    def cancel(
        self,
        user_id: str,
        reason: str = "User cancelled",
        source: str = "user",
        paypal_subscription_id: Optional[str] = None,
        should_cancel_paypal: bool = True,
    ) -> dict[str, Any]:
        """
        Move the user back to the free plan.

        The local record is authoritative: a failed PayPal call is logged
        and reported in the result, never as a failure.

        Args:
            user_id: User whose plan to cancel
            reason: Free-text reason, forwarded to PayPal
            source: "user", "admin" or "paypal_webhook"
            paypal_subscription_id: Overrides the stored PayPal id
            should_cancel_paypal: Whether to cancel at PayPal too

        Returns:
            Result dict with success, message and, on cancellation, data
        """
        try:
            if not user_id:
                raise ValueError("user_id is required")

            current = self.subscriptions.get_active(user_id)
            if current is None or current.plan_name == "free":
                return dict(ALREADY_FREE)

            paypal_cancelled = False
            paypal_id = paypal_subscription_id or current.paypal_subscription_id
            if should_cancel_paypal and paypal_id and source != "paypal_webhook":
                paypal_cancelled = self._cancel_at_paypal(paypal_id, reason)

            now = datetime.now(timezone.utc)
            self.subscriptions.expire_cancelled(user_id, now)
            if self.subscriptions.cancel_active(user_id, now) == 0:
                return dict(ALREADY_FREE)

            self.subscriptions.log_event(
                user_id,
                "subscription_cancelled",
                {
                    "previous_plan": current.plan_name,
                    "new_plan": "free",
                    "reason": reason,
                    "source": source,
                    "paypal_cancelled": paypal_cancelled,
                    "paypal_subscription_id": paypal_id,
                },
            )
            logger.info(f"Cancelled {current.plan_name} subscription for user {user_id}")

            return {
                "success": True,
                "message": "Subscription cancelled successfully",
                "data": {
                    "previous_plan": current.plan_name,
                    "new_plan": "free",
                    "cancelled_at": now.isoformat(),
                    "paypal_cancelled": paypal_cancelled,
                    "source": source,
                },
            }

        except Exception as e:
            logger.error(f"Error cancelling subscription for user {user_id}: {e}")
            return {
                "success": False,
                "error": str(e),
                "message": "Failed to cancel subscription",
            }

    def _cancel_at_paypal(self, paypal_id: str, reason: str) -> bool:
        if self.paypal is None:
            logger.warning("PayPal is not configured; skipping remote cancellation")
            return False
        try:
            self.paypal.cancel_subscription(paypal_id, reason)
            return True
        except PayPalError as e:
            logger.warning(f"PayPal cancellation failed for {paypal_id}: {e}")
            return False
