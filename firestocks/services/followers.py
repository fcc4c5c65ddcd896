"""
WhatsApp fan-out to the followers of a prediction's author.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from firestocks.database.connection import Database
from firestocks.database.models import Prediction, User, WhatsAppNotification
from firestocks.database.repository import FollowRepository, UserRepository, WhatsAppRepository
from firestocks.notifiers.base import Notifier, NotificationResult
from firestocks.notifiers.whatsapp import render_template

logger = logging.getLogger(__name__)


class FollowerNotifier:
    """Sends a templated WhatsApp message per qualifying follower."""

    def __init__(
        self,
        db: Database,
        notifier: Notifier,
        language_code: str = "ar",
        max_workers: int = 8,
    ):
        self.follows = FollowRepository(db)
        self.users = UserRepository(db)
        self.whatsapp = WhatsAppRepository(db)
        self.notifier = notifier
        self.language_code = language_code
        self.max_workers = max_workers

    @staticmethod
    def qualifies(user: User) -> bool:
        return bool(
            user.whatsapp_number
            and user.whatsapp_notifications_enabled
            and user.notification_preferences.get("new_posts", True)
        )

    def notify_followers_of_new_post(self, prediction: Prediction) -> bool:
        """
        Notify the author's followers about a new prediction.

        Returns:
            True if at least one message went out or there was nobody to
            notify, False if there is no template or every send failed
        """
        followers = [u for u in self.follows.get_followers(prediction.user_id) if self.qualifies(u)]
        if not followers:
            logger.info(f"No WhatsApp followers to notify for post {prediction.id}")
            return True

        template = self.whatsapp.get_template("new_post", self.language_code)
        if template is None:
            logger.error(f"No active new_post template for language {self.language_code}")
            return False

        author = self.users.get_by_id(prediction.user_id)
        author_name = author.display_name if author else prediction.user_id

        # Rows are written before sending so a crash still leaves a pending record
        pending = []
        for follower in followers:
            message = render_template(
                template.body_template,
                {
                    "author_name": author_name,
                    "symbol": prediction.symbol,
                    "company_name": prediction.company_name,
                    "current_price": prediction.current_price,
                    "target_price": prediction.target_price,
                    "stop_loss_price": prediction.stop_loss_price,
                    "strategy": prediction.strategy,
                    "content": prediction.content,
                    "username": follower.username,
                    "full_name": follower.full_name,
                },
            )
            row = self.whatsapp.log_notification(
                WhatsAppNotification(
                    recipient_id=follower.id,
                    post_id=prediction.id,
                    message_content=message,
                    message_type="new_post",
                )
            )
            pending.append((row, follower.whatsapp_number, message))

        sent = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.notifier.send, number, message): row
                for row, number, message in pending
            }
            for future in as_completed(futures):
                row = futures[future]
                result = self._result_of(future)
                if result.success:
                    self.whatsapp.update_status(row.id, "sent", whatsapp_message_id=result.message_id)
                    sent += 1
                else:
                    logger.warning(f"WhatsApp send to {row.recipient_id} failed: {result.error}")
                    self.whatsapp.update_status(row.id, "failed", error_message=result.error)

        logger.info(f"WhatsApp notifications for post {prediction.id}: {sent}/{len(pending)} sent")
        return sent > 0

    def _result_of(self, future) -> NotificationResult:
        try:
            return future.result()
        except Exception as e:
            return NotificationResult(success=False, channel="whatsapp", error=str(e))

    def notify_safely(self, prediction: Prediction) -> Optional[bool]:
        """Background-task entry point; never raises."""
        try:
            return self.notify_followers_of_new_post(prediction)
        except Exception as e:
            logger.error(f"Error notifying followers of post {prediction.id}: {e}")
            return None
