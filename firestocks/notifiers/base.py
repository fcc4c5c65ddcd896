"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Any


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    message_id: Optional[str] = None


class Notifier(ABC):
    """Abstract base class for notifiers."""

    channel = "base"

    @abstractmethod
    def send(self, recipient: str, text: str) -> NotificationResult:
        """
        Send a single message.

        Args:
            recipient: Channel-specific address (chat id, phone number, email)
            text: Message body

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def send_batch(self, recipients: list[str], text: str) -> list[NotificationResult]:
        """
        Send the same message to several recipients.

        Args:
            recipients: List of recipient addresses
            text: Message body

        Returns:
            List of NotificationResult for each recipient
        """
        return [self.send(recipient, text) for recipient in recipients]


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "telegram":
            from .telegram import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.get("bot_token", ""),
                api_base_url=config.get("api_base_url", "https://api.telegram.org"),
            )

        elif notifier_type == "whatsapp":
            provider = config.get("provider", "meta")
            if provider == "twilio":
                from .whatsapp import TwilioWhatsAppNotifier

                return TwilioWhatsAppNotifier(
                    account_sid=config.get("twilio_account_sid", ""),
                    auth_token=config.get("api_token", ""),
                    from_number=config.get("twilio_from_number", ""),
                    default_country_code=config.get("default_country_code", "966"),
                )

            from .whatsapp import MetaWhatsAppNotifier

            return MetaWhatsAppNotifier(
                api_url=config.get("api_url", "https://graph.facebook.com/v18.0"),
                api_token=config.get("api_token", ""),
                phone_number_id=config.get("phone_number_id", ""),
                default_country_code=config.get("default_country_code", "966"),
            )

        elif notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
