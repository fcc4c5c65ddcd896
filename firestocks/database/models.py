"""
Data models for the FireStocks price-check service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


@dataclass
class User:
    """Platform user with notification settings."""

    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    whatsapp_number: Optional[str] = None
    whatsapp_notifications_enabled: bool = False
    notification_preferences: dict[str, bool] = field(
        default_factory=lambda: {
            "new_posts": True,
            "price_updates": True,
            "strategy_updates": True,
        }
    )
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or self.id


@dataclass
class Prediction:
    """A user's stock call with target and stop-loss prices (a "post")."""

    user_id: str
    symbol: str
    target_price: Optional[float]
    stop_loss_price: Optional[float]
    initial_price: Optional[float] = None
    current_price: Optional[float] = None
    last_price: Optional[float] = None
    company_name: str = ""
    exchange: Optional[str] = None
    country: Optional[str] = None
    strategy: str = ""
    content: str = ""
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_price_check: Optional[datetime] = None
    closed: bool = False
    target_reached: bool = False
    target_reached_date: Optional[datetime] = None
    stop_loss_triggered: bool = False
    stop_loss_triggered_date: Optional[datetime] = None
    version: int = 0

    @property
    def quote_symbol(self) -> str:
        """Symbol qualified with its exchange, e.g. "2222.SR"."""
        if self.exchange:
            return f"{self.symbol}.{self.exchange}"
        return self.symbol


@dataclass
class Follow:
    """follower_id follows following_id."""

    follower_id: str
    following_id: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class TelegramBot:
    """A trader's Telegram bot."""

    user_id: str
    bot_token: str
    bot_name: str
    is_active: bool = True
    id: Optional[int] = None


@dataclass
class Subscriber:
    """Telegram end-user registered against one bot."""

    bot_id: int
    telegram_user_id: int
    telegram_username: Optional[str] = None
    telegram_first_name: Optional[str] = None
    telegram_last_name: Optional[str] = None
    is_subscribed: bool = True
    notify_broadcasts: bool = True
    notify_price_alerts: bool = True
    id: Optional[int] = None
    subscribed_at: Optional[datetime] = None
    last_interaction: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.telegram_username:
            return f"@{self.telegram_username}"
        return self.telegram_first_name or str(self.telegram_user_id)


@dataclass
class Broadcast:
    """User-curated fan-out of predictions to a bot's subscribers."""

    bot_id: int
    sender_id: str
    title: str
    message: str = ""
    broadcast_type: str = "post_selection"
    status: str = "pending"  # pending -> sending -> completed | failed
    sent_count: int = 0
    failed_count: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class BroadcastRecipient:
    """Per-recipient delivery record of a broadcast."""

    broadcast_id: int
    subscriber_id: int
    status: str = "pending"  # pending | sent | failed | skipped
    telegram_message_id: Optional[int] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    sent_at: Optional[datetime] = None


@dataclass
class TelegramNotification:
    """Audit row for one delivered Telegram message."""

    bot_id: int
    subscriber_id: int
    notification_type: str
    message_text: str
    status: str
    broadcast_id: Optional[int] = None
    telegram_message_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class WhatsAppTemplate:
    """Message template with {{placeholder}} variables."""

    template_name: str
    template_type: str  # "new_post", "price_update", "strategy_update"
    body_template: str
    language_code: str = "ar"
    subject: str = ""
    is_active: bool = True
    id: Optional[int] = None


@dataclass
class WhatsAppNotification:
    """Per-recipient WhatsApp delivery record."""

    recipient_id: str
    message_content: str
    message_type: str
    status: str = "pending"  # pending -> sent | failed
    post_id: Optional[str] = None
    whatsapp_message_id: Optional[str] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Subscription:
    """A user's billing subscription row."""

    user_id: str
    plan_name: str  # "free", "pro", ...
    status: str = "active"  # active | cancelled | expired
    paypal_subscription_id: Optional[str] = None
    id: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class HistoryEntry:
    """Stored summary of one finalized price-check run."""

    id: str
    user_id: str
    timestamp: datetime
    payload: dict[str, Any]
