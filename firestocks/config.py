"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


VALID_PROVIDERS = ("yahoo_finance", "eodhd")
VALID_WHATSAPP_PROVIDERS = ("meta", "twilio")
VALID_PAYPAL_MODES = ("sandbox", "live")


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/firestocks.db"


@dataclass
class DataSourceConfig:
    """Quote provider configuration."""

    provider: str = "yahoo_finance"
    api_key: str = ""
    base_url: str = "https://eodhd.com/api"
    request_timeout_seconds: float = 10.0


@dataclass
class ScheduleConfig:
    """Market calendar configuration."""

    timezone: str = "America/New_York"
    market_hours_only: bool = False
    market_open: str = "09:30"
    market_close: str = "16:00"


@dataclass
class PriceCheckConfig:
    """Price-check run limits."""

    max_daily_checks: int = 100
    run_timeout_seconds: float = 180.0
    history_max_entries: int = 50


@dataclass
class TelegramConfig:
    """Telegram bot settings."""

    bot_token: str = ""
    webhook_secret: str = ""
    api_base_url: str = "https://api.telegram.org"
    send_delay_ms: int = 100


@dataclass
class WhatsAppConfig:
    """WhatsApp Business API settings."""

    provider: str = "meta"
    api_url: str = "https://graph.facebook.com/v18.0"
    api_token: str = ""
    phone_number_id: str = ""
    twilio_account_sid: str = ""
    twilio_from_number: str = ""
    default_country_code: str = "966"
    language_code: str = "ar"
    max_workers: int = 8


@dataclass
class PayPalConfig:
    """PayPal REST API settings."""

    mode: str = "sandbox"
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    max_retries: int = 2
    retry_delay_seconds: float = 1.0


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    data_source: DataSourceConfig = field(default_factory=DataSourceConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    price_check: PriceCheckConfig = field(default_factory=PriceCheckConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    paypal: PayPalConfig = field(default_factory=PayPalConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_clock(value: str, name: str) -> None:
    """Validate an HH:MM string."""
    if not re.fullmatch(r"\d{2}:\d{2}", value or ""):
        raise ConfigValidationError(f"{name} must be HH:MM, got {value!r}")
    hour, minute = (int(part) for part in value.split(":"))
    if hour > 23 or minute > 59:
        raise ConfigValidationError(f"{name} out of range: {value}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    data_source = config_dict.get("data_source") or {}
    provider = data_source.get("provider", DataSourceConfig.provider)
    if provider not in VALID_PROVIDERS:
        raise ConfigValidationError(f"Unknown quote provider: {provider}")

    schedule = config_dict.get("schedule") or {}
    timezone = schedule.get("timezone", ScheduleConfig.timezone)
    if not timezone:
        raise ConfigValidationError("Timezone cannot be empty")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigValidationError(f"Unknown timezone: {timezone}") from e
    _validate_clock(schedule.get("market_open", ScheduleConfig.market_open), "market_open")
    _validate_clock(schedule.get("market_close", ScheduleConfig.market_close), "market_close")

    price_check = config_dict.get("price_check") or {}
    if int(price_check.get("max_daily_checks", 1)) < 1:
        raise ConfigValidationError("max_daily_checks must be at least 1")
    if int(price_check.get("history_max_entries", 1)) < 1:
        raise ConfigValidationError("history_max_entries must be at least 1")

    whatsapp = config_dict.get("whatsapp") or {}
    if whatsapp.get("provider", WhatsAppConfig.provider) not in VALID_WHATSAPP_PROVIDERS:
        raise ConfigValidationError(f"Unknown WhatsApp provider: {whatsapp.get('provider')}")

    paypal = config_dict.get("paypal") or {}
    if str(paypal.get("mode", PayPalConfig.mode)).lower() not in VALID_PAYPAL_MODES:
        raise ConfigValidationError(f"Unknown PayPal mode: {paypal.get('mode')}")


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from a raw (already substituted) mapping."""
    _validate_config(config_dict)

    notif_dict = config_dict.get("notifications") or {}
    paypal_dict = dict(config_dict.get("paypal") or {})
    if "mode" in paypal_dict:
        paypal_dict["mode"] = str(paypal_dict["mode"]).lower()

    return AppConfig(
        database=DatabaseConfig(**(config_dict.get("database") or {})),
        data_source=DataSourceConfig(**(config_dict.get("data_source") or {})),
        schedule=ScheduleConfig(**(config_dict.get("schedule") or {})),
        price_check=PriceCheckConfig(**(config_dict.get("price_check") or {})),
        telegram=TelegramConfig(**(config_dict.get("telegram") or {})),
        whatsapp=WhatsAppConfig(**(config_dict.get("whatsapp") or {})),
        paypal=PayPalConfig(**paypal_dict),
        notifications=NotificationsConfig(
            email=EmailNotificationConfig(**(notif_dict.get("email") or {})),
        ),
        advanced=AdvancedConfig(**(config_dict.get("advanced") or {})),
    )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    config_dict = _substitute_env_vars(raw_config)
    try:
        return build_config(config_dict)
    except TypeError as e:
        # Unknown keys in a section
        raise ConfigValidationError(str(e)) from e


def load_config_or_default(config_path: Optional[str]) -> AppConfig:
    """Load the config file if one exists, otherwise use defaults."""
    if config_path and Path(config_path).exists():
        return load_config(config_path)
    return AppConfig()
