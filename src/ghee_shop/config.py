"""Process configuration loaded from the environment.

Values are read once at start-up.  A ``.env`` file in the working
directory is honoured through python-dotenv, so a deployment can keep its
secrets (admin key, gateway salt, SMTP password) out of the code.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path.cwd() / "db" / "ghee_shop.db"

NOTIFICATION_METHODS = ("none", "email", "whatsapp", "both")


def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s; using default", name, extra={"extra": {"value": raw}})
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s; using default", name, extra={"extra": {"value": raw}})
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class PaymentSettings:
    """Merchant credentials and URLs for the hosted checkout gateway."""

    merchant_id: str = ""
    salt_key: str = ""
    salt_index: str = "1"
    environment: str = "sandbox"
    redirect_url: str = "http://localhost:5173/payment/callback"
    callback_url: str = "http://localhost:3000/api/payment/callback"

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.phonepe.com/apis/hermes"
        return "https://api-preprod.phonepe.com/apis/pg-sandbox"


@dataclass
class NotificationSettings:
    method: str = "none"
    business_name: str = "Amma Fresh"
    business_phone: str = ""
    business_address: str = ""
    business_email: str = ""
    email_user: str = ""
    email_password: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_secure: bool = False
    whatsapp_provider: str = "link"
    callmebot_api_key: str = ""
    callmebot_phone: str = ""
    wati_api_url: str = ""
    wati_api_key: str = ""
    interakt_api_key: str = ""


@dataclass
class Settings:
    database_path: str = str(_DEFAULT_DB_PATH)
    host: str = "0.0.0.0"
    port: int = 3000
    admin_api_key: str = ""
    order_prefix: str = "AFK"
    delivery_fee: float = 49.0
    http_timeout: float = 15.0
    keep_alive_interval: int = 180
    log_dir: str = "logs"
    log_level: str = "INFO"
    payment: PaymentSettings = field(default_factory=PaymentSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "Settings":
        """Build settings from environment variables (and ``.env`` if present)."""
        load_dotenv(dotenv_path)

        method = _env_str("NOTIFICATION_METHOD", "none").lower()
        if method not in NOTIFICATION_METHODS:
            logger.warning("Unknown NOTIFICATION_METHOD; notifications disabled", extra={"extra": {"value": method}})
            method = "none"

        payment = PaymentSettings(
            merchant_id=_env_str("PHONEPE_MERCHANT_ID"),
            salt_key=_env_str("PHONEPE_SALT_KEY"),
            salt_index=_env_str("PHONEPE_SALT_INDEX", "1"),
            environment="production" if _env_str("PHONEPE_ENV").lower() == "production" else "sandbox",
            redirect_url=_env_str("PHONEPE_REDIRECT_URL", PaymentSettings.redirect_url),
            callback_url=_env_str("PHONEPE_CALLBACK_URL", PaymentSettings.callback_url),
        )
        notifications = NotificationSettings(
            method=method,
            business_name=_env_str("BUSINESS_NAME", "Amma Fresh"),
            business_phone=_env_str("BUSINESS_PHONE"),
            business_address=_env_str("BUSINESS_ADDRESS"),
            business_email=_env_str("BUSINESS_EMAIL"),
            email_user=_env_str("EMAIL_USER"),
            email_password=_env_str("EMAIL_PASSWORD"),
            smtp_host=_env_str("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_secure=_env_bool("SMTP_SECURE"),
            whatsapp_provider=_env_str("WHATSAPP_PROVIDER", "link").lower(),
            callmebot_api_key=_env_str("CALLMEBOT_API_KEY"),
            callmebot_phone=_env_str("CALLMEBOT_PHONE"),
            wati_api_url=_env_str("WATI_API_URL"),
            wati_api_key=_env_str("WATI_API_KEY"),
            interakt_api_key=_env_str("INTERAKT_API_KEY"),
        )
        return cls(
            database_path=_env_str("DATABASE_PATH", str(_DEFAULT_DB_PATH)),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
            admin_api_key=_env_str("ADMIN_API_KEY"),
            order_prefix=_env_str("ORDER_PREFIX", "AFK"),
            delivery_fee=_env_float("DELIVERY_FEE", 49.0),
            http_timeout=_env_float("HTTP_TIMEOUT", 15.0),
            keep_alive_interval=_env_int("KEEP_ALIVE_INTERVAL", 180),
            log_dir=_env_str("LOG_DIR", "logs"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            payment=payment,
            notifications=notifications,
        )
