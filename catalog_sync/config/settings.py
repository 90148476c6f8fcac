"""
Runtime configuration loaded from environment variables.

Usage:
    from catalog_sync.config.settings import get_settings

    settings = get_settings()
    ttl = settings.product_cache_ttl_seconds
"""

import os
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SHOPIFY_API_VERSION = "2024-01"
DEFAULT_PRODUCT_CACHE_TTL_SECONDS = 3600
DEFAULT_QUEUE_RETRY_ATTEMPTS = 3
DEFAULT_QUEUE_RETRY_BACKOFF_DELAY_SECONDS = 1.0
DEFAULT_QUEUE_LEASE_SECONDS = 60
DEFAULT_WORKER_CONCURRENCY = 4
DEFAULT_WORKER_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_OUTBOUND_TIMEOUT_SECONDS = 10.0


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer setting, using default", extra={
            "setting": name, "value": raw, "default": default,
        })
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float setting, using default", extra={
            "setting": name, "value": raw, "default": default,
        })
        return default


def normalize_database_url(database_url: str) -> str:
    """Handle Render's postgres:// URL format (SQLAlchemy requires postgresql://)."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of process configuration."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None

    shopify_api_secret: Optional[str] = None
    shopify_shop_domain: Optional[str] = None
    shopify_access_token: Optional[str] = None
    shopify_api_version: str = DEFAULT_SHOPIFY_API_VERSION

    contentful_space_id: Optional[str] = None
    contentful_management_token: Optional[str] = None
    contentful_environment: str = "master"
    contentful_locale: str = "en-US"
    contentful_content_type: str = "product"

    product_cache_ttl_seconds: int = DEFAULT_PRODUCT_CACHE_TTL_SECONDS

    queue_retry_attempts: int = DEFAULT_QUEUE_RETRY_ATTEMPTS
    queue_retry_backoff_delay_seconds: float = DEFAULT_QUEUE_RETRY_BACKOFF_DELAY_SECONDS
    queue_lease_seconds: int = DEFAULT_QUEUE_LEASE_SECONDS

    worker_concurrency: int = DEFAULT_WORKER_CONCURRENCY
    worker_poll_interval_seconds: float = DEFAULT_WORKER_POLL_INTERVAL_SECONDS
    outbound_timeout_seconds: float = DEFAULT_OUTBOUND_TIMEOUT_SECONDS

    admin_email: Optional[str] = None
    email_provider: str = "mock"
    sendgrid_api_key: Optional[str] = None
    notification_from_email: str = "notifications@example.com"

    mirror_fields_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        return cls(
            database_url=normalize_database_url(database_url) if database_url else None,
            redis_url=os.getenv("REDIS_URL"),
            shopify_api_secret=os.getenv("SHOPIFY_API_SECRET"),
            shopify_shop_domain=os.getenv("SHOPIFY_SHOP_DOMAIN"),
            shopify_access_token=os.getenv("SHOPIFY_ACCESS_TOKEN"),
            shopify_api_version=os.getenv(
                "SHOPIFY_API_VERSION", DEFAULT_SHOPIFY_API_VERSION
            ),
            contentful_space_id=os.getenv("CONTENTFUL_SPACE_ID"),
            contentful_management_token=os.getenv("CONTENTFUL_MANAGEMENT_TOKEN"),
            contentful_environment=os.getenv("CONTENTFUL_ENVIRONMENT", "master"),
            contentful_locale=os.getenv("CONTENTFUL_LOCALE", "en-US"),
            contentful_content_type=os.getenv("CONTENTFUL_CONTENT_TYPE", "product"),
            product_cache_ttl_seconds=_get_int(
                "PRODUCT_CACHE_TTL_SECONDS", DEFAULT_PRODUCT_CACHE_TTL_SECONDS
            ),
            queue_retry_attempts=_get_int(
                "QUEUE_RETRY_ATTEMPTS", DEFAULT_QUEUE_RETRY_ATTEMPTS
            ),
            queue_retry_backoff_delay_seconds=_get_float(
                "QUEUE_RETRY_BACKOFF_DELAY_SECONDS",
                DEFAULT_QUEUE_RETRY_BACKOFF_DELAY_SECONDS,
            ),
            queue_lease_seconds=_get_int(
                "QUEUE_LEASE_SECONDS", DEFAULT_QUEUE_LEASE_SECONDS
            ),
            worker_concurrency=_get_int(
                "WORKER_CONCURRENCY", DEFAULT_WORKER_CONCURRENCY
            ),
            worker_poll_interval_seconds=_get_float(
                "WORKER_POLL_INTERVAL_SECONDS", DEFAULT_WORKER_POLL_INTERVAL_SECONDS
            ),
            outbound_timeout_seconds=_get_float(
                "OUTBOUND_TIMEOUT_SECONDS", DEFAULT_OUTBOUND_TIMEOUT_SECONDS
            ),
            admin_email=os.getenv("ADMIN_EMAIL"),
            email_provider=os.getenv("EMAIL_PROVIDER", "mock").lower(),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY"),
            notification_from_email=os.getenv(
                "NOTIFICATION_FROM_EMAIL", "notifications@example.com"
            ),
            mirror_fields_path=os.getenv("MIRROR_FIELDS_PATH"),
        )


_settings: Optional[Settings] = None
_settings_lock = Lock()


def get_settings() -> Settings:
    """Get or create the settings singleton."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests)."""
    global _settings
    with _settings_lock:
        _settings = None
