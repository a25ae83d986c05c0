"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Dict, Optional

from fastapi import Depends, Request
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .services.record_store import RecordStore
from .services.shopify_sync_service import ShopifyChannel, ShopifyService
from .services.sync_status_manager import SyncStatusManager
from .services.webhook_processor import WebhookProcessor


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Shopify credentials
    SHOPIFY_SHOP_DOMAIN: str = ""
    SHOPIFY_ACCESS_TOKEN: str = ""
    SHOPIFY_API_VERSION: str = "2023-10"
    SHOPIFY_LOCATION_ID: Optional[str] = None  # None = primary location

    # Webhooks
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    # Accept unsigned webhooks when no secret is set (dev only, logged on every event)
    SHOPIFY_WEBHOOK_ALLOW_UNSIGNED: bool = True

    # Circuit breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = 60.0
    CIRCUIT_BREAKER_MONITORING_PERIOD: float = 10.0

    # Rate limiting (Shopify REST bucket: 40 requests, leaks 2/s)
    RATE_LIMIT_MAX_REQUESTS: int = 40
    RATE_LIMIT_WINDOW_SECONDS: float = 1.0

    # Retries
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0
    RETRY_BACKOFF_FACTOR: float = 2.0

    SYNC_CONCURRENCY: int = 10

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_record_store(db: Session = Depends(get_db)) -> RecordStore:
    return RecordStore(db)


def get_shopify_channel(request: Request) -> ShopifyChannel:
    """Return the channel for the configured shop, created once per app.

    Breaker and limiter state must outlive a single request, so channels are
    kept on ``app.state`` keyed by shop domain.
    """
    settings = get_settings()
    channels: Dict[str, ShopifyChannel] = getattr(request.app.state, "shopify_channels", None) or {}
    request.app.state.shopify_channels = channels

    channel = channels.get(settings.SHOPIFY_SHOP_DOMAIN)
    if channel is None:
        channel = ShopifyChannel.from_settings(settings)
        channels[settings.SHOPIFY_SHOP_DOMAIN] = channel
    return channel


def get_shopify_service(
    store: RecordStore = Depends(get_record_store),
    channel: ShopifyChannel = Depends(get_shopify_channel),
) -> ShopifyService:
    settings = get_settings()
    status_manager = SyncStatusManager(store)
    webhook_processor = WebhookProcessor(
        store,
        status_manager,
        webhook_secret=settings.SHOPIFY_WEBHOOK_SECRET,
        allow_unsigned=settings.SHOPIFY_WEBHOOK_ALLOW_UNSIGNED,
    )
    return ShopifyService(
        store,
        channel,
        sync_status_manager=status_manager,
        webhook_processor=webhook_processor,
        location_id=settings.SHOPIFY_LOCATION_ID,
        concurrency=settings.SYNC_CONCURRENCY,
    )
