"""
Sentry Error Tracking
=====================

Centralized error tracking for the sync backend.

Related files:
- storesync/main.py: Initializes Sentry on app startup
- storesync/services/webhook_processor.py: Captures webhook processing failures
- storesync/services/sync_status_manager.py: Captures failed sync runs

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Args:
        dsn: Sentry DSN (falls back to SENTRY_DSN)
        environment: Environment name (falls back to ENVIRONMENT, then "development")

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    global _initialized

    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] No DSN configured - error tracking disabled")
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # webhook payloads carry customer PII
        release=os.environ.get("RELEASE_VERSION"),
    )
    _initialized = True

    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception to Sentry.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        except Exception as e:
            capture_exception(e, extra={"topic": event.topic, "shop": event.shop_domain})
            raise
    """
    if not _initialized:
        logger.debug(f"Exception (Sentry disabled): {exception!r}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
