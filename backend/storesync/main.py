"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .database import get_sync_session, init_db
from .deps import get_settings
from .routers import shopify_sync as shopify_sync_router
from .routers import shopify_webhooks as shopify_webhooks_router
from .services.record_store import RecordStore
from .services.sync_status_manager import SyncStatusManager
from .telemetry import init_sentry

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str


def create_app() -> FastAPI:
    settings = get_settings()

    # Before the app is built so the FastAPI integration sees every request
    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    app = FastAPI(
        title="storesync API",
        description="""
        Bidirectional Shopify synchronization for products, inventory, orders and customers.

        - Push/pull syncs guarded by a circuit breaker, rate limiter and retries
        - Signed webhook intake with an audit log
        - Sync run history and metrics
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shopify_sync_router.router)
    app.include_router(shopify_webhooks_router.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Create missing tables, close runs orphaned by a restart, report config."""
        init_db()

        # Nothing survives a restart, so anything still "running" never will finish
        with get_sync_session() as db:
            orphaned = SyncStatusManager(RecordStore(db)).mark_running_as_failed("Interrupted by server restart")
        if orphaned:
            logger.warning(f"[STARTUP] Marked {orphaned} interrupted sync run(s) as failed")

        if not settings.SHOPIFY_SHOP_DOMAIN or not settings.SHOPIFY_ACCESS_TOKEN:
            logger.warning("[STARTUP] SHOPIFY_SHOP_DOMAIN / SHOPIFY_ACCESS_TOKEN not set - sync calls will fail")
        if not settings.SHOPIFY_WEBHOOK_SECRET:
            logger.warning(
                "[STARTUP] SHOPIFY_WEBHOOK_SECRET not set - webhooks are "
                f"{'accepted UNSIGNED' if settings.SHOPIFY_WEBHOOK_ALLOW_UNSIGNED else 'rejected'}"
            )

    return app


app = create_app()
