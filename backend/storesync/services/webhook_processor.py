"""Shopify webhook processing.

WHAT:
    Verifies inbound Shopify webhooks (HMAC-SHA256) and applies them to the
    local store per topic, writing an audit log entry for every delivery.

WHY:
    Webhooks are the near-real-time half of the sync: product/order/customer
    changes made in Shopify land here within seconds, while scheduled pull
    syncs catch anything that was missed.

PIPELINE (per event):
    received -> verified -> routed -> applied -> logged
    received -> verification_failed          (WebhookVerificationError, logged)
    received -> verified -> routed -> apply_failed (re-raised, logged)

IDEMPOTENCY:
    Create/update topics always look up by Shopify id first, so a redelivered
    webhook updates the record it created the first time.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/webhook#event-topics
    - storesync/routers/shopify_webhooks.py (HTTP boundary)
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from storesync.models import RecordSyncStatusEnum, WebhookLogStatusEnum
from storesync.services.conflict_resolver import ConflictResolver
from storesync.services.inbound_sync import apply_remote_customer, apply_remote_order, apply_remote_product
from storesync.services.record_store import RecordStore
from storesync.services.shopify_mappers import parse_datetime
from storesync.services.sync_status_manager import SyncStatusManager
from storesync.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
SHOP_DOMAIN_HEADER = "x-shopify-shop-domain"


class WebhookTopic(str, Enum):
    PRODUCTS_CREATE = "products/create"
    PRODUCTS_UPDATE = "products/update"
    PRODUCTS_DELETE = "products/delete"
    ORDERS_CREATE = "orders/create"
    ORDERS_UPDATED = "orders/updated"
    ORDERS_DELETE = "orders/delete"
    CUSTOMERS_CREATE = "customers/create"
    CUSTOMERS_UPDATE = "customers/update"
    CUSTOMERS_DELETE = "customers/delete"
    INVENTORY_LEVELS_UPDATE = "inventory_levels/update"
    APP_UNINSTALLED = "app/uninstalled"

    @classmethod
    def parse(cls, topic: str) -> Optional["WebhookTopic"]:
        try:
            return cls(topic)
        except ValueError:
            return None


class WebhookVerificationError(Exception):
    """Raised when a webhook's HMAC signature is missing or invalid."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WebhookEvent:
    """One inbound webhook delivery.

    ``raw_body`` is the exact request body Shopify signed. When it is absent
    (events built in code) the payload is re-serialized as compact JSON.
    """
    topic: str
    shop_domain: Optional[str]
    payload: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    raw_body: Optional[bytes] = None

    def __post_init__(self) -> None:
        self.headers = {str(k).lower(): v for k, v in (self.headers or {}).items()}

    def signed_body(self) -> bytes:
        if self.raw_body is not None:
            return self.raw_body
        return json.dumps(self.payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_webhook_signature(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of ``body``, as Shopify sends in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a base64 signature against ``body``.

    Returns False for a missing or undecodable signature, and for a length
    mismatch before any byte comparison.
    """
    if not signature:
        return False

    try:
        provided = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False

    return hmac.compare_digest(provided, expected)


class WebhookProcessor:
    """
    Verify, route and apply Shopify webhooks.

    Usage:
        processor = WebhookProcessor(store, status_manager, webhook_secret="shpss_...")
        await processor.process(event)
    """

    def __init__(
        self,
        store: RecordStore,
        sync_status_manager: SyncStatusManager,
        webhook_secret: Optional[str] = None,
        allow_unsigned: bool = False,
        conflict_resolver: Optional[ConflictResolver] = None,
    ):
        self.store = store
        self.sync_status_manager = sync_status_manager
        self.webhook_secret = webhook_secret
        self.allow_unsigned = allow_unsigned
        self.conflict_resolver = conflict_resolver or ConflictResolver()

        self._handlers: Dict[WebhookTopic, Callable[[WebhookEvent], Awaitable[None]]] = {
            WebhookTopic.PRODUCTS_CREATE: self._handle_product,
            WebhookTopic.PRODUCTS_UPDATE: self._handle_product,
            WebhookTopic.PRODUCTS_DELETE: self._handle_product_delete,
            WebhookTopic.ORDERS_CREATE: self._handle_order,
            WebhookTopic.ORDERS_UPDATED: self._handle_order,
            WebhookTopic.ORDERS_DELETE: self._handle_order_delete,
            WebhookTopic.CUSTOMERS_CREATE: self._handle_customer,
            WebhookTopic.CUSTOMERS_UPDATE: self._handle_customer,
            WebhookTopic.CUSTOMERS_DELETE: self._handle_customer_delete,
            WebhookTopic.INVENTORY_LEVELS_UPDATE: self._handle_inventory,
            WebhookTopic.APP_UNINSTALLED: self._handle_app_uninstalled,
        }

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def verify(self, event: WebhookEvent) -> bool:
        if not self.webhook_secret:
            if self.allow_unsigned:
                logger.warning(
                    f"[SHOPIFY_WEBHOOK] INSECURE: no webhook secret configured, "
                    f"accepting unsigned {event.topic} from {event.shop_domain}"
                )
                return True
            logger.error("[SHOPIFY_WEBHOOK] Webhook secret not configured and unsigned webhooks are not allowed")
            return False

        signature = event.headers.get(HMAC_HEADER)
        if not signature:
            logger.warning(f"[SHOPIFY_WEBHOOK] Missing HMAC header on {event.topic}")
            return False

        valid = verify_webhook_signature(event.signed_body(), signature, self.webhook_secret)
        if not valid:
            logger.warning(f"[SHOPIFY_WEBHOOK] HMAC verification failed for {event.topic} from {event.shop_domain}")
        return valid

    async def process(self, event: WebhookEvent) -> str:
        """Verify, route, apply and audit one webhook.

        Returns:
            The audit status ("success" or "unhandled")

        Raises:
            WebhookVerificationError: Signature missing/invalid (nothing applied)
            Exception: Whatever the topic handler raised, after it was audited
        """
        logger.info(f"[SHOPIFY_WEBHOOK] Processing {event.topic} from {event.shop_domain}")

        try:
            if not self.verify(event):
                raise WebhookVerificationError(f"Webhook verification failed for {event.topic}")

            topic = WebhookTopic.parse(event.topic)
            if topic is None:
                logger.warning(f"[SHOPIFY_WEBHOOK] Unhandled webhook topic: {event.topic}")
                status = WebhookLogStatusEnum.unhandled.value
            else:
                await self._handlers[topic](event)
                status = WebhookLogStatusEnum.success.value
        except Exception as e:
            logger.error(f"[SHOPIFY_WEBHOOK] Processing failed for {event.topic}: {e}")
            self._audit(event, WebhookLogStatusEnum.failed.value, error=str(e))
            if not isinstance(e, WebhookVerificationError):
                capture_exception(e, extra={"topic": event.topic, "shop_domain": event.shop_domain})
            raise

        self._audit(event, status)
        return status

    def _audit(self, event: WebhookEvent, status: str, error: Optional[str] = None) -> None:
        headers = {k: v for k, v in event.headers.items() if k != HMAC_HEADER}
        self.store.create(
            "webhook_log",
            {
                "topic": event.topic,
                "shop_domain": event.shop_domain,
                "status": status,
                "payload": event.payload,
                "headers": headers,
                "error": error,
                "processed_at": _utcnow(),
            },
        )

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def _handle_product(self, event: WebhookEvent) -> None:
        outcome = apply_remote_product(self.store, self.conflict_resolver, event.payload)
        logger.info(f"[SHOPIFY_WEBHOOK] {event.topic} {event.payload.get('id')}: {outcome}")

    async def _handle_product_delete(self, event: WebhookEvent) -> None:
        existing = self.store.find_by_external_id("product", event.payload.get("id"))
        if existing is None:
            logger.info(f"[SHOPIFY_WEBHOOK] products/delete for unknown product {event.payload.get('id')}")
            return

        self.store.update(
            "product",
            existing["id"],
            {
                "status": "archived",
                "deleted_at": _utcnow(),
                "sync_status": RecordSyncStatusEnum.synced.value,
            },
        )
        logger.info(f"[SHOPIFY_WEBHOOK] Archived product {existing['id']}")

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def _handle_order(self, event: WebhookEvent) -> None:
        outcome = apply_remote_order(self.store, event.payload)
        logger.info(f"[SHOPIFY_WEBHOOK] {event.topic} {event.payload.get('id')}: {outcome}")

    async def _handle_order_delete(self, event: WebhookEvent) -> None:
        existing = self.store.find_by_external_id("order", event.payload.get("id"))
        if existing is None:
            return

        self.store.update("order", existing["id"], {"status": "cancelled", "cancelled_at": _utcnow()})
        logger.info(f"[SHOPIFY_WEBHOOK] Cancelled order {existing['id']}")

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def _handle_customer(self, event: WebhookEvent) -> None:
        outcome = apply_remote_customer(self.store, self.conflict_resolver, event.payload)
        logger.info(f"[SHOPIFY_WEBHOOK] {event.topic} {event.payload.get('id')}: {outcome}")

    async def _handle_customer_delete(self, event: WebhookEvent) -> None:
        existing = self.store.find_by_external_id("customer", event.payload.get("id"))
        if existing is None:
            return

        # GDPR scrub: irreversible, the row is kept for order history
        self.store.update(
            "customer",
            existing["id"],
            {
                "status": "deleted",
                "deleted_at": _utcnow(),
                "first_name": "Deleted",
                "last_name": "Customer",
                "email": f"deleted-{existing['id']}@example.com",
                "phone": None,
            },
        )
        logger.info(f"[SHOPIFY_WEBHOOK] Anonymized customer {existing['id']}")

    # =========================================================================
    # INVENTORY & APP
    # =========================================================================

    async def _handle_inventory(self, event: WebhookEvent) -> None:
        payload = event.payload
        inventory_item_id = payload.get("inventory_item_id")

        variant = self.store.find_variant_by_inventory_item_id(inventory_item_id) if inventory_item_id else None
        if variant is None:
            logger.warning(f"[SHOPIFY_WEBHOOK] No local variant for inventory item {inventory_item_id}")
            return

        self.store.upsert(
            "inventory",
            inventory_item_id,
            {
                "variant_id": variant.id,
                "quantity": int(payload.get("available") or 0),
                "sync_status": RecordSyncStatusEnum.synced.value,
                "last_synced_at": parse_datetime(payload.get("updated_at")) or _utcnow(),
            },
        )
        logger.info(f"[SHOPIFY_WEBHOOK] Updated inventory for variant {variant.id}: {payload.get('available')}")

    async def _handle_app_uninstalled(self, event: WebhookEvent) -> None:
        failed = self.sync_status_manager.mark_running_as_failed(
            f"Shopify app uninstalled for shop {event.shop_domain}"
        )
        logger.warning(
            f"[SHOPIFY_WEBHOOK] App uninstalled for {event.shop_domain}, failed {failed} running sync(s)"
        )
