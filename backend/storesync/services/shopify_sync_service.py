"""Shopify sync orchestration.

WHAT:
    Runs product push/pull, inventory push, order import and customer pull
    against one shop, bracketing every run with SyncStatusManager:
        idle -> running -> completed | failed

WHY:
    - Routers and schedulers share one implementation of every sync
    - Per-record failures are tallied instead of aborting the run, so a run
      never throws away work that already succeeded
    - Breaker/limiter state lives in one ShopifyChannel per shop credential

CALL PATH (every remote call):
    CircuitBreaker -> RetryManager -> ShopifyClient (RateLimiter per HTTP call)

RUN SHAPE:
    load   - fetch the records to process; a failure here fails the whole run
    handle - one record; failures are caught, counted and reported
    Records run concurrently (bounded by ``concurrency``) and are settled
    all-then-tallied.

REFERENCES:
    - storesync/services/inbound_sync.py (pull/webhook write path)
    - storesync/services/conflict_resolver.py
    - storesync/routers/shopify_sync.py (HTTP surface)
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from storesync.models import RecordSyncStatusEnum, SyncDirectionEnum, SyncEntityTypeEnum
from storesync.services.conflict_resolver import ConflictAction, ConflictResolver, ConflictSide
from storesync.services.inbound_sync import apply_remote_customer, apply_remote_order, apply_remote_product
from storesync.services.record_store import RecordStore
from storesync.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RateLimiter,
    RetryManager,
    RetryPolicy,
)
from storesync.services.shopify_client import ShopifyClient
from storesync.services.shopify_mappers import (
    map_local_product_to_shopify,
    map_shopify_product_to_local,
)
from storesync.services.sync_status_manager import SyncStatusManager
from storesync.services.webhook_processor import WebhookEvent, WebhookProcessor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 10

# Persist progress every N settled records
PROGRESS_EVERY = 25

PUSH = SyncDirectionEnum.push.value
PULL = SyncDirectionEnum.pull.value

# Order matches the gather() in trigger_full_sync
FULL_SYNC_ENTITIES = tuple(entity.value for entity in SyncEntityTypeEnum)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _mask(secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    if len(secret) <= 10:
        return "****"
    return f"{secret[:6]}...{secret[-4:]}"


@dataclass
class SyncResult:
    """Outcome of one sync run. Callers must inspect the counts."""
    sync_id: str
    entity_type: str
    direction: str
    successful: int = 0
    failed: int = 0
    total: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


class ShopifyChannel:
    """
    Guarded connection to one shop.

    WHAT: Owns the client plus the breaker and retry manager wrapped around it
    WHY: One instance per shop credential keeps tenants' budgets independent

    Usage:
        channel = ShopifyChannel.from_settings(settings)
        products = await channel.call(channel.client.get_all_products)
    """

    def __init__(
        self,
        client: ShopifyClient,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_manager: Optional[RetryManager] = None,
    ):
        self.client = client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=f"shopify:{client.shop_domain}")
        self.retry_manager = retry_manager or RetryManager()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self.client.rate_limiter

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.circuit_breaker.execute(lambda: self.retry_manager.execute(operation))

    @classmethod
    def from_settings(cls, settings: Any, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ShopifyChannel":
        rate_limiter = RateLimiter(
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        client = ShopifyClient(
            shop_domain=settings.SHOPIFY_SHOP_DOMAIN,
            access_token=settings.SHOPIFY_ACCESS_TOKEN,
            api_version=settings.SHOPIFY_API_VERSION,
            rate_limiter=rate_limiter,
            transport=transport,
        )
        circuit_breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
                monitoring_period=settings.CIRCUIT_BREAKER_MONITORING_PERIOD,
            ),
            name=f"shopify:{settings.SHOPIFY_SHOP_DOMAIN}",
        )
        retry_manager = RetryManager(
            RetryPolicy(
                max_retries=settings.RETRY_MAX_RETRIES,
                base_delay=settings.RETRY_BASE_DELAY,
                max_delay=settings.RETRY_MAX_DELAY,
                backoff_factor=settings.RETRY_BACKOFF_FACTOR,
            )
        )
        return cls(client, circuit_breaker, retry_manager)


class _RemoteProductIndex:
    """Shopify products keyed by id and by every variant SKU."""

    def __init__(self, products: List[Dict[str, Any]]):
        self.by_id: Dict[str, Dict[str, Any]] = {}
        self.by_sku: Dict[str, Dict[str, Any]] = {}
        for product in products:
            self.add(product)

    def add(self, product: Dict[str, Any]) -> None:
        self.by_id[str(product.get("id"))] = product
        for variant in product.get("variants") or []:
            if variant.get("sku"):
                self.by_sku.setdefault(variant["sku"], product)

    def inventory_item_id_for_sku(self, sku: Optional[str]) -> Optional[str]:
        product = self.by_sku.get(sku) if sku else None
        for variant in (product or {}).get("variants") or []:
            if variant.get("sku") == sku and variant.get("inventory_item_id"):
                return str(variant["inventory_item_id"])
        return None

    def match(self, local: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if local.get("shopify_id") and local["shopify_id"] in self.by_id:
            return self.by_id[local["shopify_id"]]
        skus = [local.get("sku")] + [v.get("sku") for v in local.get("variants") or []]
        for sku in skus:
            if sku and sku in self.by_sku:
                return self.by_sku[sku]
        return None


class ShopifyService:
    """
    Sync orchestrator for one shop.

    Usage:
        service = ShopifyService(store, channel)
        result = await service.sync_products_to_shopify()
        print(result.successful, result.failed, result.errors)
    """

    def __init__(
        self,
        store: RecordStore,
        channel: ShopifyChannel,
        sync_status_manager: Optional[SyncStatusManager] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
        webhook_processor: Optional[WebhookProcessor] = None,
        location_id: Optional[str] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.store = store
        self.channel = channel
        self.client = channel.client
        self.sync_status = sync_status_manager or SyncStatusManager(store)
        self.conflict_resolver = conflict_resolver or ConflictResolver()
        self.webhook_processor = webhook_processor or WebhookProcessor(
            store, self.sync_status, conflict_resolver=self.conflict_resolver
        )
        self.location_id = location_id
        self.concurrency = max(1, concurrency)

    # =========================================================================
    # RUN SKELETON
    # =========================================================================

    async def _run_sync(
        self,
        entity_type: str,
        direction: str,
        load: Callable[[], Awaitable[List[Dict[str, Any]]]],
        handle: Callable[[Dict[str, Any]], Awaitable[Any]],
        label: Callable[[Dict[str, Any]], str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        sync_id = self.sync_status.start_sync(entity_type, direction, metadata)

        try:
            records = await load()
        except Exception as e:
            self.sync_status.fail_sync(sync_id, e)
            raise

        result = SyncResult(sync_id=sync_id, entity_type=entity_type, direction=direction, total=len(records))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(record: Dict[str, Any]) -> None:
            async with semaphore:
                try:
                    await handle(record)
                except Exception as e:
                    result.failed += 1
                    result.errors.append(f"{label(record)}: {e}")
                    logger.warning(f"[SHOPIFY_SYNC] {entity_type} {direction} failed for {label(record)}: {e}")
                else:
                    result.successful += 1

                settled = result.successful + result.failed
                if settled % PROGRESS_EVERY == 0 and settled < result.total:
                    self.sync_status.update_progress(
                        sync_id, result.successful, result.failed, result.total, list(result.errors)
                    )

        await asyncio.gather(*(run_one(record) for record in records))

        self.sync_status.complete_sync(sync_id, result.successful, result.failed, result.total, result.errors)
        return result

    async def _remote_product_index(self) -> _RemoteProductIndex:
        products = await self.channel.call(self.client.get_all_products)
        return _RemoteProductIndex(products)

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def sync_products_to_shopify(self) -> SyncResult:
        """Push locally modified (pending) products to Shopify."""
        logger.info(f"[SHOPIFY_SYNC] Starting product push for {self.client.shop_domain}")
        index = _RemoteProductIndex([])

        async def load() -> List[Dict[str, Any]]:
            nonlocal index
            products = self.store.list_pending("product")
            if products:
                index = await self._remote_product_index()
            return products

        return await self._run_sync(
            "products",
            PUSH,
            load,
            lambda product: self._push_product(product, index),
            lambda product: f"product {product.get('sku') or product['id']}",
        )

    async def sync_products_from_shopify(self) -> SyncResult:
        logger.info(f"[SHOPIFY_SYNC] Starting product pull for {self.client.shop_domain}")

        async def handle(remote: Dict[str, Any]) -> None:
            apply_remote_product(self.store, self.conflict_resolver, remote)

        return await self._run_sync(
            "products",
            PULL,
            lambda: self.channel.call(self.client.get_all_products),
            handle,
            lambda remote: f"Shopify product {remote.get('id')}",
        )

    async def sync_single_product(self, product_id: str) -> SyncResult:
        """Push one local product regardless of its sync status.

        Raises:
            LookupError: No local product with this id
        """
        local = self.store.get("product", product_id)
        if local is None:
            raise LookupError(f"product {product_id} not found")

        index = _RemoteProductIndex([])

        async def load() -> List[Dict[str, Any]]:
            nonlocal index
            if local.get("shopify_id"):
                remote = await self.channel.call(lambda: self.client.get_product(local["shopify_id"]))
                index = _RemoteProductIndex([remote] if remote else [])
            else:
                index = await self._remote_product_index()
            return [local]

        return await self._run_sync(
            "products",
            PUSH,
            load,
            lambda product: self._push_product(product, index),
            lambda product: f"product {product.get('sku') or product['id']}",
            metadata={"product_id": product_id},
        )

    async def _push_product(self, local: Dict[str, Any], index: _RemoteProductIndex) -> None:
        remote = index.match(local)

        if remote is None:
            created = await self.channel.call(
                lambda: self.client.create_product(map_local_product_to_shopify(local))
            )
            index.add(created)
            self._link_product(local, created)
            logger.info(f"[SHOPIFY_SYNC] Created Shopify product {created.get('id')} for {local['id']}")
            return

        conflict = self.conflict_resolver.detect_product_conflict(local, remote)
        if conflict is None:
            self._link_product(local, remote)
            return

        resolution = self.conflict_resolver.resolve_product_conflict(conflict)

        if resolution.action == ConflictAction.SKIP:
            # Stays pending; the operator sees the reason in the conflict log
            logger.info(f"[SHOPIFY_SYNC] Skipped product {local['id']}: {resolution.reason}")
            return

        if resolution.action == ConflictAction.OVERWRITE and resolution.winner == ConflictSide.REMOTE:
            data = map_shopify_product_to_local(remote)
            data["sync_status"] = RecordSyncStatusEnum.synced.value
            data["last_synced_at"] = _utcnow()
            self.store.update("product", local["id"], data)
            logger.info(f"[SHOPIFY_SYNC] Product {local['id']} overwritten from Shopify {remote.get('id')}")
            return

        payload = map_local_product_to_shopify(resolution.merged_data or local)
        for position, variant in enumerate(payload["variants"]):
            remote_variants = remote.get("variants") or []
            if "id" not in variant and position < len(remote_variants):
                variant["id"] = remote_variants[position].get("id")

        updated = await self.channel.call(lambda: self.client.update_product(str(remote["id"]), payload))
        self._link_product(local, updated or remote)

    def _link_product(self, local: Dict[str, Any], remote: Dict[str, Any]) -> None:
        """Record Shopify ids on the local product and mark it synced."""
        mapped = map_shopify_product_to_local(remote)
        self.store.update(
            "product",
            local["id"],
            {
                "shopify_id": mapped["shopify_id"],
                "shopify_updated_at": mapped["shopify_updated_at"],
                "variants": mapped["variants"],
                "sync_status": RecordSyncStatusEnum.synced.value,
                "last_synced_at": _utcnow(),
            },
        )

    # =========================================================================
    # INVENTORY
    # =========================================================================

    async def sync_inventory_to_shopify(self) -> SyncResult:
        """Push pending inventory quantities to the configured (or primary) location."""
        logger.info(f"[SHOPIFY_SYNC] Starting inventory push for {self.client.shop_domain}")
        index = _RemoteProductIndex([])
        location_id = self.location_id

        async def load() -> List[Dict[str, Any]]:
            nonlocal index, location_id
            items = self.store.list_pending("inventory")
            if not items:
                return items

            if not location_id:
                location_id = await self.channel.call(self.client.get_primary_location_id)
                if not location_id:
                    raise RuntimeError(f"No active Shopify location for {self.client.shop_domain}")

            if any(not item.get("shopify_inventory_item_id") for item in items):
                index = await self._remote_product_index()
            return items

        async def handle(item: Dict[str, Any]) -> None:
            inventory_item_id = item.get("shopify_inventory_item_id") or index.inventory_item_id_for_sku(item.get("sku"))
            if not inventory_item_id:
                raise ValueError(f"No Shopify inventory item for SKU {item.get('sku')}")

            await self.channel.call(
                lambda: self.client.set_inventory_level(inventory_item_id, location_id, int(item["quantity"] or 0))
            )
            self.store.update(
                "inventory",
                item["id"],
                {"sync_status": RecordSyncStatusEnum.synced.value, "last_synced_at": _utcnow()},
            )

        return await self._run_sync(
            "inventory",
            PUSH,
            load,
            handle,
            lambda item: f"inventory {item.get('sku') or item['id']}",
        )

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def import_orders_from_shopify(self) -> SyncResult:
        """Pull orders updated since the last completed import (pull-only)."""
        since = self.sync_status.get_last_sync_time("orders", PULL)
        logger.info(
            f"[SHOPIFY_SYNC] Starting order import for {self.client.shop_domain} "
            f"(since: {since.isoformat() if since else 'beginning'})"
        )

        async def handle(remote: Dict[str, Any]) -> None:
            apply_remote_order(self.store, remote)

        return await self._run_sync(
            "orders",
            PULL,
            lambda: self.channel.call(lambda: self.client.get_orders_since(since)),
            handle,
            lambda remote: f"Shopify order {remote.get('name') or remote.get('id')}",
            metadata={"since": since.isoformat() if since else None},
        )

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def sync_customers_from_shopify(self) -> SyncResult:
        logger.info(f"[SHOPIFY_SYNC] Starting customer pull for {self.client.shop_domain}")

        async def handle(remote: Dict[str, Any]) -> None:
            apply_remote_customer(self.store, self.conflict_resolver, remote)

        return await self._run_sync(
            "customers",
            PULL,
            lambda: self.channel.call(self.client.get_all_customers),
            handle,
            lambda remote: f"Shopify customer {remote.get('id')}",
        )

    async def sync_single_customer(self, customer_id: str) -> SyncResult:
        """Refresh one linked customer from Shopify.

        Raises:
            LookupError: Unknown local customer, or gone from Shopify
            ValueError: Customer has never been linked to Shopify
        """
        local = self.store.get("customer", customer_id)
        if local is None:
            raise LookupError(f"customer {customer_id} not found")
        if not local.get("shopify_id"):
            raise ValueError(f"customer {customer_id} is not linked to Shopify")

        async def load() -> List[Dict[str, Any]]:
            remote = await self.channel.call(lambda: self.client.get_customer(local["shopify_id"]))
            if remote is None:
                raise LookupError(f"Shopify customer {local['shopify_id']} not found")
            return [remote]

        async def handle(remote: Dict[str, Any]) -> None:
            apply_remote_customer(self.store, self.conflict_resolver, remote)

        return await self._run_sync(
            "customers",
            PULL,
            load,
            handle,
            lambda remote: f"Shopify customer {remote.get('id')}",
            metadata={"customer_id": customer_id},
        )

    # =========================================================================
    # FULL SYNC
    # =========================================================================

    async def trigger_full_sync(self) -> Dict[str, Any]:
        """Run every sync concurrently; one failing entity never cancels the others."""
        started_at = _utcnow()
        logger.info(f"[SHOPIFY_SYNC] Starting full sync for {self.client.shop_domain}")

        outcomes = await asyncio.gather(
            self.sync_products_from_shopify(),
            self.sync_inventory_to_shopify(),
            self.import_orders_from_shopify(),
            self.sync_customers_from_shopify(),
            return_exceptions=True,
        )

        results: Dict[str, Any] = {}
        for entity, outcome in zip(FULL_SYNC_ENTITIES, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"[SHOPIFY_SYNC] Full sync: {entity} failed: {outcome}")
                results[entity] = {"success": False, "error": str(outcome)}
            else:
                results[entity] = outcome.to_dict()

        success = all(result["success"] for result in results.values())
        logger.info(f"[SHOPIFY_SYNC] Full sync finished for {self.client.shop_domain} (success: {success})")
        return {
            "success": success,
            "started_at": started_at,
            "completed_at": _utcnow(),
            "results": results,
        }

    # =========================================================================
    # WEBHOOKS, STATUS & OPERATOR TOOLS
    # =========================================================================

    async def process_webhook(self, event: WebhookEvent) -> str:
        return await self.webhook_processor.process(event)

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "active_syncs": self.sync_status.get_active_syncs(),
            "recent_syncs": self.sync_status.get_sync_history(limit=10),
            "last_sync_times": {
                entity: self.sync_status.get_last_sync_time(entity) for entity in FULL_SYNC_ENTITIES
            },
            "circuit_breaker": self.get_circuit_breaker_status(),
            "rate_limit": self.get_rate_limit_status(),
        }

    def get_sync_history(self, entity_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.sync_status.get_sync_history(entity_type=entity_type, limit=limit)

    def get_sync_metrics(self, entity_type: Optional[str] = None, days: int = 7) -> Dict[str, Any]:
        return self.sync_status.get_sync_metrics(entity_type=entity_type, days=days)

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        return self.channel.circuit_breaker.get_status()

    def get_rate_limit_status(self) -> Dict[str, Any]:
        return self.channel.rate_limiter.get_status()

    def reset_circuit_breaker(self) -> Dict[str, Any]:
        self.channel.circuit_breaker.reset()
        return self.get_circuit_breaker_status()

    def get_configuration(self) -> Dict[str, Any]:
        """Effective configuration with credentials masked."""
        breaker = self.channel.circuit_breaker
        limiter = self.channel.rate_limiter
        return {
            "shop_domain": self.client.shop_domain,
            "api_version": self.client.api_version,
            "access_token": _mask(self.client.access_token),
            "webhook_secret_configured": bool(self.webhook_processor.webhook_secret),
            "allow_unsigned_webhooks": self.webhook_processor.allow_unsigned,
            "location_id": self.location_id,
            "concurrency": self.concurrency,
            "circuit_breaker": asdict(breaker.config),
            "rate_limit": {"max_requests": limiter.max_requests, "window_seconds": limiter.window_seconds},
            "retry": asdict(self.channel.retry_manager.policy),
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch shop.json through the guarded channel and report the outcome."""
        try:
            shop = await self.channel.call(self.client.get_shop)
        except Exception as e:
            logger.warning(f"[SHOPIFY_SYNC] Connection test failed for {self.client.shop_domain}: {e}")
            return {"connected": False, "shop_domain": self.client.shop_domain, "error": str(e)}

        return {
            "connected": True,
            "shop_domain": self.client.shop_domain,
            "shop": {
                "name": shop.get("name"),
                "domain": shop.get("domain"),
                "myshopify_domain": shop.get("myshopify_domain"),
                "currency": shop.get("currency"),
                "plan_name": shop.get("plan_name"),
            },
        }

    def preview_conflict_resolution(
        self,
        entity_type: str,
        local: Dict[str, Any],
        remote: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Dry-run detection + resolution for a supplied local/remote pair."""
        resolution = self.conflict_resolver.preview(entity_type, local, remote)
        if resolution is None:
            return {"has_conflict": False, "resolution": None}
        return {"has_conflict": True, "resolution": resolution.to_dict()}
