"""Keyed record store over the SQLAlchemy session.

WHAT:
    The persistence collaborator used by the sync subsystem. For each entity
    type (product, customer, order, inventory, sync_run, webhook_log) it offers
    find_by_external_id, find_by_natural_key, create, update (partial) and
    upsert, and returns plain dict snapshots instead of ORM instances.

WHY:
    Sync logic compares local and remote data as dicts (ConflictResolver) and
    runs many record tasks concurrently. Snapshots keep ORM identity/lazy
    loading out of that logic, and each write commits on its own so a failed
    record never rolls back another record's work.

NATURAL KEYS:
    product   -> SKU (product or any of its variants)
    customer  -> email (case-insensitive)
    order     -> order_number ("#1001")
    inventory -> variant SKU

REFERENCES:
    - storesync/models.py
    - storesync/services/shopify_sync_service.py (main consumer)
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import Session

from storesync.models import (
    Base,
    Customer,
    InventoryItem,
    Order,
    OrderLineItem,
    Product,
    ProductVariant,
    RecordSyncStatusEnum,
    SyncRun,
    SyncRunStatusEnum,
    WebhookLog,
)
from storesync.services.shopify_mappers import parse_datetime

logger = logging.getLogger(__name__)

ENTITY_MODELS: Dict[str, Type[Base]] = {
    "product": Product,
    "customer": Customer,
    "order": Order,
    "inventory": InventoryItem,
    "sync_run": SyncRun,
    "webhook_log": WebhookLog,
}

# Nested collections handled explicitly, never passed to the model constructor
_NESTED_KEYS = {"variants", "line_items"}

DEFAULT_INVENTORY_LOCATION = "shopify"

_MANAGED_TIMESTAMPS = {"created_at", "updated_at"}


class UnknownEntityError(ValueError):
    """Raised for an entity type the store does not manage."""


def _as_uuid(value: Any) -> Any:
    if isinstance(value, str):
        return uuid.UUID(value)
    return value


def _serialize(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime) and value.tzinfo is None:
        # SQLite drops tzinfo; everything is stored as UTC
        return value.replace(tzinfo=timezone.utc)
    return value


def _columns_snapshot(instance: Base) -> Dict[str, Any]:
    return {
        column.key: _serialize(getattr(instance, column.key))
        for column in instance.__table__.columns
    }


class RecordStore:
    """Dict-in/dict-out persistence for sync entities.

    Usage:
        store = RecordStore(db)
        product = store.find_by_external_id("product", "632910392")
        store.update("product", product["id"], {"title": "New title"})
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _model(self, entity: str) -> Type[Base]:
        try:
            return ENTITY_MODELS[entity]
        except KeyError:
            raise UnknownEntityError(f"Unknown entity type: {entity}") from None

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _assign(self, instance: Base, data: Dict[str, Any]) -> None:
        columns = {column.key: column for column in instance.__table__.columns}
        for key, value in data.items():
            if key in _NESTED_KEYS or key == "id" or key not in columns:
                continue
            column_type = columns[key].type
            if isinstance(column_type, Uuid):
                value = _as_uuid(value)
            elif isinstance(column_type, DateTime) and isinstance(value, str):
                value = parse_datetime(value)
            setattr(instance, key, value)

    def _snapshot(self, instance: Base) -> Dict[str, Any]:
        data = _columns_snapshot(instance)

        if isinstance(instance, Product):
            data["variants"] = [_columns_snapshot(v) for v in instance.variants]
        elif isinstance(instance, Order):
            data["line_items"] = [_columns_snapshot(item) for item in instance.line_items]
        elif isinstance(instance, InventoryItem):
            variant = instance.variant
            data["sku"] = variant.sku if variant else None
            data["shopify_inventory_item_id"] = variant.shopify_inventory_item_id if variant else None
            data["product_id"] = str(variant.product_id) if variant else None

        return data

    def _get_instance(self, entity: str, record_id: Any) -> Optional[Base]:
        return self.db.get(self._model(entity), _as_uuid(record_id))

    def _apply_variants(self, product: Product, variants: List[Dict[str, Any]]) -> None:
        """Match incoming variants to existing rows by Shopify id, then SKU.

        Unmatched existing variants are removed (delete-orphan cascade).
        """
        existing = list(product.variants)
        kept: List[ProductVariant] = []

        for position, variant_data in enumerate(variants):
            match = None
            for candidate in existing:
                if candidate in kept:
                    continue
                if variant_data.get("shopify_id") and candidate.shopify_id == variant_data.get("shopify_id"):
                    match = candidate
                    break
                if variant_data.get("sku") and candidate.sku == variant_data.get("sku"):
                    match = candidate
                    break

            if match is None:
                match = ProductVariant()
            fields = {"position": position + 1, **variant_data}
            fields.pop("product_id", None)
            self._assign(match, fields)
            kept.append(match)

        product.variants = kept

    def _apply_line_items(self, order: Order, line_items: List[Dict[str, Any]]) -> None:
        items = []
        for item_data in line_items:
            item = OrderLineItem()
            self._assign(item, item_data)
            items.append(item)
        order.line_items = items

    def _resolve_inventory_variant(self, data: Dict[str, Any], external_id: Optional[str] = None) -> ProductVariant:
        variant = None
        if data.get("variant_id"):
            variant = self.db.get(ProductVariant, _as_uuid(data["variant_id"]))
        if variant is None and (external_id or data.get("shopify_inventory_item_id")):
            variant = self.find_variant_by_inventory_item_id(external_id or data["shopify_inventory_item_id"])
        if variant is None and data.get("sku"):
            variant = self.find_variant_by_sku(data["sku"])
        if variant is None:
            raise ValueError("Inventory record needs an existing variant (variant_id, inventory item id or sku)")
        return variant

    # =========================================================================
    # GENERIC OPERATIONS
    # =========================================================================

    def get(self, entity: str, record_id: Any) -> Optional[Dict[str, Any]]:
        instance = self._get_instance(entity, record_id)
        return self._snapshot(instance) if instance else None

    def find_by_external_id(self, entity: str, external_id: Any) -> Optional[Dict[str, Any]]:
        """Look up by the Shopify-assigned id (inventory: inventory_item_id)."""
        if external_id is None:
            return None
        external_id = str(external_id)

        if entity == "inventory":
            instance = (
                self.db.query(InventoryItem)
                .join(ProductVariant, InventoryItem.variant_id == ProductVariant.id)
                .filter(ProductVariant.shopify_inventory_item_id == external_id)
                .first()
            )
        else:
            model = self._model(entity)
            if not hasattr(model, "shopify_id"):
                raise UnknownEntityError(f"{entity} has no external id")
            instance = self.db.query(model).filter(model.shopify_id == external_id).first()

        return self._snapshot(instance) if instance else None

    def find_by_natural_key(self, entity: str, key: Any) -> Optional[Dict[str, Any]]:
        if not key:
            return None

        if entity == "product":
            instance = self.db.query(Product).filter(Product.sku == key).first()
            if instance is None:
                variant = self.find_variant_by_sku(key)
                instance = variant.product if variant else None
        elif entity == "customer":
            instance = (
                self.db.query(Customer)
                .filter(func.lower(Customer.email) == str(key).lower())
                .first()
            )
        elif entity == "order":
            instance = self.db.query(Order).filter(Order.order_number == key).first()
        elif entity == "inventory":
            instance = (
                self.db.query(InventoryItem)
                .join(ProductVariant, InventoryItem.variant_id == ProductVariant.id)
                .filter(ProductVariant.sku == key)
                .first()
            )
        else:
            raise UnknownEntityError(f"{entity} has no natural key")

        return self._snapshot(instance) if instance else None

    def create(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(entity)
        instance = model()

        if entity == "inventory":
            variant = self._resolve_inventory_variant(data)
            instance.variant = variant
            data = {"location": DEFAULT_INVENTORY_LOCATION, **data}

        self._assign(instance, data)

        if entity == "product" and "variants" in data:
            self._apply_variants(instance, data["variants"] or [])
        elif entity == "order" and "line_items" in data:
            self._apply_line_items(instance, data["line_items"] or [])

        self.db.add(instance)
        self._commit()
        self.db.refresh(instance)
        logger.debug(f"[RECORD_STORE] Created {entity} {instance.id}")
        return self._snapshot(instance)

    def update(self, entity: str, record_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update: only keys present in ``data`` are written.

        ``created_at``/``updated_at`` in ``data`` are ignored (snapshots are
        often written back whole); updated_at is maintained by the model.
        """
        instance = self._get_instance(entity, record_id)
        if instance is None:
            raise LookupError(f"{entity} {record_id} not found")

        self._assign(instance, {k: v for k, v in data.items() if k not in _MANAGED_TIMESTAMPS})

        if entity == "product" and "variants" in data:
            self._apply_variants(instance, data["variants"] or [])
        elif entity == "order" and "line_items" in data:
            self._apply_line_items(instance, data["line_items"] or [])

        self._commit()
        self.db.refresh(instance)
        return self._snapshot(instance)

    def upsert(self, entity: str, external_id: Any, data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Create-or-update keyed by external id.

        Returns:
            (snapshot, created)
        """
        existing = self.find_by_external_id(entity, external_id)
        if existing:
            return self.update(entity, existing["id"], data), False

        if entity == "inventory":
            variant = self._resolve_inventory_variant(data, external_id=str(external_id))
            data = {**data, "variant_id": variant.id}
        elif external_id is not None:
            data = {**data, "shopify_id": str(external_id)}
        return self.create(entity, data), True

    # =========================================================================
    # CATALOG QUERIES
    # =========================================================================

    def find_variant_by_sku(self, sku: str) -> Optional[ProductVariant]:
        return self.db.query(ProductVariant).filter(ProductVariant.sku == sku).first()

    def find_variant_by_inventory_item_id(self, inventory_item_id: Any) -> Optional[ProductVariant]:
        return (
            self.db.query(ProductVariant)
            .filter(ProductVariant.shopify_inventory_item_id == str(inventory_item_id))
            .first()
        )

    def list_pending(self, entity: str) -> List[Dict[str, Any]]:
        """Locally modified records awaiting push (products, inventory)."""
        model = self._model(entity)
        if not hasattr(model, "sync_status"):
            raise UnknownEntityError(f"{entity} is not pushed to Shopify")

        query = self.db.query(model).filter(model.sync_status == RecordSyncStatusEnum.pending.value)
        if hasattr(model, "deleted_at"):
            query = query.filter(model.deleted_at.is_(None))
        return [self._snapshot(instance) for instance in query.all()]

    # =========================================================================
    # SYNC RUNS
    # =========================================================================

    def list_sync_runs(
        self,
        entity_type: Optional[str] = None,
        direction: Optional[str] = None,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Sync runs, newest first."""
        query = self.db.query(SyncRun)
        if entity_type:
            query = query.filter(SyncRun.entity_type == entity_type)
        if direction:
            query = query.filter(SyncRun.direction == direction)
        if status:
            query = query.filter(SyncRun.status == status)
        if since:
            query = query.filter(SyncRun.started_at >= since)
        query = query.order_by(SyncRun.started_at.desc())
        if limit:
            query = query.limit(limit)
        return [self._snapshot(run) for run in query.all()]

    def delete_sync_runs_before(self, cutoff: datetime) -> int:
        deleted = (
            self.db.query(SyncRun)
            .filter(SyncRun.started_at < cutoff)
            .filter(SyncRun.status != SyncRunStatusEnum.running.value)
            .delete(synchronize_session=False)
        )
        self._commit()
        return deleted

    def update_running_sync_run(self, sync_id: Any, data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Write ``data`` only if the run is still running.

        The status check happens in the UPDATE itself, so a run failed from
        another session (app uninstall, restart) is never flipped back.

        Returns:
            (snapshot, updated)
        """
        updated = (
            self.db.query(SyncRun)
            .filter(SyncRun.id == _as_uuid(sync_id))
            .filter(SyncRun.status == SyncRunStatusEnum.running.value)
            .update(data, synchronize_session=False)
        )
        self._commit()

        instance = self._get_instance("sync_run", sync_id)
        if instance is None:
            raise LookupError(f"sync_run {sync_id} not found")
        self.db.refresh(instance)
        return self._snapshot(instance), bool(updated)

    def fail_running_sync_runs(self, error_message: str, completed_at: datetime) -> int:
        """Bulk-mark every running sync run as failed."""
        runs = self.db.query(SyncRun).filter(SyncRun.status == SyncRunStatusEnum.running.value).all()
        for run in runs:
            run.status = SyncRunStatusEnum.failed.value
            run.error_message = error_message
            run.completed_at = completed_at
        self._commit()
        return len(runs)

    # =========================================================================
    # WEBHOOK LOGS
    # =========================================================================

    def list_webhook_logs(
        self,
        topic: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query = self.db.query(WebhookLog)
        if topic:
            query = query.filter(WebhookLog.topic == topic)
        if status:
            query = query.filter(WebhookLog.status == status)
        return [self._snapshot(log) for log in query.order_by(WebhookLog.created_at.desc()).limit(limit).all()]
