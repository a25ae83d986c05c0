"""Apply Shopify-side records to the local store.

WHAT:
    Shared create-or-update logic for products, customers and orders arriving
    from Shopify, used by both pull syncs and webhooks.

WHY:
    A product changed in Shopify admin may arrive twice: once by webhook and
    again in the next pull sync. Both paths must look up the same way, run the
    same conflict resolution and write the same data, so redeliveries and
    overlapping syncs converge on one record.

OUTCOMES:
    created | updated | kept_local | skipped

REFERENCES:
    - storesync/services/webhook_processor.py
    - storesync/services/shopify_sync_service.py (pull syncs)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from storesync.models import RecordSyncStatusEnum
from storesync.services.conflict_resolver import (
    ConflictAction,
    ConflictResolver,
    ConflictSide,
    effective_local_snapshot,
)
from storesync.services.record_store import RecordStore
from storesync.services.shopify_mappers import (
    map_shopify_customer_to_local,
    map_shopify_order_to_local,
    map_shopify_product_to_local,
    order_status_fields,
)

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
KEPT_LOCAL = "kept_local"
SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_deleted(record: Dict[str, Any]) -> bool:
    return record.get("deleted_at") is not None or record.get("status") == "deleted"


def apply_remote_product(store: RecordStore, resolver: ConflictResolver, remote: Dict[str, Any]) -> str:
    """Create or update the local copy of a Shopify product.

    Lookup is by Shopify id, then by SKU (links products created locally
    before they were ever pushed).
    """
    mapped = map_shopify_product_to_local(remote)
    mapped["sync_status"] = RecordSyncStatusEnum.synced.value
    mapped["last_synced_at"] = _utcnow()

    existing = store.find_by_external_id("product", remote.get("id"))
    if existing is None and mapped["sku"]:
        existing = store.find_by_natural_key("product", mapped["sku"])

    if existing is None:
        created = store.create("product", mapped)
        logger.info(f"[SHOPIFY_SYNC] Created local product {created['id']} from Shopify {remote.get('id')}")
        return CREATED

    # Webhooks arrive in any order; an update delivered after products/delete must not revive the row
    if _is_deleted(existing):
        logger.info(f"[SHOPIFY_SYNC] Ignoring Shopify {remote.get('id')}: local product {existing['id']} is archived")
        return SKIPPED

    conflict = resolver.detect_product_conflict(effective_local_snapshot(existing), remote)
    if conflict is None:
        store.update("product", existing["id"], mapped)
        return UPDATED

    resolution = resolver.resolve_product_conflict(conflict)
    if resolution.action == ConflictAction.SKIP:
        return SKIPPED
    if resolution.action == ConflictAction.OVERWRITE and resolution.winner == ConflictSide.LOCAL:
        # Local edit is newer and stays pending for the next push
        return KEPT_LOCAL

    if resolution.action == ConflictAction.OVERWRITE:
        store.update("product", existing["id"], mapped)
    else:
        data = dict(resolution.merged_data or {})
        data["last_synced_at"] = _utcnow()
        store.update("product", existing["id"], data)
    return UPDATED


def apply_remote_customer(store: RecordStore, resolver: ConflictResolver, remote: Dict[str, Any]) -> str:
    """Create or update the local copy of a Shopify customer.

    Lookup is by Shopify id, then by email, so a locally entered customer is
    deduplicated against the Shopify record instead of duplicated.
    """
    mapped = map_shopify_customer_to_local(remote)

    existing = store.find_by_external_id("customer", remote.get("id"))
    if existing is None and remote.get("email"):
        existing = store.find_by_natural_key("customer", remote["email"])

    if existing is None:
        created = store.create("customer", mapped)
        logger.info(f"[SHOPIFY_SYNC] Created local customer {created['id']} from Shopify {remote.get('id')}")
        return CREATED

    # The customers/delete scrub is final, late updates never restore personal data
    if _is_deleted(existing):
        logger.info(f"[SHOPIFY_SYNC] Ignoring Shopify {remote.get('id')}: local customer {existing['id']} was deleted")
        return SKIPPED

    conflict = resolver.detect_customer_conflict(effective_local_snapshot(existing), remote)
    if conflict is None:
        store.update("customer", existing["id"], mapped)
        return UPDATED

    resolution = resolver.resolve_customer_conflict(conflict)
    if resolution.action == ConflictAction.SKIP:
        return SKIPPED
    if resolution.winner == ConflictSide.LOCAL:
        return KEPT_LOCAL

    store.update("customer", existing["id"], resolution.merged_data or mapped)
    return UPDATED


def find_or_create_customer(store: RecordStore, remote_customer: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Local customer for an order's embedded customer, created if missing."""
    if not remote_customer or remote_customer.get("id") is None:
        return None

    customer = store.find_by_external_id("customer", remote_customer["id"])
    if customer is None and remote_customer.get("email"):
        customer = store.find_by_natural_key("customer", remote_customer["email"])
    if customer is None:
        customer = store.create("customer", map_shopify_customer_to_local(remote_customer))
        logger.info(f"[SHOPIFY_SYNC] Created customer {customer['id']} for order import")
    return customer


def apply_remote_order(store: RecordStore, remote: Dict[str, Any]) -> str:
    """Create a local order, or refresh the status fields of an existing one.

    Orders are pull-only: Shopify is authoritative, so there is no conflict
    resolution step.
    """
    existing = store.find_by_external_id("order", remote.get("id"))

    if existing:
        data = order_status_fields(remote)
        data["line_items"] = map_shopify_order_to_local(remote)["line_items"]
        store.update("order", existing["id"], data)
        return UPDATED

    data = map_shopify_order_to_local(remote)
    customer = find_or_create_customer(store, remote.get("customer"))
    if customer:
        data["customer_id"] = customer["id"]
    created = store.create("order", data)
    logger.info(f"[SHOPIFY_SYNC] Imported order {created['order_number']} ({created['id']})")
    return CREATED
