"""Conflict detection and resolution between local records and Shopify.

WHAT:
    Compares a local snapshot with the Shopify version of the same product or
    customer, lists the diverging fields, classifies the conflict and decides
    merge / overwrite / skip.

WHY:
    Products are edited both locally and in Shopify admin; customers can
    exist twice (checkout in Shopify, manual entry locally). Writing blindly in
    either direction loses edits or creates duplicates.

POLICY:
    - timestamp: updated_at values more than 60s apart -> later side wins
      wholesale (overwrite). No field merging under clock skew.
    - data: identity fields (product SKU/variant structure, customer email)
      -> Shopify wins wholesale (overwrite). Otherwise merge.
    - duplicate (customers): same email, different Shopify id -> merge
      preferring non-empty values, max() of order count and total spent.
    - Anything that cannot be merged cleanly -> skip with a reason.

REFERENCES:
    - storesync/services/shopify_mappers.py (shape conversions)
    - storesync/services/shopify_sync_service.py, webhook_processor.py (callers)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from storesync.services.shopify_mappers import (
    map_shopify_customer_to_local,
    map_shopify_product_to_local,
    parse_datetime,
    parse_decimal,
)

logger = logging.getLogger(__name__)

# Clock-skew allowance before a divergence is treated as a timestamp conflict
TIMESTAMP_TOLERANCE_SECONDS = 60

# Local records with unpushed edits
PENDING = "pending"

PRODUCT_NON_MERGEABLE = ("sku", "variants")
CUSTOMER_NON_MERGEABLE = ("email",)

PRODUCT_FIELDS = (
    # (local key, shopify key)
    ("title", "title"),
    ("description", "body_html"),
    ("vendor", "vendor"),
    ("product_type", "product_type"),
)

CUSTOMER_FIELDS = (
    ("first_name", "first_name"),
    ("last_name", "last_name"),
    ("email", "email"),
    ("phone", "phone"),
)


class ConflictType(str, Enum):
    DATA = "data"
    TIMESTAMP = "timestamp"
    VERSION = "version"
    DUPLICATE = "duplicate"


class ConflictAction(str, Enum):
    MERGE = "merge"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class ConflictSide(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class ConflictRecord:
    """Divergence between a local snapshot and its Shopify counterpart (never persisted)."""
    entity_type: str  # "product" | "customer"
    local: Dict[str, Any]
    remote: Dict[str, Any]
    conflict_fields: List[str]
    conflict_type: ConflictType = ConflictType.DATA


@dataclass
class ConflictResolution:
    """Decision for a ConflictRecord.

    ``merged_data`` is always in the local snapshot shape. ``winner`` is set for
    overwrites: the side whose data should replace the other.
    """
    action: ConflictAction
    reason: str
    merged_data: Optional[Dict[str, Any]] = None
    winner: Optional[ConflictSide] = None
    conflict_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "merged_data": self.merged_data,
            "winner": self.winner.value if self.winner else None,
            "conflict_fields": self.conflict_fields,
        }


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _same_price(local: Any, remote: Any) -> bool:
    return parse_decimal(local) == parse_decimal(remote)


def _timestamps(local: Dict[str, Any], remote: Dict[str, Any]) -> tuple:
    return parse_datetime(local.get("updated_at")), parse_datetime(remote.get("updated_at"))


def _timestamps_diverge(local_updated: Optional[datetime], remote_updated: Optional[datetime]) -> bool:
    if local_updated is None or remote_updated is None:
        return False
    return abs((local_updated - remote_updated).total_seconds()) > TIMESTAMP_TOLERANCE_SECONDS


def _touches(conflict_fields: List[str], non_mergeable: tuple) -> bool:
    # Substring match so "variants[1].sku" counts as both a variant and a SKU change
    return any(blocked in name for name in conflict_fields for blocked in non_mergeable)


def effective_local_snapshot(local: Dict[str, Any]) -> Dict[str, Any]:
    """Local snapshot with ``updated_at`` set to the version it was last synced from.

    A record without unpushed local edits is only as new as the Shopify
    version it mirrors. Its own ``updated_at`` moves on every sync write and
    would otherwise win every timestamp tie-break against Shopify.
    """
    if local.get("sync_status") == PENDING or not local.get("shopify_updated_at"):
        return local
    return {**local, "updated_at": local["shopify_updated_at"]}


class ConflictResolver:
    """
    Stateless conflict detection/resolution for products and customers.

    Usage:
        resolver = ConflictResolver()
        conflict = resolver.detect_product_conflict(local_snapshot, shopify_product)
        if conflict:
            resolution = resolver.resolve_product_conflict(conflict)
    """

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    def detect_product_conflict(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Optional[ConflictRecord]:
        """Compare a local product snapshot with a Shopify product payload.

        Returns:
            ConflictRecord, or None when every compared field matches
        """
        conflict_fields: List[str] = []

        for local_key, remote_key in PRODUCT_FIELDS:
            if _text(local.get(local_key)) != _text(remote.get(remote_key)):
                conflict_fields.append(local_key)

        local_variants = local.get("variants") or []
        remote_variants = remote.get("variants") or []

        if len(local_variants) != len(remote_variants):
            conflict_fields.append("variants")
        else:
            for i, (local_variant, remote_variant) in enumerate(zip(local_variants, remote_variants)):
                if not _same_price(local_variant.get("price"), remote_variant.get("price")):
                    conflict_fields.append(f"variants[{i}].price")
                if _text(local_variant.get("sku")) != _text(remote_variant.get("sku")):
                    conflict_fields.append(f"variants[{i}].sku")

        if not conflict_fields:
            return None

        conflict_type = ConflictType.DATA
        if _timestamps_diverge(*_timestamps(local, remote)):
            conflict_type = ConflictType.TIMESTAMP

        return ConflictRecord(
            entity_type="product",
            local=local,
            remote=remote,
            conflict_fields=conflict_fields,
            conflict_type=conflict_type,
        )

    def resolve_product_conflict(self, conflict: ConflictRecord) -> ConflictResolution:
        resolution = self._resolve_product(conflict)
        resolution.conflict_fields = list(conflict.conflict_fields)
        logger.info(
            f"[CONFLICT] product local={conflict.local.get('id')} remote={conflict.remote.get('id')} "
            f"type={conflict.conflict_type.value} fields={conflict.conflict_fields} -> "
            f"{resolution.action.value} ({resolution.reason})"
        )
        return resolution

    def _resolve_product(self, conflict: ConflictRecord) -> ConflictResolution:
        if conflict.conflict_type == ConflictType.TIMESTAMP:
            return self._resolve_by_timestamp(conflict, map_shopify_product_to_local)

        if _touches(conflict.conflict_fields, PRODUCT_NON_MERGEABLE):
            return ConflictResolution(
                action=ConflictAction.OVERWRITE,
                merged_data=map_shopify_product_to_local(conflict.remote),
                winner=ConflictSide.REMOTE,
                reason="Identity fields (SKU/variants) diverge, using Shopify as source of truth",
            )

        try:
            merged = self._merge_product(conflict.local, conflict.remote, conflict.conflict_fields)
        except (KeyError, TypeError, ValueError) as e:
            return ConflictResolution(action=ConflictAction.SKIP, reason=f"Unable to merge product safely: {e}")

        return ConflictResolution(
            action=ConflictAction.MERGE,
            merged_data=merged,
            reason="Merged descriptive fields, local edits kept",
        )

    def _merge_product(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        conflict_fields: List[str],
    ) -> Dict[str, Any]:
        """Local snapshot updated with Shopify values.

        Diverging descriptive fields keep the local value while the local record
        has unpushed edits (they are what the next push sends). Without local
        edits Shopify is the newer writer and its values are taken.
        """
        mapped = map_shopify_product_to_local(remote)
        keep_local = local.get("sync_status", PENDING) == PENDING
        merged = dict(local)
        for local_key, _ in PRODUCT_FIELDS:
            if local_key not in conflict_fields or not keep_local:
                merged[local_key] = mapped[local_key]

        # Variants only reach a merge when SKUs and prices line up by position
        if local.get("variants"):
            merged["variants"] = [
                {
                    **local_variant,
                    "shopify_id": remote_variant["shopify_id"],
                    "shopify_inventory_item_id": remote_variant["shopify_inventory_item_id"],
                }
                for local_variant, remote_variant in zip(local["variants"], mapped["variants"])
            ]
        merged["shopify_id"] = mapped["shopify_id"]
        merged["shopify_updated_at"] = mapped["shopify_updated_at"]
        return merged

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    def detect_customer_conflict(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Optional[ConflictRecord]:
        conflict_fields: List[str] = []

        for local_key, remote_key in CUSTOMER_FIELDS:
            if _text(local.get(local_key)) != _text(remote.get(remote_key)):
                conflict_fields.append(local_key)

        conflict_type = ConflictType.DATA

        local_email = _text(local.get("email")).lower()
        remote_email = _text(remote.get("email")).lower()
        remote_id = None if remote.get("id") is None else str(remote["id"])
        if local_email and local_email == remote_email and local.get("shopify_id") != remote_id:
            conflict_type = ConflictType.DUPLICATE
            conflict_fields.append("duplicate_email")
            # Case-only email differences are not an identity conflict
            if "email" in conflict_fields:
                conflict_fields.remove("email")

        if not conflict_fields:
            return None

        if conflict_type == ConflictType.DATA and _timestamps_diverge(*_timestamps(local, remote)):
            conflict_type = ConflictType.TIMESTAMP

        return ConflictRecord(
            entity_type="customer",
            local=local,
            remote=remote,
            conflict_fields=conflict_fields,
            conflict_type=conflict_type,
        )

    def resolve_customer_conflict(self, conflict: ConflictRecord) -> ConflictResolution:
        resolution = self._resolve_customer(conflict)
        resolution.conflict_fields = list(conflict.conflict_fields)
        logger.info(
            f"[CONFLICT] customer local={conflict.local.get('id')} remote={conflict.remote.get('id')} "
            f"type={conflict.conflict_type.value} fields={conflict.conflict_fields} -> "
            f"{resolution.action.value} ({resolution.reason})"
        )
        return resolution

    def _resolve_customer(self, conflict: ConflictRecord) -> ConflictResolution:
        if conflict.conflict_type == ConflictType.DUPLICATE:
            return ConflictResolution(
                action=ConflictAction.MERGE,
                merged_data=self.deduplicate_customers(conflict.local, conflict.remote),
                reason="Merged duplicate customer records",
            )

        if conflict.conflict_type == ConflictType.TIMESTAMP:
            return self._resolve_by_timestamp(conflict, map_shopify_customer_to_local)

        if _touches(conflict.conflict_fields, CUSTOMER_NON_MERGEABLE):
            return ConflictResolution(
                action=ConflictAction.OVERWRITE,
                merged_data=map_shopify_customer_to_local(conflict.remote),
                winner=ConflictSide.REMOTE,
                reason="Email diverges, using Shopify customer data",
            )

        try:
            merged = self._merge_customer(conflict.local, conflict.remote)
        except (KeyError, TypeError, ValueError) as e:
            return ConflictResolution(action=ConflictAction.SKIP, reason=f"Unable to merge customer safely: {e}")

        return ConflictResolution(
            action=ConflictAction.MERGE,
            merged_data=merged,
            reason="Merged customer contact data from Shopify",
        )

    def _merge_customer(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
        """Shopify wins for contact fields (customers edit them at checkout)."""
        mapped = map_shopify_customer_to_local(remote)
        merged = dict(local)
        for key in ("first_name", "last_name", "phone", "accepts_marketing", "shopify_id", "shopify_updated_at"):
            merged[key] = mapped[key]
        return merged

    def deduplicate_customers(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
        """Merge two records describing the same person.

        Non-empty values win (Shopify first), counters take the maximum of
        both sides: each side is assumed to undercount a single true total.
        """
        mapped = map_shopify_customer_to_local(remote)
        merged = dict(local)

        for key in ("first_name", "last_name", "phone", "email"):
            merged[key] = mapped.get(key) or local.get(key)
        if mapped.get("accepts_marketing") is not None:
            merged["accepts_marketing"] = mapped["accepts_marketing"]
        merged["tags"] = sorted(set(local.get("tags") or []) | set(mapped.get("tags") or []))

        merged["orders_count"] = max(int(local.get("orders_count") or 0), mapped["orders_count"])
        merged["total_spent"] = float(
            max(parse_decimal(local.get("total_spent")) or Decimal("0"), parse_decimal(mapped["total_spent"]) or Decimal("0"))
        )

        merged["shopify_id"] = mapped["shopify_id"]
        merged["shopify_updated_at"] = mapped["shopify_updated_at"]

        logger.info(
            f"[CONFLICT] Deduplicated customer {merged.get('email')} "
            f"(local: {local.get('id')}, shopify: {mapped['shopify_id']})"
        )
        return merged

    # =========================================================================
    # SHARED
    # =========================================================================

    def _resolve_by_timestamp(self, conflict: ConflictRecord, map_remote) -> ConflictResolution:
        local_updated, remote_updated = _timestamps(conflict.local, conflict.remote)

        if remote_updated is not None and (local_updated is None or remote_updated > local_updated):
            return ConflictResolution(
                action=ConflictAction.OVERWRITE,
                merged_data=map_remote(conflict.remote),
                winner=ConflictSide.REMOTE,
                reason="Shopify data is more recent",
            )

        return ConflictResolution(
            action=ConflictAction.OVERWRITE,
            merged_data=dict(conflict.local),
            winner=ConflictSide.LOCAL,
            reason="Local data is more recent",
        )

    def preview(self, entity_type: str, local: Dict[str, Any], remote: Dict[str, Any]) -> Optional[ConflictResolution]:
        """Detect and resolve in one call (operator preview, no writes)."""
        if entity_type == "product":
            conflict = self.detect_product_conflict(local, remote)
            return self.resolve_product_conflict(conflict) if conflict else None
        if entity_type == "customer":
            conflict = self.detect_customer_conflict(local, remote)
            return self.resolve_customer_conflict(conflict) if conflict else None
        raise ValueError(f"Unsupported entity type for conflict resolution: {entity_type}")
