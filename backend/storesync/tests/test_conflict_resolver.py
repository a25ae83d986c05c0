"""Tests for conflict detection and resolution.

WHAT: Product/customer comparisons and the merge/overwrite/skip policy
WHY: A wrong decision here silently loses edits on one side of the sync

REFERENCES:
  - storesync/services/conflict_resolver.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from storesync.services.conflict_resolver import (
    ConflictAction,
    ConflictResolver,
    ConflictSide,
    ConflictType,
    effective_local_snapshot,
)
from storesync.tests.factories import make_shopify_customer, make_shopify_product, shopify_timestamp

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _local_product(**overrides):
    """Local snapshot mirroring make_shopify_product(100, "SKU-1")."""
    product = {
        "id": "local-1",
        "shopify_id": "100",
        "title": "Shopify product",
        "description": "<p>Shopify description</p>",
        "vendor": "Acme",
        "product_type": "Shirts",
        "sku": "SKU-1",
        "sync_status": "pending",
        "updated_at": NOW,
        "variants": [{"title": "Default Title", "sku": "SKU-1", "price": 19.99}],
    }
    product.update(overrides)
    return product


def _local_customer(**overrides):
    customer = {
        "id": "local-c1",
        "shopify_id": "200",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": "+31600000000",
        "tags": ["newsletter"],
        "orders_count": 1,
        "total_spent": 40.0,
        "sync_status": "pending",
        "updated_at": NOW,
    }
    customer.update(overrides)
    return customer


@pytest.fixture
def resolver():
    return ConflictResolver()


class TestProductConflicts:
    def test_identical_product_has_no_conflict(self, resolver):
        remote = make_shopify_product(100, "SKU-1", updated_at=shopify_timestamp(NOW))
        assert resolver.detect_product_conflict(_local_product(), remote) is None

    def test_price_compared_numerically(self, resolver):
        """Database prices like 19.9900 equal Shopify's 19.99."""
        remote = make_shopify_product(100, "SKU-1", updated_at=shopify_timestamp(NOW))
        local = _local_product(variants=[{"title": "Default Title", "sku": "SKU-1", "price": "19.9900"}])
        assert resolver.detect_product_conflict(local, remote) is None

    def test_newer_remote_overwrites_when_timestamps_diverge(self, resolver):
        remote = make_shopify_product(
            100, "SKU-1", title="Renamed in Shopify", updated_at=shopify_timestamp(NOW + timedelta(seconds=90))
        )

        conflict = resolver.detect_product_conflict(_local_product(), remote)
        assert conflict.conflict_type == ConflictType.TIMESTAMP
        assert conflict.conflict_fields == ["title"]

        resolution = resolver.resolve_product_conflict(conflict)
        assert resolution.action == ConflictAction.OVERWRITE
        assert resolution.winner == ConflictSide.REMOTE
        assert resolution.merged_data["title"] == "Renamed in Shopify"

    def test_newer_local_wins_timestamp_conflict(self, resolver):
        remote = make_shopify_product(
            100, "SKU-1", title="Old Shopify title", updated_at=shopify_timestamp(NOW - timedelta(minutes=10))
        )

        resolution = resolver.resolve_product_conflict(resolver.detect_product_conflict(_local_product(), remote))
        assert resolution.action == ConflictAction.OVERWRITE
        assert resolution.winner == ConflictSide.LOCAL
        assert resolution.merged_data["title"] == "Shopify product"

    def test_small_clock_skew_is_a_data_conflict(self, resolver):
        remote = make_shopify_product(
            100, "SKU-1", title="Renamed", updated_at=shopify_timestamp(NOW + timedelta(seconds=30))
        )
        conflict = resolver.detect_product_conflict(_local_product(), remote)
        assert conflict.conflict_type == ConflictType.DATA

    def test_sku_change_never_merges(self, resolver):
        remote = make_shopify_product(100, "SKU-NEW", updated_at=shopify_timestamp(NOW))

        conflict = resolver.detect_product_conflict(_local_product(), remote)
        assert conflict.conflict_fields == ["variants[0].sku"]

        resolution = resolver.resolve_product_conflict(conflict)
        assert resolution.action == ConflictAction.OVERWRITE
        assert resolution.winner == ConflictSide.REMOTE
        assert resolution.merged_data["variants"][0]["sku"] == "SKU-NEW"

    def test_variant_count_change_overwrites_from_shopify(self, resolver):
        remote = make_shopify_product(100, "SKU-1", updated_at=shopify_timestamp(NOW))
        remote["variants"].append({"id": 1013, "title": "XL", "sku": "SKU-1-XL", "price": "21.00"})

        resolution = resolver.resolve_product_conflict(resolver.detect_product_conflict(_local_product(), remote))
        assert "variants" in resolution.conflict_fields
        assert resolution.winner == ConflictSide.REMOTE

    def test_pending_local_edit_is_kept_in_merge(self, resolver):
        remote = make_shopify_product(100, "SKU-1", price="19.99", updated_at=shopify_timestamp(NOW))
        remote["vendor"] = "Acme Shopify"
        local = _local_product(title="Edited locally")

        conflict = resolver.detect_product_conflict(local, remote)
        assert sorted(conflict.conflict_fields) == ["title", "vendor"]

        resolution = resolver.resolve_product_conflict(conflict)
        assert resolution.action == ConflictAction.MERGE
        assert resolution.merged_data["title"] == "Edited locally"
        assert resolution.merged_data["vendor"] == "Acme"
        assert resolution.merged_data["shopify_id"] == "100"

    def test_synced_local_takes_shopify_values_in_merge(self, resolver):
        remote = make_shopify_product(100, "SKU-1", title="Shopify edit", updated_at=shopify_timestamp(NOW))
        local = _local_product(sync_status="synced")

        resolution = resolver.resolve_product_conflict(resolver.detect_product_conflict(local, remote))
        assert resolution.action == ConflictAction.MERGE
        assert resolution.merged_data["title"] == "Shopify edit"

    def test_resolution_serializes(self, resolver):
        remote = make_shopify_product(100, "SKU-NEW", updated_at=shopify_timestamp(NOW))
        data = resolver.resolve_product_conflict(resolver.detect_product_conflict(_local_product(), remote)).to_dict()
        assert data["action"] == "overwrite"
        assert data["winner"] == "remote"
        assert data["conflict_fields"] == ["variants[0].sku"]


class TestCustomerConflicts:
    def test_identical_customer_has_no_conflict(self, resolver):
        remote = make_shopify_customer(200, "ada@example.com", updated_at=shopify_timestamp(NOW))
        assert resolver.detect_customer_conflict(_local_customer(), remote) is None

    def test_contact_change_merges_shopify_values(self, resolver):
        remote = make_shopify_customer(200, "ada@example.com", phone="+31611111111", updated_at=shopify_timestamp(NOW))

        conflict = resolver.detect_customer_conflict(_local_customer(), remote)
        assert conflict.conflict_type == ConflictType.DATA
        assert conflict.conflict_fields == ["phone"]

        resolution = resolver.resolve_customer_conflict(conflict)
        assert resolution.action == ConflictAction.MERGE
        assert resolution.merged_data["phone"] == "+31611111111"

    def test_email_change_overwrites_from_shopify(self, resolver):
        remote = make_shopify_customer(200, "ada@new.example.com", updated_at=shopify_timestamp(NOW))

        resolution = resolver.resolve_customer_conflict(resolver.detect_customer_conflict(_local_customer(), remote))
        assert resolution.action == ConflictAction.OVERWRITE
        assert resolution.winner == ConflictSide.REMOTE
        assert resolution.merged_data["email"] == "ada@new.example.com"

    def test_same_email_unlinked_local_is_duplicate(self, resolver):
        local = _local_customer(shopify_id=None, email="ADA@example.com", first_name=None)
        remote = make_shopify_customer(200, "ada@example.com", updated_at=shopify_timestamp(NOW))

        conflict = resolver.detect_customer_conflict(local, remote)
        assert conflict.conflict_type == ConflictType.DUPLICATE
        assert "duplicate_email" in conflict.conflict_fields
        assert "email" not in conflict.conflict_fields

        resolution = resolver.resolve_customer_conflict(conflict)
        assert resolution.action == ConflictAction.MERGE
        merged = resolution.merged_data
        assert merged["shopify_id"] == "200"
        assert merged["first_name"] == "Ada"
        assert merged["orders_count"] == 3
        assert merged["total_spent"] == pytest.approx(120.50)
        assert merged["tags"] == ["newsletter", "vip"]

    def test_deduplicate_keeps_larger_local_counters(self, resolver):
        local = _local_customer(orders_count=9, total_spent=500.0)
        merged = resolver.deduplicate_customers(local, make_shopify_customer(200, "ada@example.com"))
        assert merged["orders_count"] == 9
        assert merged["total_spent"] == pytest.approx(500.0)


class TestEffectiveSnapshotAndPreview:
    def test_synced_record_compares_at_its_shopify_version(self):
        synced_at = NOW - timedelta(hours=1)
        local = _local_product(sync_status="synced", shopify_updated_at=synced_at)
        assert effective_local_snapshot(local)["updated_at"] == synced_at

    def test_pending_record_keeps_its_own_timestamp(self):
        local = _local_product(shopify_updated_at=NOW - timedelta(hours=1))
        assert effective_local_snapshot(local)["updated_at"] == NOW

    def test_preview_without_conflict(self, resolver):
        remote = make_shopify_product(100, "SKU-1", updated_at=shopify_timestamp(NOW))
        assert resolver.preview("product", _local_product(), remote) is None

    def test_preview_rejects_unknown_entity(self, resolver):
        with pytest.raises(ValueError, match="Unsupported entity type"):
            resolver.preview("order", {}, {})
