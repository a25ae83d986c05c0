"""Mapping between Shopify REST payloads and local record snapshots.

WHAT:
    Pure functions converting Shopify product/customer/order JSON into the
    dict shape RecordStore accepts, and local product snapshots back into
    Shopify product payloads.

WHY:
    The conflict resolver, the webhook processor and the sync service all
    need the same mapping. Keeping it in one module means a redelivered
    webhook and a pull sync write identical records.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/product
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/customer
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/order
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime (or pass a datetime through) as timezone-aware UTC.

    WHAT: Convert Shopify datetime strings to Python datetime
    WHY: Shopify returns ISO strings with offsets; comparisons need aware datetimes
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    parsed = parse_decimal(value)
    return float(parsed) if parsed is not None else None


def _id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def split_tags(tags: Any) -> List[str]:
    """Shopify sends tags as "a, b, c"."""
    if not tags:
        return []
    if isinstance(tags, list):
        return [str(t).strip() for t in tags if str(t).strip()]
    return [t.strip() for t in str(tags).split(",") if t.strip()]


# =============================================================================
# PRODUCTS
# =============================================================================

def map_shopify_variant_to_local(variant: Dict[str, Any], position: int) -> Dict[str, Any]:
    return {
        "shopify_id": _id(variant.get("id")),
        "shopify_inventory_item_id": _id(variant.get("inventory_item_id")),
        "title": variant.get("title"),
        "sku": variant.get("sku") or None,
        "price": _to_float(variant.get("price")),
        "compare_at_price": _to_float(variant.get("compare_at_price")),
        "position": variant.get("position", position + 1),
    }


def map_shopify_product_to_local(product: Dict[str, Any]) -> Dict[str, Any]:
    """Shopify product JSON -> local product snapshot (without local ids)."""
    variants = [map_shopify_variant_to_local(v, i) for i, v in enumerate(product.get("variants") or [])]
    return {
        "shopify_id": _id(product.get("id")),
        "title": product.get("title") or "",
        "description": product.get("body_html"),
        "vendor": product.get("vendor"),
        "product_type": product.get("product_type"),
        "status": product.get("status") or "active",
        "tags": split_tags(product.get("tags")),
        "sku": variants[0]["sku"] if variants else None,
        "shopify_updated_at": parse_datetime(product.get("updated_at")),
        "variants": variants,
    }


def map_local_product_to_shopify(product: Dict[str, Any]) -> Dict[str, Any]:
    """Local product snapshot -> Shopify product payload for create/update."""
    variants = []
    for variant in product.get("variants") or []:
        payload: Dict[str, Any] = {
            "title": variant.get("title"),
            "sku": variant.get("sku"),
            "price": None if variant.get("price") is None else f"{Decimal(str(variant['price'])):.2f}",
        }
        if variant.get("compare_at_price") is not None:
            payload["compare_at_price"] = f"{Decimal(str(variant['compare_at_price'])):.2f}"
        if variant.get("shopify_id"):
            payload["id"] = int(variant["shopify_id"]) if str(variant["shopify_id"]).isdigit() else variant["shopify_id"]
        variants.append(payload)

    return {
        "title": product.get("title"),
        "body_html": product.get("description"),
        "vendor": product.get("vendor"),
        "product_type": product.get("product_type"),
        "status": product.get("status") or "active",
        "tags": ", ".join(product.get("tags") or []),
        "variants": variants,
    }


# =============================================================================
# CUSTOMERS
# =============================================================================

def map_shopify_customer_to_local(customer: Dict[str, Any]) -> Dict[str, Any]:
    accepts_marketing = customer.get("accepts_marketing")
    if accepts_marketing is None:
        consent = customer.get("email_marketing_consent") or {}
        if consent.get("state"):
            accepts_marketing = consent["state"] == "subscribed"

    return {
        "shopify_id": _id(customer.get("id")),
        "first_name": customer.get("first_name"),
        "last_name": customer.get("last_name"),
        "email": customer.get("email"),
        "phone": customer.get("phone"),
        "accepts_marketing": accepts_marketing,
        "tags": split_tags(customer.get("tags")),
        "orders_count": int(customer.get("orders_count") or 0),
        "total_spent": _to_float(customer.get("total_spent")) or 0.0,
        "shopify_updated_at": parse_datetime(customer.get("updated_at")),
    }


# =============================================================================
# ORDERS
# =============================================================================

def _order_status(order: Dict[str, Any]) -> str:
    if order.get("cancelled_at"):
        return "cancelled"
    if order.get("closed_at"):
        return "closed"
    return "open"


def map_shopify_order_to_local(order: Dict[str, Any]) -> Dict[str, Any]:
    """Shopify order JSON -> local order snapshot (customer linked by the caller)."""
    line_items = [
        {
            "shopify_id": _id(item.get("id")),
            "shopify_product_id": _id(item.get("product_id")),
            "shopify_variant_id": _id(item.get("variant_id")),
            "sku": item.get("sku") or None,
            "title": item.get("title") or item.get("name"),
            "quantity": int(item.get("quantity") or 1),
            "price": _to_float(item.get("price")),
        }
        for item in order.get("line_items") or []
    ]

    order_number = order.get("name") or (
        f"#{order['order_number']}" if order.get("order_number") is not None else None
    )

    return {
        "shopify_id": _id(order.get("id")),
        "order_number": order_number,
        "email": order.get("email"),
        "status": _order_status(order),
        "financial_status": order.get("financial_status"),
        "fulfillment_status": order.get("fulfillment_status"),
        "currency": order.get("currency"),
        "subtotal_price": _to_float(order.get("subtotal_price")),
        "total_tax": _to_float(order.get("total_tax")),
        "total_price": _to_float(order.get("total_price")),
        "shopify_created_at": parse_datetime(order.get("created_at")),
        "shopify_updated_at": parse_datetime(order.get("updated_at")),
        "cancelled_at": parse_datetime(order.get("cancelled_at")),
        "line_items": line_items,
    }


def order_status_fields(order: Dict[str, Any]) -> Dict[str, Any]:
    """Subset of order fields that change after creation (status updates)."""
    mapped = map_shopify_order_to_local(order)
    return {
        key: mapped[key]
        for key in (
            "status",
            "financial_status",
            "fulfillment_status",
            "total_price",
            "total_tax",
            "shopify_updated_at",
            "cancelled_at",
        )
    }
