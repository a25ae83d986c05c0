"""Shopify payload and local record builders shared by the storesync tests."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from storesync.services.record_store import RecordStore

SHOP_DOMAIN = "test-shop.myshopify.com"
ACCESS_TOKEN = "shpat_test_token_0123456789"
WEBHOOK_SECRET = "test-webhook-secret"


def shopify_timestamp(dt: Optional[datetime] = None) -> str:
    return (dt or datetime.now(timezone.utc)).replace(microsecond=0).isoformat()


def make_local_product(
    store: RecordStore,
    sku: str,
    title: str = "Local product",
    price: float = 19.99,
    **fields: Any,
) -> Dict[str, Any]:
    """Pending local product with one variant."""
    data = {
        "title": title,
        "description": "<p>Local description</p>",
        "vendor": "Acme",
        "product_type": "Shirts",
        "sku": sku,
        "variants": [{"title": "Default Title", "sku": sku, "price": price}],
    }
    data.update(fields)
    return store.create("product", data)


def make_shopify_product(
    product_id: int,
    sku: str,
    title: str = "Shopify product",
    price: str = "19.99",
    updated_at: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": product_id,
        "title": title,
        "body_html": "<p>Shopify description</p>",
        "vendor": "Acme",
        "product_type": "Shirts",
        "status": "active",
        "tags": "summer, sale",
        "updated_at": updated_at or shopify_timestamp(),
        "variants": [
            {
                "id": product_id * 10 + 1,
                "inventory_item_id": product_id * 10 + 2,
                "title": "Default Title",
                "sku": sku,
                "price": price,
                "position": 1,
            }
        ],
    }


def make_shopify_customer(customer_id: int, email: str, **fields: Any) -> Dict[str, Any]:
    customer = {
        "id": customer_id,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": email,
        "phone": "+31600000000",
        "accepts_marketing": True,
        "tags": "vip",
        "orders_count": 3,
        "total_spent": "120.50",
        "updated_at": shopify_timestamp(),
    }
    customer.update(fields)
    return customer


def make_shopify_order(order_id: int, number: int, customer: Optional[Dict[str, Any]] = None, **fields: Any) -> Dict[str, Any]:
    order = {
        "id": order_id,
        "name": f"#{number}",
        "order_number": number,
        "email": customer["email"] if customer else None,
        "financial_status": "paid",
        "fulfillment_status": None,
        "currency": "EUR",
        "subtotal_price": "40.00",
        "total_tax": "8.40",
        "total_price": "48.40",
        "created_at": shopify_timestamp(),
        "updated_at": shopify_timestamp(),
        "cancelled_at": None,
        "closed_at": None,
        "customer": customer,
        "line_items": [
            {"id": order_id * 10 + 1, "product_id": 1, "variant_id": 2, "sku": "SKU-1", "title": "Shirt", "quantity": 2, "price": "20.00"}
        ],
    }
    order.update(fields)
    return order
