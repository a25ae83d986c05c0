"""SQLAlchemy ORM models and enums.

This module defines the local store that Shopify data is synchronized with:
catalog (products, variants, inventory), customers, orders, plus the two
operational tables the sync subsystem writes (sync runs and webhook logs).

UUID primary keys use the generic ``Uuid`` type so the same models run on
PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Boolean, Column, String, DateTime, Integer, ForeignKey, Numeric, JSON, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class SyncEntityTypeEnum(str, enum.Enum):
    products = "products"
    inventory = "inventory"
    orders = "orders"
    customers = "customers"


class SyncDirectionEnum(str, enum.Enum):
    push = "push"  # local -> Shopify
    pull = "pull"  # Shopify -> local


class SyncRunStatusEnum(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class RecordSyncStatusEnum(str, enum.Enum):
    """Per-record push state for locally editable data."""
    pending = "pending"  # changed locally, needs push
    synced = "synced"
    error = "error"


class WebhookLogStatusEnum(str, enum.Enum):
    success = "success"
    failed = "failed"
    unhandled = "unhandled"


# Catalog -------------------------------------------------------

class Product(Base):
    """Local product catalog entry.

    WHAT: Product master data mirrored with Shopify
    WHY: Products are edited locally (pushed) and in Shopify admin (pulled/webhooks)
    """
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Shopify identifiers
    shopify_id = Column(String, unique=True, index=True, nullable=True)  # numeric REST id as string

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)  # Shopify body_html
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, archived, draft
    tags = Column(JSON, nullable=True)

    # Natural key used to match against Shopify (first variant SKU)
    sku = Column(String, index=True, nullable=True)

    sync_status = Column(String, nullable=False, default=RecordSyncStatusEnum.pending.value)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    shopify_updated_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # soft delete from products/delete

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.position",
    )

    def __str__(self):
        return f"{self.title} ({self.sku})"


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)

    shopify_id = Column(String, index=True, nullable=True)
    shopify_inventory_item_id = Column(String, index=True, nullable=True)  # used by inventory webhooks

    title = Column(String, nullable=True)
    sku = Column(String, index=True, nullable=True)
    price = Column(Numeric(18, 4), nullable=True)
    compare_at_price = Column(Numeric(18, 4), nullable=True)
    position = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")
    inventory_items = relationship("InventoryItem", back_populates="variant", cascade="all, delete-orphan")


class InventoryItem(Base):
    """Stock level per variant and location."""
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("variant_id", "location", name="uq_inventory_variant_location"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    variant_id = Column(Uuid, ForeignKey("product_variants.id"), nullable=False)
    location = Column(String, nullable=False, default="shopify")
    quantity = Column(Integer, nullable=False, default=0)

    sync_status = Column(String, nullable=False, default=RecordSyncStatusEnum.pending.value)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    variant = relationship("ProductVariant", back_populates="inventory_items")


# Customers & orders --------------------------------------------

class Customer(Base):
    """Customer record.

    WHAT: Customer identity and aggregate order stats
    WHY: Orders reference customers, and customer data is deduplicated by email
    """
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    shopify_id = Column(String, unique=True, index=True, nullable=True)

    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    phone = Column(String, nullable=True)
    accepts_marketing = Column(Boolean, nullable=True)
    tags = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, deleted

    orders_count = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(18, 4), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    shopify_updated_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    orders = relationship("Order", back_populates="customer")


class Order(Base):
    """Order imported from Shopify (pull-only)."""
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    shopify_id = Column(String, unique=True, index=True, nullable=True)
    order_number = Column(String, index=True, nullable=True)  # e.g. "#1001"

    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)

    email = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")  # open, closed, cancelled
    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    subtotal_price = Column(Numeric(18, 4), nullable=True)
    total_tax = Column(Numeric(18, 4), nullable=True)
    total_price = Column(Numeric(18, 4), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    shopify_created_at = Column(DateTime(timezone=True), nullable=True)
    shopify_updated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    customer = relationship("Customer", back_populates="orders")
    line_items = relationship("OrderLineItem", back_populates="order", cascade="all, delete-orphan")


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)

    shopify_id = Column(String, nullable=True)
    shopify_product_id = Column(String, nullable=True)
    shopify_variant_id = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(18, 4), nullable=True)

    order = relationship("Order", back_populates="line_items")


# Sync bookkeeping ----------------------------------------------

class SyncRun(Base):
    """One execution of a sync job (owned by SyncStatusManager)."""
    __tablename__ = "sync_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String, index=True, nullable=False)  # SyncEntityTypeEnum
    direction = Column(String, nullable=False)  # SyncDirectionEnum
    status = Column(String, index=True, nullable=False, default=SyncRunStatusEnum.running.value)

    successful = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)

    errors = Column(JSON, nullable=True)  # list of per-record error messages
    error_message = Column(Text, nullable=True)  # run-level failure
    meta = Column(JSON, nullable=True)

    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class WebhookLog(Base):
    """Audit trail for every inbound webhook delivery."""
    __tablename__ = "webhook_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    topic = Column(String, index=True, nullable=False)
    shop_domain = Column(String, nullable=True)
    status = Column(String, nullable=False)  # WebhookLogStatusEnum
    payload = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    processed_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
