"""
Storefront Data Models

Orders and variant snapshots pulled from the Shopify Admin REST API, plus the
per-entity sync cursor. Every row is scoped by store_id (the shop domain).
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, BigInteger, Numeric,
    ForeignKeyConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from shelfsense.models.base import Base
from shelfsense.utils.helpers import utcnow


class Store(Base):
    """
    A connected storefront

    Created by the OAuth exchange; credential is replaced on re-auth.
    A NULL credential means the store is known but not authorized.
    """
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String, unique=True, index=True, nullable=False)  # mystore.myshopify.com
    credential = Column(Text, nullable=True)  # Opaque bearer token

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Order(Base):
    """
    Shopify orders

    Synced from GET /admin/api/{version}/orders.json
    created_at is fixed by the first insert; the rest is refreshed on re-sync.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_id", "order_id", name="uq_orders_store_order"),
        Index("ix_orders_store_created", "store_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String, nullable=False, index=True)
    order_id = Column(BigInteger, nullable=False)  # Shopify's order ID

    name = Column(String, nullable=True)  # "#1001"
    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False)  # When order was placed
    updated_at_shop = Column(DateTime, nullable=True)  # Upstream last-modified

    # Sync metadata
    synced_at = Column(DateTime, default=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class OrderItem(Base):
    """
    Order line items, one row per (order, variant)

    Re-ingesting an order overwrites quantity instead of duplicating the row.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        ForeignKeyConstraint(
            ["store_id", "order_id"],
            ["orders.store_id", "orders.order_id"],
            ondelete="CASCADE",
        ),
        Index("ix_order_items_store_variant", "store_id", "variant_id"),
    )

    order_id = Column(BigInteger, primary_key=True)
    variant_id = Column(BigInteger, primary_key=True)  # Soft reference to variant_snapshots
    store_id = Column(String, nullable=False)

    product_id = Column(BigInteger, nullable=True)
    title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class VariantSnapshot(Base):
    """
    Point-in-time price and stock for one variant

    Append-only: each sync inserts a new row. A variant's current state is
    its row with the latest captured_at.
    """
    __tablename__ = "variant_snapshots"
    __table_args__ = (
        Index("ix_variant_snapshots_latest", "store_id", "variant_id", "captured_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String, nullable=False)
    variant_id = Column(BigInteger, nullable=False)
    product_id = Column(BigInteger, nullable=False)

    price = Column(Numeric(12, 2), nullable=True)
    inventory_quantity = Column(Integer, nullable=False, default=0)

    sku = Column(String, nullable=True)
    product_title = Column(String, nullable=True)
    variant_title = Column(String, nullable=True)
    product_type = Column(String, nullable=True)

    captured_at = Column(DateTime, nullable=False, default=utcnow)


class SyncState(Base):
    """
    Ingestion cursor per (store, entity_type)

    cursor is the newest upstream updated_at committed by a finished run.
    It only ever moves forward.

    Walks over resources that are not ordered by updated_at (products) can
    stop at a cap part-way through. resume_page_info holds the page token to
    continue from and resume_cursor the high-water mark of the pages already
    committed; both are cleared when the walk reaches its last page.
    """
    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint("store_id", "entity_type", name="uq_sync_state_store_entity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)  # orders, variants
    cursor = Column(DateTime, nullable=True)
    resume_page_info = Column(Text, nullable=True)
    resume_cursor = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
