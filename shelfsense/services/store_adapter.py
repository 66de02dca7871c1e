"""
Store Adapter

Owns every write to the relational store. Writes are single-row
INSERT ... ON CONFLICT statements keyed by natural identity, so replaying a
page is harmless. The adapter never commits row writes on its own: the sync
engine commits once per page. Cursor writes are the exception and commit
immediately.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from sqlalchemy import insert as sa_insert, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shelfsense.exceptions import ConfigurationError, StorageError
from shelfsense.models.store import Order, OrderItem, Store, SyncState, VariantSnapshot
from shelfsense.utils.helpers import utcnow
from shelfsense.utils.logger import log

# Refreshed when an order is re-ingested; created_at is fixed by the first insert
MUTABLE_ORDER_FIELDS = (
    "name",
    "financial_status",
    "fulfillment_status",
    "currency",
    "total_price",
    "updated_at_shop",
    "synced_at",
)


@dataclass
class OrderRecord:
    order_id: int
    created_at: datetime
    total_price: Optional[Decimal] = None
    name: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    currency: Optional[str] = None
    updated_at_shop: Optional[datetime] = None


@dataclass
class OrderItemRecord:
    order_id: int
    variant_id: int
    quantity: int
    product_id: Optional[int] = None
    title: Optional[str] = None


@dataclass
class VariantSnapshotRecord:
    variant_id: int
    product_id: int
    price: Optional[Decimal]
    inventory_quantity: int
    captured_at: Optional[datetime] = None
    sku: Optional[str] = None
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    product_type: Optional[str] = None


class StoreAdapter:
    """Idempotent writes and cursor bookkeeping for one session"""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or utcnow

    # ─────────────────────────────────────────────
    # STATEMENT PLUMBING
    # ─────────────────────────────────────────────

    def _insert(self, model):
        """Dialect-specific INSERT that supports ON CONFLICT"""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise ConfigurationError(f"Unsupported database dialect for upserts: {dialect}")

    def _execute(self, stmt, action: str):
        try:
            return self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Storage error during {action}: {e}")
            raise StorageError(f"{action} failed: {type(e).__name__}") from e

    def commit(self) -> None:
        """Make everything written since the last commit durable"""
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Storage error during commit: {e}")
            raise StorageError(f"commit failed: {type(e).__name__}") from e

    def rollback(self) -> None:
        self.db.rollback()

    # ─────────────────────────────────────────────
    # STORES
    # ─────────────────────────────────────────────

    def upsert_store(self, store_id: str, credential: Optional[str]) -> None:
        """Register a store, or replace its credential after a re-auth"""
        now = self._clock()
        stmt = self._insert(Store).values(
            store_id=store_id,
            credential=credential,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["store_id"],
            set_={"credential": stmt.excluded.credential, "updated_at": stmt.excluded.updated_at},
        )
        self._execute(stmt, f"upsert store {store_id}")
        self.commit()
        log.info(f"Store registered: {store_id} (authorized={credential is not None})")

    def get_store(self, store_id: str) -> Optional[Store]:
        return self.db.query(Store).filter(Store.store_id == store_id).first()

    def list_authorized_stores(self) -> List[str]:
        rows = (
            self.db.query(Store.store_id)
            .filter(Store.credential.isnot(None))
            .order_by(Store.store_id)
            .all()
        )
        return [r.store_id for r in rows]

    # ─────────────────────────────────────────────
    # ORDERS
    # ─────────────────────────────────────────────

    def upsert_order(self, store_id: str, order: OrderRecord) -> None:
        """
        Insert an order, or refresh its mutable fields

        Items of orders outside the current batch are never touched.
        """
        stmt = self._insert(Order).values(
            store_id=store_id,
            order_id=order.order_id,
            name=order.name,
            financial_status=order.financial_status,
            fulfillment_status=order.fulfillment_status,
            currency=order.currency,
            total_price=order.total_price,
            created_at=order.created_at,
            updated_at_shop=order.updated_at_shop,
            synced_at=self._clock(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["store_id", "order_id"],
            set_={field: stmt.excluded[field] for field in MUTABLE_ORDER_FIELDS},
        )
        self._execute(stmt, f"upsert order {order.order_id}")

    def upsert_order_item(self, store_id: str, item: OrderItemRecord) -> None:
        """Insert a line item; an existing (order, variant) row takes the latest quantity"""
        stmt = self._insert(OrderItem).values(
            store_id=store_id,
            order_id=item.order_id,
            variant_id=item.variant_id,
            product_id=item.product_id,
            title=item.title,
            quantity=item.quantity,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["order_id", "variant_id"],
            set_={
                "quantity": stmt.excluded.quantity,
                "product_id": stmt.excluded.product_id,
                "title": stmt.excluded.title,
            },
        )
        self._execute(stmt, f"upsert order item {item.order_id}/{item.variant_id}")

    # ─────────────────────────────────────────────
    # VARIANT SNAPSHOTS
    # ─────────────────────────────────────────────

    def insert_variant_snapshot(self, store_id: str, snapshot: VariantSnapshotRecord) -> None:
        """Append a snapshot. Never updates an existing row."""
        stmt = sa_insert(VariantSnapshot).values(
            store_id=store_id,
            variant_id=snapshot.variant_id,
            product_id=snapshot.product_id,
            price=snapshot.price,
            inventory_quantity=snapshot.inventory_quantity,
            sku=snapshot.sku,
            product_title=snapshot.product_title,
            variant_title=snapshot.variant_title,
            product_type=snapshot.product_type,
            captured_at=snapshot.captured_at or self._clock(),
        )
        self._execute(stmt, f"insert snapshot for variant {snapshot.variant_id}")

    # ─────────────────────────────────────────────
    # CURSORS
    # ─────────────────────────────────────────────

    def read_cursor(self, store_id: str, entity_type: str) -> Optional[datetime]:
        row = (
            self.db.query(SyncState.cursor)
            .filter(SyncState.store_id == store_id, SyncState.entity_type == entity_type)
            .first()
        )
        return row.cursor if row else None

    def write_cursor(self, store_id: str, entity_type: str, new_cursor: datetime) -> bool:
        """
        Advance the cursor to max(current, new_cursor)

        One conditional upsert: the update only applies when the new value is
        strictly greater, so a slow stale run can't drag the cursor back.

        Returns:
            True if the stored cursor moved
        """
        now = self._clock()
        stmt = self._insert(SyncState).values(
            store_id=store_id,
            entity_type=entity_type,
            cursor=new_cursor,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["store_id", "entity_type"],
            set_={"cursor": stmt.excluded.cursor, "updated_at": stmt.excluded.updated_at},
            where=or_(SyncState.cursor.is_(None), SyncState.cursor < stmt.excluded.cursor),
        )
        result = self._execute(stmt, f"write {entity_type} cursor for {store_id}")
        self.commit()

        moved = bool(result.rowcount)
        if moved:
            log.info(f"Cursor {store_id}/{entity_type} -> {new_cursor.isoformat()}")
        else:
            log.info(f"Cursor {store_id}/{entity_type} kept; {new_cursor.isoformat()} is not newer")
        return moved

    # ─────────────────────────────────────────────
    # WALK RESUME POINTS
    # ─────────────────────────────────────────────

    def read_resume(self, store_id: str, entity_type: str) -> Tuple[Optional[str], Optional[datetime]]:
        """(page token, pending high-water mark) of an unfinished walk, or (None, None)"""
        row = (
            self.db.query(SyncState.resume_page_info, SyncState.resume_cursor)
            .filter(SyncState.store_id == store_id, SyncState.entity_type == entity_type)
            .first()
        )
        if row is None or not row.resume_page_info:
            return None, None
        return row.resume_page_info, row.resume_cursor

    def stage_resume(
        self,
        store_id: str,
        entity_type: str,
        page_info: Optional[str],
        pending_cursor: Optional[datetime],
    ) -> None:
        """
        Record where an unfinished walk continues; page_info=None clears it

        Not committed here: the caller commits it together with the page it
        describes, so the resume point never runs ahead of the stored rows.
        """
        stmt = self._insert(SyncState).values(
            store_id=store_id,
            entity_type=entity_type,
            resume_page_info=page_info,
            resume_cursor=pending_cursor if page_info else None,
            updated_at=self._clock(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["store_id", "entity_type"],
            set_={
                "resume_page_info": stmt.excluded.resume_page_info,
                "resume_cursor": stmt.excluded.resume_cursor,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self._execute(stmt, f"stage {entity_type} resume point for {store_id}")
