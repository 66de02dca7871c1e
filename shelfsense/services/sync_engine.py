"""
Sync Engine
Incremental ingestion of Shopify orders and variant snapshots.

One run walks the upstream pages for a (store, entity type), upserts every
page through the StoreAdapter, commits it, and only then lets the in-memory
candidate cursor move. The persisted cursor is written once, at the end of a
completed or capped run; a failed run leaves it untouched so the next run
replays from the last committed high-water mark.

Products are not served in updated_at order, so a product walk cut short
by a cap cannot resume from a timestamp. Those walks commit the next page
token with every page and only move the cursor once the walk has reached
its last page.
"""
import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from shelfsense.config import Settings, get_settings
from shelfsense.connectors.shopify import ShopifyClient
from shelfsense.exceptions import (
    ConfigurationError,
    MalformedRecordError,
    StorageError,
    UpstreamError,
    UpstreamRejectedError,
)
from shelfsense.services.store_adapter import (
    OrderItemRecord,
    OrderRecord,
    StoreAdapter,
    VariantSnapshotRecord,
)
from shelfsense.utils.helpers import format_timestamp, parse_timestamp, to_decimal, to_int, utcnow
from shelfsense.utils.logger import log
from shelfsense.utils.retry import RetryContext

# entity type -> upstream resource
ENTITY_RESOURCES = {
    "orders": "orders",
    "variants": "products",
}
ENTITY_TYPES = tuple(ENTITY_RESOURCES)

# Resources served in updated_at order; a timestamp cursor alone resumes them.
# Other walks save the next page token with every committed page.
TIMESTAMP_ORDERED_RESOURCES = {"orders"}


class SyncPhase(str, Enum):
    START = "start"
    FETCH_PAGE = "fetch_page"
    UPSERT_PAGE = "upsert_page"
    ADVANCE_CURSOR = "advance_cursor"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncOptions:
    """Per-run knobs; anything left as None falls back to settings"""
    dry: bool = False
    days: Any = None  # first-run lookback, used only when no cursor exists
    page_cap: Any = None
    time_budget_seconds: Optional[float] = None


@dataclass
class SyncReport:
    """Outcome of one sync run"""
    store_id: str
    entity_type: str
    status: str = "running"  # completed, capped, failed
    phase: SyncPhase = SyncPhase.START
    dry: bool = False
    pages: int = 0
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    items_dropped: int = 0
    uncommitted: int = 0
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    cursor_persisted: bool = False
    more_available: bool = False
    resumed: bool = False
    resume_saved: bool = False
    retries: int = 0
    duration_seconds: float = 0.0
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status in ("completed", "capped")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_id": self.store_id,
            "entity_type": self.entity_type,
            "status": self.status,
            "phase": self.phase.value,
            "dry": self.dry,
            "pages": self.pages,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "skipped": self.skipped,
            "items_dropped": self.items_dropped,
            "uncommitted": self.uncommitted,
            "cursor_before": format_timestamp(self.cursor_before),
            "cursor_after": format_timestamp(self.cursor_after),
            "cursor_persisted": self.cursor_persisted,
            "more_available": self.more_available,
            "resumed": self.resumed,
            "resume_saved": self.resume_saved,
            "retries": self.retries,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
        }


@dataclass
class FlatPage:
    """One upstream page flattened into entity rows"""
    orders: List[Tuple[OrderRecord, List[OrderItemRecord]]] = field(default_factory=list)
    snapshots: List[VariantSnapshotRecord] = field(default_factory=list)
    skipped: int = 0
    items_dropped: int = 0
    max_updated_at: Optional[datetime] = None

    def observe(self, ts: Optional[datetime]) -> None:
        if ts is not None and (self.max_updated_at is None or ts > self.max_updated_at):
            self.max_updated_at = ts


# ─────────────────────────────────────────────
# FLATTENING
# ─────────────────────────────────────────────

def _order_from_record(raw: Dict[str, Any]) -> Tuple[OrderRecord, List[OrderItemRecord], int]:
    """
    Build an order and its line items from an upstream order payload.

    Line items are keyed by variant; several line items for the same variant
    (e.g. different properties) are summed into one row.

    Raises:
        MalformedRecordError: missing id or created_at
    """
    order_id = to_int(raw.get("id"))
    if not order_id or order_id <= 0:
        raise MalformedRecordError("Order without id", record_id=raw.get("id"))

    created_at = parse_timestamp(raw.get("created_at")) or parse_timestamp(raw.get("processed_at"))
    if created_at is None:
        raise MalformedRecordError(f"Order {order_id} without created_at", record_id=order_id)

    order = OrderRecord(
        order_id=order_id,
        created_at=created_at,
        total_price=to_decimal(raw.get("total_price")),
        name=raw.get("name"),
        financial_status=raw.get("financial_status"),
        fulfillment_status=raw.get("fulfillment_status"),
        currency=raw.get("currency"),
        updated_at_shop=parse_timestamp(raw.get("updated_at")) or created_at,
    )

    line_items = raw.get("line_items")
    if not isinstance(line_items, list):
        line_items = []

    items: Dict[int, OrderItemRecord] = {}
    dropped = 0
    for li in line_items:
        if not isinstance(li, dict):
            dropped += 1
            continue
        variant_id = to_int(li.get("variant_id"))
        quantity = to_int(li.get("quantity"))
        if not variant_id or variant_id <= 0 or quantity is None or quantity <= 0:
            dropped += 1
            continue

        existing = items.get(variant_id)
        if existing:
            existing.quantity += quantity
            continue
        items[variant_id] = OrderItemRecord(
            order_id=order_id,
            variant_id=variant_id,
            quantity=quantity,
            product_id=to_int(li.get("product_id")),
            title=li.get("title"),
        )

    return order, list(items.values()), dropped


def flatten_orders(records: List[Any]) -> FlatPage:
    """Orders page -> (order, items) pairs"""
    flat = FlatPage()
    for raw in records:
        if not isinstance(raw, dict):
            flat.skipped += 1
            continue
        try:
            order, items, dropped = _order_from_record(raw)
        except MalformedRecordError as e:
            flat.skipped += 1
            log.warning(f"Skipping malformed order: {e}")
            continue

        flat.orders.append((order, items))
        flat.items_dropped += dropped
        flat.observe(order.updated_at_shop)

    return flat


def flatten_products(records: List[Any], captured_at: datetime) -> FlatPage:
    """
    Products page -> one snapshot per variant

    Product title and type ride along on each snapshot. All snapshots of a
    run share the same captured_at.
    """
    flat = FlatPage()
    for product in records:
        if not isinstance(product, dict):
            flat.skipped += 1
            continue

        product_id = to_int(product.get("id"))
        flat.observe(parse_timestamp(product.get("updated_at")))

        variants = product.get("variants")
        if not isinstance(variants, list):
            variants = []

        for v in variants:
            if not isinstance(v, dict):
                flat.skipped += 1
                continue
            variant_id = to_int(v.get("id"))
            variant_product_id = to_int(v.get("product_id")) or product_id
            if not variant_id or not variant_product_id:
                flat.skipped += 1
                log.warning(f"Skipping malformed variant on product {product.get('id')}: {v.get('id')}")
                continue

            inventory = to_int(v.get("inventory_quantity"))
            flat.snapshots.append(VariantSnapshotRecord(
                variant_id=variant_id,
                product_id=variant_product_id,
                price=to_decimal(v.get("price")),
                inventory_quantity=inventory if inventory is not None else 0,
                captured_at=captured_at,
                sku=v.get("sku") or None,
                product_title=product.get("title"),
                variant_title=v.get("title"),
                product_type=product.get("product_type") or None,
            ))
            flat.observe(parse_timestamp(v.get("updated_at")))

    return flat


def clamp_lookback_days(value: Any, settings: Settings) -> int:
    """
    Resolve the first-run lookback window

    Out-of-range values are clamped; anything non-numeric falls back to the
    default.
    """
    default = settings.sync_default_lookback_days
    if value is None or value == "" or isinstance(value, bool):
        days = default
    else:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            parsed = math.nan
        days = int(parsed) if math.isfinite(parsed) else default
    return max(settings.sync_lookback_min_days, min(settings.sync_lookback_max_days, days))


def default_client_factory(settings: Settings) -> Callable[[str, str], ShopifyClient]:
    def factory(store_id: str, credential: str) -> ShopifyClient:
        return ShopifyClient(
            store_id,
            access_token=credential,
            api_version=settings.shopify_api_version,
            requests_per_second=settings.shopify_requests_per_second,
            timeout=settings.shopify_request_timeout,
        )
    return factory


class SyncEngine:
    """
    Drives one resumable sync run at a time for a (store, entity type)

    Usage:
        engine = SyncEngine(StoreAdapter(db), default_client_factory(settings))
        report = await engine.run_sync("mystore.myshopify.com", "orders")
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        client_factory: Optional[Callable[[str, str], Any]] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ):
        self.adapter = adapter
        self.settings = settings or get_settings()
        self.client_factory = client_factory or default_client_factory(self.settings)
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        self._monotonic = monotonic or time.monotonic

    def _resolve_page_cap(self, value: Any) -> int:
        cap = to_int(value)
        if cap is None or cap < 1:
            return self.settings.sync_page_cap
        return cap

    def _first_page_filter(
        self,
        entity_type: str,
        cursor: Optional[datetime],
        days: Any,
    ) -> Optional[datetime]:
        """updated_at_min for the first page, or None for a full walk"""
        if entity_type == "variants" and self.settings.variants_full_catalog:
            return None
        if cursor is not None:
            return cursor
        lookback = clamp_lookback_days(days, self.settings)
        return self._clock() - timedelta(days=lookback)

    async def _fetch_page(self, client, resource: str, page_info, updated_at_min, report: SyncReport):
        """One page fetch, retried on transient upstream errors"""
        retry = RetryContext(
            max_attempts=self.settings.sync_retry_max_attempts,
            base_delay=self.settings.sync_retry_base_delay,
            max_delay=self.settings.sync_retry_max_delay,
            sleep=self._sleep,
        )
        try:
            return await retry.execute(
                client.fetch_page,
                resource,
                page_info=page_info,
                updated_at_min=format_timestamp(updated_at_min),
            )
        finally:
            report.retries += retry.stats.retries

    def _write_page(
        self,
        store_id: str,
        entity_type: str,
        flat: FlatPage,
        resume: Optional[Tuple[Optional[str], Optional[datetime]]] = None,
    ) -> int:
        """
        Upsert every row of a page and commit it. Returns rows written.

        resume is the (next page token, high-water mark) to commit along with
        the page for walks that resume by token.
        """
        written = 0
        for order, items in flat.orders:
            self.adapter.upsert_order(store_id, order)
            written += 1
            for item in items:
                self.adapter.upsert_order_item(store_id, item)
                written += 1

        for snapshot in flat.snapshots:
            self.adapter.insert_variant_snapshot(store_id, snapshot)
            written += 1

        if resume is not None:
            self.adapter.stage_resume(store_id, entity_type, *resume)

        self.adapter.commit()
        return written

    def _reset_stale_resume(self, store_id: str, entity_type: str) -> bool:
        """Drop a saved page token the upstream no longer accepts"""
        try:
            self.adapter.stage_resume(store_id, entity_type, None, None)
            self.adapter.commit()
        except StorageError as e:
            log.error(f"Could not clear {entity_type} resume point for {store_id}: {e}")
            return False
        log.warning(f"Saved {entity_type} page token for {store_id} was rejected; the next run restarts the walk")
        return True

    async def run_sync(
        self,
        store_id: str,
        entity_type: str,
        options: Optional[SyncOptions] = None,
    ) -> SyncReport:
        """
        Run one sync for a store and entity type

        Args:
            store_id: Shop domain
            entity_type: orders or variants
            options: Per-run knobs (dry run, lookback, caps)

        Returns:
            SyncReport. Upstream and storage failures are reported, not raised.

        Raises:
            ConfigurationError: unknown entity type, unknown store or missing credential
        """
        options = options or SyncOptions()

        if entity_type not in ENTITY_RESOURCES:
            raise ConfigurationError(f"Unknown entity type: {entity_type}")

        store = self.adapter.get_store(store_id)
        if store is None:
            raise ConfigurationError(f"Unknown store: {store_id}")
        if not store.credential:
            raise ConfigurationError(f"Store {store_id} has no credential")

        resource = ENTITY_RESOURCES[entity_type]
        token_walk = resource not in TIMESTAMP_ORDERED_RESOURCES
        page_cap = self._resolve_page_cap(options.page_cap)
        time_budget = options.time_budget_seconds or self.settings.sync_time_budget_seconds

        report = SyncReport(store_id=store_id, entity_type=entity_type, dry=options.dry)
        started = self._monotonic()

        cursor_before = self.adapter.read_cursor(store_id, entity_type)
        report.cursor_before = cursor_before
        candidate = cursor_before

        page_info = None
        if token_walk:
            page_info, resume_cursor = self.adapter.read_resume(store_id, entity_type)
            if resume_cursor is not None and (candidate is None or resume_cursor > candidate):
                candidate = resume_cursor
        report.resumed = page_info is not None

        # A saved page token already carries the walk's original filter
        updated_at_min = None if report.resumed else self._first_page_filter(entity_type, cursor_before, options.days)
        captured_at = self._clock()

        log.info(
            f"Starting {entity_type} sync for {store_id} "
            f"(cursor={format_timestamp(cursor_before)}, "
            f"updated_at_min={format_timestamp(updated_at_min)}, "
            f"{'resuming walk, ' if report.resumed else ''}"
            f"page_cap={page_cap}{', dry run' if options.dry else ''})"
        )

        client = self.client_factory(store_id, store.credential)
        page_number = 0
        covered = 0

        try:
            while True:
                report.phase = SyncPhase.FETCH_PAGE
                page_number = report.pages + 1
                try:
                    page = await self._fetch_page(
                        client,
                        resource,
                        page_info,
                        updated_at_min if page_info is None else None,
                        report,
                    )
                except UpstreamError as e:
                    e.page = page_number
                    raise

                report.pages += 1
                report.fetched += len(page.items)

                if entity_type == "orders":
                    flat = flatten_orders(page.items)
                else:
                    flat = flatten_products(page.items, captured_at)
                report.skipped += flat.skipped
                report.items_dropped += flat.items_dropped

                page_candidate = candidate
                if flat.max_updated_at and (candidate is None or flat.max_updated_at > candidate):
                    page_candidate = flat.max_updated_at

                report.phase = SyncPhase.UPSERT_PAGE
                written = 0
                if not options.dry:
                    resume = None
                    if token_walk:
                        resume = (page.next_page_info, page_candidate) if page.next_page_info else (None, None)
                    written = self._write_page(store_id, entity_type, flat, resume)
                    report.upserted += written
                    if token_walk:
                        covered += len(page.items)

                report.phase = SyncPhase.ADVANCE_CURSOR
                candidate = page_candidate

                log.info(
                    f"{store_id} {entity_type} page {page_number}: "
                    f"{len(page.items)} fetched, {written} written, {flat.skipped} skipped"
                )

                page_info = page.next_page_info
                if not page_info:
                    report.status = "completed"
                    break
                if report.pages >= page_cap:
                    report.status = "capped"
                    report.more_available = True
                    log.warning(f"{store_id} {entity_type} sync hit page cap ({page_cap}); more pages remain")
                    break
                if time_budget and self._monotonic() - started >= time_budget:
                    report.status = "capped"
                    report.more_available = True
                    log.warning(f"{store_id} {entity_type} sync hit time budget ({time_budget}s); more pages remain")
                    break

            report.cursor_after = candidate
            if token_walk and report.status == "capped":
                # The cursor waits for the walk to finish; the saved token carries progress
                report.resume_saved = not options.dry
            elif not options.dry and candidate is not None and (
                cursor_before is None or candidate > cursor_before
            ):
                report.cursor_persisted = self.adapter.write_cursor(store_id, entity_type, candidate)
            report.phase = SyncPhase.DONE

        except (UpstreamError, StorageError) as e:
            self.adapter.rollback()
            report.status = "failed"
            report.error = e.to_dict()
            report.error["failed_phase"] = report.phase.value
            report.error.setdefault("resource", resource)
            report.error.setdefault("page", page_number)
            report.error.setdefault("status_code", None)
            report.cursor_after = cursor_before
            report.uncommitted = report.fetched - covered
            report.phase = SyncPhase.FAILED
            if (
                report.resumed
                and page_number == 1
                and not options.dry
                and isinstance(e, UpstreamRejectedError)
                and e.status_code == 400
            ):
                report.error["resume_cleared"] = self._reset_stale_resume(store_id, entity_type)
            log.error(
                f"{entity_type} sync failed for {store_id} at page {report.error['page']}: {e} "
                f"({report.uncommitted} records not covered by the cursor)"
            )

        report.duration_seconds = self._monotonic() - started

        if report.ok:
            log.info(
                f"Finished {entity_type} sync for {store_id}: {report.status}, "
                f"{report.pages} pages, {report.fetched} fetched, {report.upserted} written, "
                f"cursor {format_timestamp(report.cursor_after)}"
                f"{', walk resumes next run' if report.resume_saved else ''}"
            )
        return report
