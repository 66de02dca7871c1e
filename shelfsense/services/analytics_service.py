"""
Analytics Service

Read-only reports over synced data:
  - Top sellers (units sold per variant in a trailing window)
  - Slow movers (stocked variants that stopped selling) with a price suggestion
  - Recommendations: price increases for popular stock, markdowns, restock alerts
  - Headline metrics for the dashboard

Data joins:
  OrderItem.(store_id, order_id) → Order.(store_id, order_id)
  OrderItem.variant_id → VariantSnapshot.variant_id (latest snapshot per variant)
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import and_, desc, func
from sqlalchemy.orm import Session

from shelfsense.config import get_settings
from shelfsense.models.base import SchemaCapabilities, probe_capabilities
from shelfsense.models.store import Order, OrderItem, VariantSnapshot
from shelfsense.services.slow_mover_rules import VariantFacts, get_rule, is_gift_card
from shelfsense.utils.helpers import calculate_date_range, format_timestamp, round_money, utcnow
from shelfsense.utils.logger import log

TOP_SELLERS_LIMIT = 10
SLOW_MOVERS_LIMIT = 100

# Recommendation thresholds
POPULAR_MIN_SALES = 3  # units in the window
POPULAR_MIN_STOCK = 10  # strictly more than
PRICE_INCREASE_PCT = 5
LOW_STOCK_BELOW = 3


@dataclass(frozen=True)
class OptionBound:
    attr: str
    default: float
    min: float
    max: float
    integer: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"min": _plain(self.min), "max": _plain(self.max), "default": _plain(self.default)}


# query param -> bounds
OPTION_BOUNDS: Dict[str, OptionBound] = {
    "windowDays": OptionBound("window_days", 120, 30, 365),
    "minStock": OptionBound("min_stock", 20, 0, 10_000),
    "inactivityDays": OptionBound("inactivity_days", 60, 7, 720),
    "discountPct": OptionBound("discount_pct", -5, -50, 50, integer=False),
    "maxSalesInWindow": OptionBound("max_sales_in_window", 1, 0, 50),
}


def _plain(value: float):
    """-5.0 -> -5 for display; fractional values stay floats"""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def parse_option(raw: Any, bound: OptionBound):
    """
    Parse one caller-supplied knob. Never raises.

    Missing, non-numeric or non-finite input gives the default. A negative
    value for an option that can't be negative is treated as garbage (default)
    rather than clamped to 0; anything else is clamped into range.
    """
    if raw is None or isinstance(raw, bool):
        return _plain(bound.default)
    try:
        value = float(str(raw).strip())
    except ValueError:
        return _plain(bound.default)
    if not math.isfinite(value):
        return _plain(bound.default)
    if value < 0 <= bound.min:
        return _plain(bound.default)

    value = max(bound.min, min(bound.max, value))
    if bound.integer:
        return int(value)
    return _plain(value)


@dataclass(frozen=True)
class AnalyticsConfig:
    window_days: int = 120
    min_stock: int = 20
    inactivity_days: int = 60
    discount_pct: float = -5
    max_sales_in_window: int = 1

    @classmethod
    def from_params(cls, params: Optional[Mapping[str, Any]] = None) -> "AnalyticsConfig":
        params = params or {}
        values = {bound.attr: parse_option(params.get(key), bound) for key, bound in OPTION_BOUNDS.items()}
        return cls(**values)

    def knobs(self) -> Dict[str, Any]:
        return {key: getattr(self, bound.attr) for key, bound in OPTION_BOUNDS.items()}


def suggest_price(price: Optional[Decimal], discount_pct: float) -> Optional[Decimal]:
    """price * (1 + pct/100), half-up to cents; None without a positive price"""
    if price is None or not price.is_finite() or price <= 0:
        return None
    factor = Decimal(1) + Decimal(str(discount_pct)) / Decimal(100)
    return round_money(price * factor)


def recommended_action(price: Optional[Decimal], discount_pct: float) -> Dict[str, Any]:
    if discount_pct < 0:
        action = "price_decrease"
    elif discount_pct > 0:
        action = "price_increase"
    else:
        action = "no_change"
    suggested = suggest_price(price, discount_pct)
    return {
        "type": action,
        "discount_pct": _plain(discount_pct),
        "suggested_price": float(suggested) if suggested is not None else None,
    }


@dataclass
class SlowMoverRow:
    variant_id: int
    product_id: Optional[int]
    current_price: Optional[Decimal]
    stock: int
    captured_at: Optional[datetime]
    qty_sold_in_window: int
    last_sold_at: Optional[datetime]
    days_since_last_sale: Optional[int]
    recommended_action: Dict[str, Any] = field(default_factory=dict)
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    product_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "product_title": self.product_title,
            "variant_title": self.variant_title,
            "product_type": self.product_type,
            "current_price": float(round_money(self.current_price)) if self.current_price is not None else None,
            "stock": self.stock,
            "captured_at": format_timestamp(self.captured_at),
            "qty_sold_in_window": self.qty_sold_in_window,
            "last_sold_at": format_timestamp(self.last_sold_at),
            "days_since_last_sale": self.days_since_last_sale,
            "recommended_action": self.recommended_action,
        }


def _slow_mover_sort_key(row: SlowMoverRow):
    # stock desc, least recently sold first, never sold last, variant id asc
    never_sold = row.days_since_last_sale is None
    return (-row.stock, never_sold, -(row.days_since_last_sale or 0), row.variant_id)


class AnalyticsService:
    def __init__(
        self,
        db: Session,
        capabilities: Optional[SchemaCapabilities] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rule: Optional[str] = None,
    ):
        self.db = db
        self.capabilities = capabilities or probe_capabilities(db.get_bind())
        self._clock = clock or utcnow
        self.rule_name = rule or get_settings().slow_mover_rule
        self.rule = get_rule(self.rule_name)

    def _item_order_join(self):
        return and_(Order.store_id == OrderItem.store_id, Order.order_id == OrderItem.order_id)

    # ─────────────────────────────────────────────
    # TOP SELLERS
    # ─────────────────────────────────────────────

    def top_sellers(self, store_id: str, window_days: int, limit: int = TOP_SELLERS_LIMIT) -> List[Dict[str, int]]:
        """Units sold per variant for orders created in [now - window, now]"""
        start, end = calculate_date_range(window_days, self._clock())
        qty = func.sum(OrderItem.quantity).label("qty_sold")

        rows = (
            self.db.query(OrderItem.variant_id, qty)
            .join(Order, self._item_order_join())
            .filter(
                Order.store_id == store_id,
                Order.created_at >= start,
                Order.created_at <= end,
                OrderItem.quantity > 0,
            )
            .group_by(OrderItem.variant_id)
            .order_by(desc(qty), OrderItem.variant_id.asc())
            .limit(limit)
            .all()
        )
        return [{"variant_id": r.variant_id, "qty_sold": int(r.qty_sold)} for r in rows]

    # ─────────────────────────────────────────────
    # SLOW MOVERS
    # ─────────────────────────────────────────────

    def _latest_snapshots(self, store_id: str):
        """Latest snapshot per variant: greatest captured_at, then greatest id"""
        latest_ts = (
            self.db.query(
                VariantSnapshot.variant_id.label("variant_id"),
                func.max(VariantSnapshot.captured_at).label("captured_at"),
            )
            .filter(VariantSnapshot.store_id == store_id)
            .group_by(VariantSnapshot.variant_id)
            .subquery()
        )
        latest_id = (
            self.db.query(func.max(VariantSnapshot.id).label("id"))
            .join(
                latest_ts,
                and_(
                    VariantSnapshot.variant_id == latest_ts.c.variant_id,
                    VariantSnapshot.captured_at == latest_ts.c.captured_at,
                ),
            )
            .filter(VariantSnapshot.store_id == store_id)
            .group_by(VariantSnapshot.variant_id)
            .subquery()
        )

        columns = [
            VariantSnapshot.variant_id,
            VariantSnapshot.product_id,
            VariantSnapshot.price,
            VariantSnapshot.inventory_quantity,
            VariantSnapshot.captured_at,
        ]
        if self.capabilities.has_product_title:
            columns.append(VariantSnapshot.product_title)
        if self.capabilities.has_variant_title:
            columns.append(VariantSnapshot.variant_title)
        if self.capabilities.has_product_type:
            columns.append(VariantSnapshot.product_type)

        return (
            self.db.query(*columns)
            .join(latest_id, VariantSnapshot.id == latest_id.c.id)
            .all()
        )

    def _qty_sold_since(self, store_id: str, start: datetime, end: datetime) -> Dict[int, int]:
        rows = (
            self.db.query(OrderItem.variant_id, func.sum(OrderItem.quantity).label("qty"))
            .join(Order, self._item_order_join())
            .filter(
                Order.store_id == store_id,
                Order.created_at >= start,
                Order.created_at <= end,
                OrderItem.quantity > 0,
            )
            .group_by(OrderItem.variant_id)
            .all()
        )
        return {r.variant_id: int(r.qty or 0) for r in rows}

    def _last_sold_at(self, store_id: str) -> Dict[int, datetime]:
        """Most recent order per variant, across all time"""
        rows = (
            self.db.query(OrderItem.variant_id, func.max(Order.created_at).label("last_sold_at"))
            .join(Order, self._item_order_join())
            .filter(Order.store_id == store_id, OrderItem.quantity > 0)
            .group_by(OrderItem.variant_id)
            .all()
        )
        return {r.variant_id: r.last_sold_at for r in rows}

    def _variant_facts(self, store_id: str, cfg: AnalyticsConfig):
        """
        Latest snapshot per variant with its sales picture.

        Yields (snapshot row, VariantFacts, last_sold_at, price as Decimal).
        """
        now = self._clock()
        start, end = calculate_date_range(cfg.window_days, now)

        window_sales = self._qty_sold_since(store_id, start, end)
        last_sales = self._last_sold_at(store_id)

        for snap in self._latest_snapshots(store_id):
            last_sold_at = last_sales.get(snap.variant_id)
            facts = VariantFacts(
                stock=max(0, snap.inventory_quantity or 0),
                qty_sold_in_window=window_sales.get(snap.variant_id, 0),
                days_since_last_sale=max(0, (now - last_sold_at).days) if last_sold_at else None,
                is_gift_card=is_gift_card(getattr(snap, "product_type", None)),
            )

            price = snap.price
            if price is not None and not isinstance(price, Decimal):
                price = Decimal(str(price))

            yield snap, facts, last_sold_at, price

    def slow_movers(self, store_id: str, cfg: AnalyticsConfig, limit: int = SLOW_MOVERS_LIMIT) -> List[SlowMoverRow]:
        rows: List[SlowMoverRow] = []
        for snap, facts, last_sold_at, price in self._variant_facts(store_id, cfg):
            if not self.rule(facts, cfg):
                continue

            rows.append(SlowMoverRow(
                variant_id=snap.variant_id,
                product_id=snap.product_id,
                current_price=price,
                stock=facts.stock,
                captured_at=snap.captured_at,
                qty_sold_in_window=facts.qty_sold_in_window,
                last_sold_at=last_sold_at,
                days_since_last_sale=facts.days_since_last_sale,
                recommended_action=recommended_action(price, cfg.discount_pct),
                product_title=getattr(snap, "product_title", None),
                variant_title=getattr(snap, "variant_title", None),
                product_type=getattr(snap, "product_type", None),
            ))

        rows.sort(key=_slow_mover_sort_key)
        return rows[:limit]

    # ─────────────────────────────────────────────
    # RECOMMENDATIONS
    # ─────────────────────────────────────────────

    def recommendations(self, store_id: str, cfg: AnalyticsConfig) -> List[Dict[str, Any]]:
        """
        Per-variant pricing and restock suggestions

        Checked in order, first match wins:
          1. Popular with healthy stock → price_increase of PRICE_INCREASE_PCT
          2. Slow mover under the configured rule → the cfg markdown
          3. Nearly out of stock but still selling → restock_alert

        Variants without a positive price are left out.
        """
        recs: List[Dict[str, Any]] = []
        for snap, facts, last_sold_at, price in self._variant_facts(store_id, cfg):
            if price is None or not price.is_finite() or price <= 0:
                continue

            sold = facts.qty_sold_in_window
            if sold >= POPULAR_MIN_SALES and facts.stock > POPULAR_MIN_STOCK:
                action = recommended_action(price, PRICE_INCREASE_PCT)
                rationale = (
                    f"Sold {sold} in the last {cfg.window_days} days with {facts.stock} units in stock; "
                    f"a +{PRICE_INCREASE_PCT}% increase should preserve conversion while improving margin."
                )
            elif self.rule(facts, cfg):
                action = recommended_action(price, cfg.discount_pct)
                rationale = (
                    f"{sold} sold in the last {cfg.window_days} days with {facts.stock} units on hand; "
                    f"a {_plain(cfg.discount_pct)}% price change may stimulate sell-through."
                )
            elif facts.stock < LOW_STOCK_BELOW and sold > 0:
                action = {"type": "restock_alert", "discount_pct": None, "suggested_price": None}
                rationale = f"Only {facts.stock} units left and {sold} sold in {cfg.window_days} days; risk of stockout."
            else:
                continue

            recs.append({
                "variant_id": snap.variant_id,
                "product_id": snap.product_id,
                "product_title": getattr(snap, "product_title", None),
                "variant_title": getattr(snap, "variant_title", None),
                "current_price": float(round_money(price)),
                "stock": facts.stock,
                "qty_sold_in_window": sold,
                "last_sold_at": format_timestamp(last_sold_at),
                **action,
                "rationale": rationale,
            })

        recs.sort(key=lambda r: (-r["qty_sold_in_window"], -r["stock"], r["variant_id"]))
        return recs

    # ─────────────────────────────────────────────
    # METRICS & DASHBOARD PAYLOAD
    # ─────────────────────────────────────────────

    def metrics(self, store_id: str, window_days: int) -> Dict[str, int]:
        start, end = calculate_date_range(window_days, self._clock())

        orders_in_db = (
            self.db.query(func.count(Order.id))
            .filter(Order.store_id == store_id)
            .scalar()
        )
        unique_variants = (
            self.db.query(func.count(func.distinct(OrderItem.variant_id)))
            .join(Order, self._item_order_join())
            .filter(
                Order.store_id == store_id,
                Order.created_at >= start,
                Order.created_at <= end,
                OrderItem.quantity > 0,
            )
            .scalar()
        )
        snapshots_total = (
            self.db.query(func.count(VariantSnapshot.id))
            .filter(VariantSnapshot.store_id == store_id)
            .scalar()
        )
        return {
            "orders_in_db": orders_in_db or 0,
            "unique_variants_sold_window": unique_variants or 0,
            "variant_snapshots_total": snapshots_total or 0,
        }

    def get_analytics(self, store_id: str, cfg: Optional[AnalyticsConfig] = None) -> Dict[str, Any]:
        """Full dashboard payload for one store"""
        cfg = cfg or AnalyticsConfig()

        slow = self.slow_movers(store_id, cfg)
        payload = {
            "store_id": store_id,
            "generated_at": format_timestamp(self._clock()),
            "metrics": self.metrics(store_id, cfg.window_days),
            "top_sellers": self.top_sellers(store_id, cfg.window_days),
            "slow_movers": [row.to_dict() for row in slow],
            "meta": {
                "filtered_by_window": True,
                "window_days": cfg.window_days,
                "rule": self.rule_name,
                "knobs": cfg.knobs(),
                "bounds": {key: bound.to_dict() for key, bound in OPTION_BOUNDS.items()},
                "capabilities": self.capabilities.to_dict(),
            },
        }
        log.info(
            f"Analytics for {store_id}: window={cfg.window_days}d, "
            f"{len(payload['top_sellers'])} top sellers, {len(slow)} slow movers"
        )
        return payload
