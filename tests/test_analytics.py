"""
Analytics tests: knob parsing, window aggregation, slow-mover selection and
ordering, price suggestions and the pluggable rules.

Data is seeded through the StoreAdapter so the queries run against the same
rows a sync would produce.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from shelfsense.config import Settings
from shelfsense.exceptions import ConfigurationError
from shelfsense.models import OrderItem, VariantSnapshot
from shelfsense.models.base import SchemaCapabilities
from shelfsense.services.analytics_service import (
    OPTION_BOUNDS,
    AnalyticsConfig,
    AnalyticsService,
    recommended_action,
    suggest_price,
)
from shelfsense.services.slow_mover_rules import (
    VariantFacts,
    get_rule,
    is_gift_card,
    stock_no_sales,
    windowed,
    windowed_no_gift_cards,
)
from shelfsense.services.store_adapter import OrderItemRecord, OrderRecord, VariantSnapshotRecord
from shelfsense.services.sync_engine import SyncEngine

from conftest import NOW, STORE, FakeShopifyClient, make_order, make_product

_order_ids = iter(range(10_000, 99_999))


def _sale(adapter, days_ago, variant_id, qty=1, store=STORE):
    order_id = next(_order_ids)
    adapter.upsert_order(store, OrderRecord(order_id=order_id, created_at=NOW - timedelta(days=days_ago)))
    adapter.upsert_order_item(store, OrderItemRecord(order_id=order_id, variant_id=variant_id, quantity=qty))
    adapter.commit()


def _snapshot(adapter, variant_id, stock, price="10.00", captured_at=NOW, product_type="Shoes", store=STORE):
    adapter.insert_variant_snapshot(store, VariantSnapshotRecord(
        variant_id=variant_id,
        product_id=variant_id * 10,
        price=Decimal(price) if price is not None else None,
        inventory_quantity=stock,
        captured_at=captured_at,
        product_title=f"Product {variant_id}",
        variant_title="Default Title",
        product_type=product_type,
    ))
    adapter.commit()


@pytest.fixture
def service(db, clock):
    return AnalyticsService(db, clock=clock, rule="windowed")


# ────────────────────────────────────────────
# KNOB PARSING
# ────────────────────────────────────────────


class TestConfigParsing:

    def test_defaults(self):
        cfg = AnalyticsConfig.from_params({})
        assert cfg == AnalyticsConfig(
            window_days=120, min_stock=20, inactivity_days=60, discount_pct=-5, max_sales_in_window=1,
        )

    @pytest.mark.parametrize("raw,expected", [
        ("9999", 365),
        (9999, 365),
        ("-5", 120),
        ("10", 30),
        ("abc", 120),
        ("", 120),
        ("inf", 120),
        ("NaN", 120),
        ("45.7", 45),
        ("90", 90),
    ])
    def test_window_days(self, raw, expected):
        assert AnalyticsConfig.from_params({"windowDays": raw}).window_days == expected

    def test_negative_for_non_negative_knob_uses_default(self):
        cfg = AnalyticsConfig.from_params({"minStock": "-3", "maxSalesInWindow": "-1", "inactivityDays": "-30"})
        assert cfg.min_stock == 20
        assert cfg.max_sales_in_window == 1
        assert cfg.inactivity_days == 60

    def test_discount_clamps_both_ways(self):
        assert AnalyticsConfig.from_params({"discountPct": "-80"}).discount_pct == -50
        assert AnalyticsConfig.from_params({"discountPct": "75"}).discount_pct == 50
        assert AnalyticsConfig.from_params({"discountPct": "7.5"}).discount_pct == 7.5
        assert AnalyticsConfig.from_params({"discountPct": "0"}).discount_pct == 0

    def test_upper_clamps(self):
        cfg = AnalyticsConfig.from_params({"minStock": "50000", "maxSalesInWindow": "100", "inactivityDays": "1"})
        assert cfg.min_stock == 10_000
        assert cfg.max_sales_in_window == 50
        assert cfg.inactivity_days == 7

    def test_knobs_echo_query_names(self):
        assert set(AnalyticsConfig().knobs()) == set(OPTION_BOUNDS)


# ────────────────────────────────────────────
# PRICE SUGGESTION
# ────────────────────────────────────────────


class TestPriceSuggestion:

    def test_markdown_rounds_half_up(self):
        assert suggest_price(Decimal("10.00"), -5) == Decimal("9.50")
        assert suggest_price(Decimal("10.10"), -5) == Decimal("9.60")  # 9.595
        assert suggest_price(Decimal("19.99"), -12.5) == Decimal("17.49")  # 17.49125

    def test_missing_or_non_positive_price_has_no_suggestion(self):
        assert suggest_price(None, -5) is None
        assert suggest_price(Decimal("0"), -5) is None
        assert suggest_price(Decimal("-4.00"), -5) is None

    def test_action_type_follows_sign(self):
        assert recommended_action(Decimal("10.00"), -5)["type"] == "price_decrease"
        assert recommended_action(Decimal("10.00"), 10) == {
            "type": "price_increase", "discount_pct": 10, "suggested_price": 11.0,
        }
        assert recommended_action(Decimal("10.00"), 0)["type"] == "no_change"


# ────────────────────────────────────────────
# TOP SELLERS & WINDOW
# ────────────────────────────────────────────


class TestTopSellers:

    def test_window_boundaries(self, adapter, service):
        _sale(adapter, 10, variant_id=1)
        _sale(adapter, 50, variant_id=2)
        _sale(adapter, 200, variant_id=3)

        assert [r["variant_id"] for r in service.top_sellers(STORE, 60)] == [1, 2]
        assert [r["variant_id"] for r in service.top_sellers(STORE, 30)] == [1]
        assert [r["variant_id"] for r in service.top_sellers(STORE, 365)] == [1, 2, 3]

    def test_ordered_by_quantity_then_variant(self, adapter, service):
        _sale(adapter, 1, variant_id=9, qty=4)
        _sale(adapter, 2, variant_id=3, qty=4)
        _sale(adapter, 3, variant_id=5, qty=7)
        _sale(adapter, 4, variant_id=5, qty=1)

        assert service.top_sellers(STORE, 30) == [
            {"variant_id": 5, "qty_sold": 8},
            {"variant_id": 3, "qty_sold": 4},
            {"variant_id": 9, "qty_sold": 4},
        ]

    def test_limited_to_ten(self, adapter, service):
        for vid in range(1, 15):
            _sale(adapter, 1, variant_id=vid, qty=vid)

        top = service.top_sellers(STORE, 30)
        assert len(top) == 10
        assert top[0] == {"variant_id": 14, "qty_sold": 14}

    def test_other_stores_are_invisible(self, adapter, service):
        adapter.upsert_store("other.myshopify.com", "shpat_o")
        _sale(adapter, 1, variant_id=1, qty=5, store="other.myshopify.com")

        assert service.top_sellers(STORE, 30) == []


# ────────────────────────────────────────────
# SLOW MOVERS
# ────────────────────────────────────────────


class TestSlowMovers:

    def test_stale_stocked_variant_included_with_markdown(self, adapter, service):
        _snapshot(adapter, 55, stock=25, price="10.00")
        _sale(adapter, 100, variant_id=55, qty=1)

        cfg = AnalyticsConfig(window_days=60, min_stock=20, inactivity_days=60, discount_pct=-5, max_sales_in_window=1)
        (row,) = service.slow_movers(STORE, cfg)

        assert row.variant_id == 55
        assert row.stock == 25
        assert row.qty_sold_in_window == 0
        assert row.days_since_last_sale == 100
        assert row.recommended_action == {"type": "price_decrease", "discount_pct": -5, "suggested_price": 9.5}

    def test_recent_sale_excludes(self, adapter, service):
        _snapshot(adapter, 55, stock=25)
        _sale(adapter, 20, variant_id=55, qty=1)

        assert service.slow_movers(STORE, AnalyticsConfig()) == []

    def test_sales_ceiling_excludes(self, adapter, service):
        _snapshot(adapter, 55, stock=25)
        _sale(adapter, 90, variant_id=55, qty=2)

        cfg = AnalyticsConfig(window_days=120, inactivity_days=60, max_sales_in_window=1)
        assert service.slow_movers(STORE, cfg) == []
        cfg = AnalyticsConfig(window_days=120, inactivity_days=60, max_sales_in_window=2)
        assert [r.variant_id for r in service.slow_movers(STORE, cfg)] == [55]

    def test_low_stock_excluded_and_negative_stock_is_zero(self, adapter, service):
        _snapshot(adapter, 1, stock=19)
        _snapshot(adapter, 2, stock=-7)

        assert service.slow_movers(STORE, AnalyticsConfig(min_stock=20)) == []
        rows = service.slow_movers(STORE, AnalyticsConfig(min_stock=0))
        assert {r.variant_id: r.stock for r in rows} == {1: 19, 2: 0}

    def test_latest_snapshot_wins(self, adapter, service):
        _snapshot(adapter, 55, stock=40, captured_at=NOW - timedelta(days=2))
        _snapshot(adapter, 55, stock=5, captured_at=NOW - timedelta(days=1))

        assert service.slow_movers(STORE, AnalyticsConfig()) == []

    def test_captured_at_tie_broken_by_id(self, adapter, service):
        _snapshot(adapter, 55, stock=5, captured_at=NOW)
        _snapshot(adapter, 55, stock=40, price="12.00", captured_at=NOW)

        (row,) = service.slow_movers(STORE, AnalyticsConfig())
        assert row.stock == 40
        assert row.current_price == Decimal("12.00")

    def test_never_sold_has_no_days_since(self, adapter, service):
        _snapshot(adapter, 55, stock=30, price=None)

        (row,) = service.slow_movers(STORE, AnalyticsConfig())
        assert row.days_since_last_sale is None
        assert row.last_sold_at is None
        assert row.recommended_action["suggested_price"] is None

    def test_ordering(self, adapter, service):
        # stock 80 first; within stock 50: 200d, 100d, then never-sold by variant id
        _snapshot(adapter, 1, stock=50)
        _sale(adapter, 100, variant_id=1)
        _snapshot(adapter, 2, stock=50)
        _snapshot(adapter, 3, stock=50)
        _sale(adapter, 200, variant_id=3)
        _snapshot(adapter, 4, stock=80)
        _sale(adapter, 70, variant_id=4)
        _snapshot(adapter, 5, stock=50)

        cfg = AnalyticsConfig(window_days=30)
        assert [r.variant_id for r in service.slow_movers(STORE, cfg)] == [4, 3, 1, 2, 5]

    def test_limited_to_one_hundred(self, adapter, service):
        for vid in range(1, 121):
            adapter.insert_variant_snapshot(STORE, VariantSnapshotRecord(
                variant_id=vid, product_id=1, price=Decimal("5.00"), inventory_quantity=100 + vid, captured_at=NOW,
            ))
        adapter.commit()

        rows = service.slow_movers(STORE, AnalyticsConfig())
        assert len(rows) == 100
        assert rows[0].variant_id == 120

    def test_rows_serialize(self, adapter, service):
        _snapshot(adapter, 55, stock=25, price="10.00")
        (row,) = service.slow_movers(STORE, AnalyticsConfig())

        data = row.to_dict()
        assert data["current_price"] == 10.0
        assert data["captured_at"] == NOW.isoformat() + "Z"
        assert data["product_title"] == "Product 55"


# ────────────────────────────────────────────
# RULES
# ────────────────────────────────────────────


class TestRules:
    cfg = AnalyticsConfig(min_stock=20, inactivity_days=60, max_sales_in_window=1)

    def test_windowed_rule(self):
        assert windowed(VariantFacts(stock=25, qty_sold_in_window=0, days_since_last_sale=100), self.cfg)
        assert windowed(VariantFacts(stock=25, qty_sold_in_window=1, days_since_last_sale=60), self.cfg)
        assert windowed(VariantFacts(stock=25, qty_sold_in_window=0, days_since_last_sale=None), self.cfg)
        assert not windowed(VariantFacts(stock=25, qty_sold_in_window=2, days_since_last_sale=100), self.cfg)
        assert not windowed(VariantFacts(stock=25, qty_sold_in_window=0, days_since_last_sale=59), self.cfg)
        assert not windowed(VariantFacts(stock=19, qty_sold_in_window=0, days_since_last_sale=None), self.cfg)

    def test_stock_no_sales_rule(self):
        assert stock_no_sales(VariantFacts(stock=25, qty_sold_in_window=0, days_since_last_sale=5), self.cfg)
        assert not stock_no_sales(VariantFacts(stock=25, qty_sold_in_window=1, days_since_last_sale=90), self.cfg)

    def test_gift_cards_excluded_by_v3(self):
        facts = VariantFacts(stock=25, qty_sold_in_window=0, days_since_last_sale=None, is_gift_card=True)
        assert windowed(facts, self.cfg)
        assert not windowed_no_gift_cards(facts, self.cfg)

    @pytest.mark.parametrize("product_type,expected", [
        ("Gift Card", True),
        ("giftcard", True),
        (" GIFT CARD ", True),
        ("Gift Wrap", False),
        (None, False),
    ])
    def test_gift_card_detection(self, product_type, expected):
        assert is_gift_card(product_type) is expected

    def test_registry(self):
        assert get_rule() is windowed
        assert get_rule("stock_no_sales") is stock_no_sales
        with pytest.raises(ConfigurationError):
            get_rule("v9")

    def test_unknown_rule_rejected_at_construction(self, db, clock):
        with pytest.raises(ConfigurationError):
            AnalyticsService(db, clock=clock, rule="aggressive")

    def test_service_applies_configured_rule(self, adapter, db, clock):
        _snapshot(adapter, 1, stock=30, product_type="Gift Card")
        _snapshot(adapter, 2, stock=30)

        v2 = AnalyticsService(db, clock=clock, rule="windowed")
        v3 = AnalyticsService(db, clock=clock, rule="windowed_no_gift_cards")
        assert [r.variant_id for r in v2.slow_movers(STORE, AnalyticsConfig())] == [1, 2]
        assert [r.variant_id for r in v3.slow_movers(STORE, AnalyticsConfig())] == [2]


# ────────────────────────────────────────────
# CAPABILITIES, METRICS & PAYLOAD
# ────────────────────────────────────────────


def test_missing_enrichment_columns_are_not_selected(adapter, db, clock):
    _snapshot(adapter, 1, stock=30, product_type="Gift Card")
    bare = SchemaCapabilities(has_product_title=False, has_variant_title=False, has_product_type=False)

    service = AnalyticsService(db, capabilities=bare, clock=clock, rule="windowed_no_gift_cards")
    (row,) = service.slow_movers(STORE, AnalyticsConfig())

    assert row.product_title is None
    assert row.product_type is None


def test_probe_reports_full_schema(db, clock):
    service = AnalyticsService(db, clock=clock)
    assert service.capabilities == SchemaCapabilities(True, True, True)


def test_metrics(adapter, service):
    _sale(adapter, 5, variant_id=1)
    _sale(adapter, 6, variant_id=1)
    _sale(adapter, 300, variant_id=2)
    _snapshot(adapter, 1, stock=3)
    _snapshot(adapter, 1, stock=2, captured_at=NOW + timedelta(minutes=1))

    assert service.metrics(STORE, 30) == {
        "orders_in_db": 3,
        "unique_variants_sold_window": 1,
        "variant_snapshots_total": 2,
    }


def test_get_analytics_payload(adapter, db, service):
    _snapshot(adapter, 55, stock=25)
    before = (db.query(OrderItem).count(), db.query(VariantSnapshot).count())

    payload = service.get_analytics(STORE, AnalyticsConfig.from_params({"windowDays": "9999"}))

    assert payload["store_id"] == STORE
    assert payload["meta"]["window_days"] == 365
    assert payload["meta"]["rule"] == "windowed"
    assert payload["meta"]["bounds"]["windowDays"] == {"min": 30, "max": 365, "default": 120}
    assert payload["meta"]["knobs"]["discountPct"] == -5
    assert [r["variant_id"] for r in payload["slow_movers"]] == [55]
    assert payload["top_sellers"] == []
    # Reads never write
    assert (db.query(OrderItem).count(), db.query(VariantSnapshot).count()) == before


# ────────────────────────────────────────────
# RECOMMENDATIONS
# ────────────────────────────────────────────


class TestRecommendations:

    def _seed(self, adapter):
        _snapshot(adapter, 1, stock=50)        # popular, healthy stock
        _sale(adapter, 5, variant_id=1, qty=4)
        _snapshot(adapter, 2, stock=30)        # never sold, slow mover
        _snapshot(adapter, 3, stock=2)         # almost gone, still selling
        _sale(adapter, 3, variant_id=3)
        _snapshot(adapter, 4, stock=15)        # nothing to say
        _sale(adapter, 4, variant_id=4, qty=2)
        _snapshot(adapter, 5, stock=50, price="0.00")
        _snapshot(adapter, 6, stock=11)
        _sale(adapter, 10, variant_id=6, qty=3)
        _snapshot(adapter, 7, stock=10)        # stock must be strictly above 10
        _sale(adapter, 10, variant_id=7, qty=5)

    def test_kinds_and_ordering(self, adapter, service):
        self._seed(adapter)

        recs = service.recommendations(STORE, AnalyticsConfig())

        assert [(r["variant_id"], r["type"]) for r in recs] == [
            (1, "price_increase"),
            (6, "price_increase"),
            (3, "restock_alert"),
            (2, "price_decrease"),
        ]

    def test_price_suggestions(self, adapter, service):
        self._seed(adapter)

        by_id = {r["variant_id"]: r for r in service.recommendations(STORE, AnalyticsConfig())}

        assert by_id[1]["discount_pct"] == 5
        assert by_id[1]["suggested_price"] == 10.5
        assert by_id[2]["discount_pct"] == -5
        assert by_id[2]["suggested_price"] == 9.5
        assert by_id[3]["suggested_price"] is None
        assert by_id[3]["qty_sold_in_window"] == 1
        assert "stockout" in by_id[3]["rationale"]

    def test_markdown_follows_configured_knobs(self, adapter, service):
        _snapshot(adapter, 2, stock=30)
        cfg = AnalyticsConfig.from_params({"discountPct": "-20", "minStock": "40"})

        assert service.recommendations(STORE, cfg) == []

        cfg = AnalyticsConfig.from_params({"discountPct": "-20"})
        (rec,) = service.recommendations(STORE, cfg)
        assert rec["suggested_price"] == 8.0

    def test_sales_outside_window_do_not_count(self, adapter, service):
        _snapshot(adapter, 1, stock=50)
        _sale(adapter, 200, variant_id=1, qty=9)

        (rec,) = service.recommendations(STORE, AnalyticsConfig())

        # Stale sales: markdown, not a price increase
        assert rec["type"] == "price_decrease"
        assert rec["qty_sold_in_window"] == 0


# ────────────────────────────────────────────
# END TO END
# ────────────────────────────────────────────


def test_sync_then_analytics(adapter, db, clock):
    """One page of two orders plus one snapshot, then both reports."""
    pages = {
        "orders": [[
            make_order(1, NOW - timedelta(days=2), [(55, 3)]),
            make_order(2, NOW - timedelta(days=1), []),
        ]],
        "products": [[make_product(7, [(55, "10.00", 30)])]],
    }
    engine = SyncEngine(
        adapter,
        client_factory=lambda store_id, credential: FakeShopifyClient(pages),
        settings=Settings(),
        clock=clock,
    )
    assert asyncio.run(engine.run_sync(STORE, "orders")).status == "completed"
    assert asyncio.run(engine.run_sync(STORE, "variants")).status == "completed"

    service = AnalyticsService(db, clock=clock)
    assert service.top_sellers(STORE, 30) == [{"variant_id": 55, "qty_sold": 3}]

    cfg = AnalyticsConfig.from_params({"minStock": "20", "maxSalesInWindow": "1", "inactivityDays": "60"})
    assert service.slow_movers(STORE, cfg) == []
