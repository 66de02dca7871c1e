"""
Slow-mover rules

Each rule is a pure predicate over one variant's facts and the caller's
config. Rules are registered by name so a store can stay pinned to an older
definition while a newer one is evaluated side by side.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shelfsense.exceptions import ConfigurationError

GIFT_CARD_TYPES = {"gift card", "giftcard"}


@dataclass(frozen=True)
class VariantFacts:
    stock: int
    qty_sold_in_window: int
    days_since_last_sale: Optional[int]  # None = never sold
    is_gift_card: bool = False


def is_gift_card(product_type: Optional[str]) -> bool:
    return (product_type or "").strip().lower() in GIFT_CARD_TYPES


# v1: stocked and nothing sold in the window
def stock_no_sales(facts: VariantFacts, cfg) -> bool:
    return facts.stock >= cfg.min_stock and facts.qty_sold_in_window == 0


# v2: tolerate a trickle of sales as long as the last one is old enough
def windowed(facts: VariantFacts, cfg) -> bool:
    if facts.stock < cfg.min_stock:
        return False
    if facts.qty_sold_in_window > cfg.max_sales_in_window:
        return False
    return facts.days_since_last_sale is None or facts.days_since_last_sale >= cfg.inactivity_days


# v3: gift cards are never discounted
def windowed_no_gift_cards(facts: VariantFacts, cfg) -> bool:
    return not facts.is_gift_card and windowed(facts, cfg)


RULES: Dict[str, Callable[[VariantFacts, object], bool]] = {
    "stock_no_sales": stock_no_sales,
    "windowed": windowed,
    "windowed_no_gift_cards": windowed_no_gift_cards,
}

DEFAULT_RULE = "windowed"


def get_rule(name: Optional[str] = None) -> Callable[[VariantFacts, object], bool]:
    """Look up a rule by name; raises ConfigurationError for unknown names"""
    key = name or DEFAULT_RULE
    if key not in RULES:
        raise ConfigurationError(
            f"Unknown slow mover rule: {key} (expected one of {', '.join(sorted(RULES))})"
        )
    return RULES[key]
