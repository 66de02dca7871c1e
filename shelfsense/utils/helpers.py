"""
Helper utilities
"""
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

import pytz
from dateutil import parser as date_parser

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention)"""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def calculate_date_range(days: int, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Calculate a trailing window ending at now"""
    end_date = now or utcnow()
    start_date = end_date - timedelta(days=days)
    return start_date, end_date


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into naive UTC.

    Shopify sends ISO-8601 with the shop's offset (2024-05-01T10:00:00-04:00);
    naive inputs are assumed to already be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (ValueError, TypeError, OverflowError):
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(pytz.UTC).replace(tzinfo=None)
    return dt


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a money value; None when missing, non-numeric or non-finite"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def to_int(value: Any) -> Optional[int]:
    """Parse an integral quantity; None when it isn't one"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite() or amount != amount.to_integral_value():
        return None
    return int(amount)


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half up"""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a Z suffix for naive UTC values"""
    if value is None:
        return None
    return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()
