# Overview: Decimal helpers for USD/KHR amounts and JSON-safe conversion of payloads.

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from possync.time_utils import to_utc_z

TWOPLACES = Decimal("0.01")
ONE = Decimal("1")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def new_id() -> str:
    """Generated primary key (uuid4 string)."""
    return str(uuid.uuid4())


def to_decimal(v: Any) -> Decimal:
    """
    Convert ints, strings, floats and Decimals to Decimal.

    Floats go through str() so 1.5 becomes Decimal("1.5") rather than its
    binary expansion.
    """
    if isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise TypeError("boolean is not a monetary amount")
    if v is None:
        return ZERO
    try:
        return Decimal(str(v))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {v!r}") from exc


def round_usd(v: Any) -> Decimal:
    """USD amount rounded to cents (half up)."""
    return to_decimal(v).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def round_khr(v: Any) -> int:
    """KHR amount rounded to a whole riel (half up)."""
    return int(to_decimal(v).quantize(ONE, rounding=ROUND_HALF_UP))


def to_json_number(v: Any) -> int | float | None:
    """Decimal -> int when integral, else float. Used for event and audit payloads."""
    if v is None:
        return None
    d = to_decimal(v)
    if d == d.to_integral_value():
        return int(d)
    return float(d)


def json_safe(value: Any) -> Any:
    """Recursively convert Decimals and datetimes so the value can be stored in a JSON column."""
    if isinstance(value, Decimal):
        return to_json_number(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
