from __future__ import annotations

import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from possync.money import to_decimal
from possync.time_utils import coerce_utc_datetime


# Largest amounts a client may send, bounded by what the money columns store:
# USD is Numeric(12,2), KHR is Numeric(16,2).
MAX_AMOUNT_USD = Decimal("9999999999.99")
MAX_AMOUNT_KHR = Decimal("99999999999999.99")

# Per-line quantity cap; sale_items.quantity is a 32-bit integer.
MAX_QUANTITY = 9999


class ValidationError(ValueError):
    """400-level input problem."""


def reject_unknown_keys(payload: dict, allowed: Iterable[str]) -> None:
    """Strict objects: any key outside `allowed` is an error."""
    allowed = set(allowed)
    for k in payload.keys():
        if k not in allowed:
            raise ValidationError(f"Unknown field: {k}")


def require_dict(value: Any, name: str = "payload") -> dict:
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return value


def require_uuid(value: Any, name: str) -> str:
    """UUID in canonical lowercase string form."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a UUID string")
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        raise ValidationError(f"{name} must be a UUID string")


def optional_uuid(value: Any, name: str) -> str | None:
    if value is None:
        return None
    return require_uuid(value, name)


def require_int(value: Any, name: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integers: bools, floats with a fraction, and numeric strings are rejected.
    A JSON float such as 2.0 is accepted as 2.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{name} must be an integer, not a decimal")
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return value


def require_amount(value: Any, name: str, *, maximum: Decimal = MAX_AMOUNT_USD) -> Decimal:
    """Non-negative JSON number converted to Decimal. Defaults to the USD ceiling."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    amount = to_decimal(value)
    if amount < 0:
        raise ValidationError(f"{name} must be >= 0")
    if amount > maximum:
        raise ValidationError(f"{name} exceeds maximum {maximum}")
    return amount


def optional_amount(value: Any, name: str, *, maximum: Decimal = MAX_AMOUNT_USD) -> Decimal | None:
    if value is None:
        return None
    return require_amount(value, name, maximum=maximum)


def require_choice(value: Any, name: str, choices: Iterable[str]) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(f"{name} must be one of: {', '.join(choices)}")
    return value


def optional_text(value: Any, name: str, *, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if len(value) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}")
    return value


def require_text(value: Any, name: str, *, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}")
    return value


def optional_datetime(value: Any, name: str) -> datetime | None:
    """ISO-8601 string (or datetime) normalized to UTC-naive."""
    if value is None or isinstance(value, datetime):
        return coerce_utc_datetime(value)
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be an ISO-8601 datetime")
    try:
        return coerce_utc_datetime(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")
