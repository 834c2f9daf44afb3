"""
Offline sync operation payloads.

Each operation type has one strict payload shape. `decode_operation` turns the
raw JSON payload into its typed variant once, so appliers never re-validate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from possync.domain.sale import PAYMENT_METHODS
from possync.validation import (
    MAX_AMOUNT_KHR,
    MAX_QUANTITY,
    ValidationError,
    optional_amount,
    optional_datetime,
    optional_text,
    optional_uuid,
    reject_unknown_keys,
    require_amount,
    require_choice,
    require_dict,
    require_int,
    require_text,
    require_uuid,
)


SALE_FINALIZED = "SALE_FINALIZED"
CASH_SESSION_OPENED = "CASH_SESSION_OPENED"
CASH_SESSION_CLOSED = "CASH_SESSION_CLOSED"
OPERATION_TYPES = (SALE_FINALIZED, CASH_SESSION_OPENED, CASH_SESSION_CLOSED)

NOTE_MAX_LENGTH = 500


class PayloadError(ValidationError):
    """Operation payload could not be decoded. `code` is the sync error code."""

    def __init__(self, message: str, code: str = "VALIDATION_FAILED", details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


@dataclass(frozen=True)
class ModifierInput:
    modifier_group_id: str
    modifier_option_id: str
    price_adjustment_usd: Decimal = Decimal("0")


@dataclass(frozen=True)
class SaleLineInput:
    menu_item_id: str
    quantity: int
    modifiers: tuple[ModifierInput, ...] = ()


@dataclass(frozen=True)
class CashAmount:
    usd: Optional[Decimal] = None
    khr: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleFinalizedPayload:
    client_sale_uuid: str
    sale_type: str
    items: tuple[SaleLineInput, ...]
    tender_currency: str
    payment_method: str
    cash_received: Optional[CashAmount] = None


@dataclass(frozen=True)
class CashSessionOpenedPayload:
    register_id: Optional[str]
    opening_float_usd: Decimal
    opening_float_khr: Decimal
    note: Optional[str] = None


@dataclass(frozen=True)
class CashSessionClosedPayload:
    session_id: str
    counted_cash_usd: Decimal
    counted_cash_khr: Decimal
    note: Optional[str] = None


OperationPayload = Union[SaleFinalizedPayload, CashSessionOpenedPayload, CashSessionClosedPayload]


@dataclass(frozen=True)
class OperationInput:
    """One entry of a sync batch, as submitted by the client."""
    client_op_id: str
    type: str
    payload: Any
    occurred_at: Optional[datetime] = None
    branch_id: Optional[str] = None


# =============================================================================
# DECODERS
# =============================================================================

def _decode_modifier(raw: Any) -> ModifierInput:
    raw = require_dict(raw, "modifier")
    reject_unknown_keys(raw, ("modifier_group_id", "modifier_option_id", "price_adjustment_usd"))
    return ModifierInput(
        modifier_group_id=require_uuid(raw.get("modifier_group_id"), "modifier_group_id"),
        modifier_option_id=require_uuid(raw.get("modifier_option_id"), "modifier_option_id"),
        price_adjustment_usd=optional_amount(raw.get("price_adjustment_usd"), "price_adjustment_usd") or Decimal("0"),
    )


def _decode_line(raw: Any) -> SaleLineInput:
    raw = require_dict(raw, "item")
    reject_unknown_keys(raw, ("menu_item_id", "quantity", "modifiers"))
    modifiers = raw.get("modifiers")
    if modifiers is None:
        modifiers = []
    if not isinstance(modifiers, list):
        raise ValidationError("modifiers must be a list")
    return SaleLineInput(
        menu_item_id=require_uuid(raw.get("menu_item_id"), "menu_item_id"),
        quantity=require_int(raw.get("quantity"), "quantity", minimum=1, maximum=MAX_QUANTITY),
        modifiers=tuple(_decode_modifier(m) for m in modifiers),
    )


def _decode_sale_finalized(payload: dict) -> SaleFinalizedPayload:
    reject_unknown_keys(payload, (
        "client_sale_uuid", "sale_type", "items", "tender_currency", "payment_method", "cash_received",
    ))
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    cash_received = None
    raw_cash = payload.get("cash_received")
    if raw_cash is not None:
        raw_cash = require_dict(raw_cash, "cash_received")
        reject_unknown_keys(raw_cash, ("usd", "khr"))
        cash_received = CashAmount(
            usd=optional_amount(raw_cash.get("usd"), "cash_received.usd"),
            khr=optional_amount(raw_cash.get("khr"), "cash_received.khr", maximum=MAX_AMOUNT_KHR),
        )

    return SaleFinalizedPayload(
        client_sale_uuid=require_uuid(payload.get("client_sale_uuid"), "client_sale_uuid"),
        sale_type=require_choice(payload.get("sale_type"), "sale_type", ("dine_in", "take_away", "delivery")),
        items=tuple(_decode_line(i) for i in items),
        tender_currency=require_choice(payload.get("tender_currency"), "tender_currency", ("KHR", "USD")),
        payment_method=require_choice(payload.get("payment_method"), "payment_method", PAYMENT_METHODS),
        cash_received=cash_received,
    )


def _decode_cash_session_opened(payload: dict) -> CashSessionOpenedPayload:
    reject_unknown_keys(payload, ("register_id", "opening_float_usd", "opening_float_khr", "note"))
    return CashSessionOpenedPayload(
        register_id=optional_uuid(payload.get("register_id"), "register_id"),
        opening_float_usd=require_amount(payload.get("opening_float_usd"), "opening_float_usd"),
        opening_float_khr=require_amount(payload.get("opening_float_khr"), "opening_float_khr", maximum=MAX_AMOUNT_KHR),
        note=optional_text(payload.get("note"), "note", max_length=NOTE_MAX_LENGTH),
    )


def _decode_cash_session_closed(payload: dict) -> CashSessionClosedPayload:
    reject_unknown_keys(payload, ("session_id", "counted_cash_usd", "counted_cash_khr", "note"))
    return CashSessionClosedPayload(
        session_id=require_uuid(payload.get("session_id"), "session_id"),
        counted_cash_usd=require_amount(payload.get("counted_cash_usd"), "counted_cash_usd"),
        counted_cash_khr=require_amount(payload.get("counted_cash_khr"), "counted_cash_khr", maximum=MAX_AMOUNT_KHR),
        note=optional_text(payload.get("note"), "note", max_length=NOTE_MAX_LENGTH),
    )


_DECODERS = {
    SALE_FINALIZED: _decode_sale_finalized,
    CASH_SESSION_OPENED: _decode_cash_session_opened,
    CASH_SESSION_CLOSED: _decode_cash_session_closed,
}


def decode_operation(op_type: str, payload: Any) -> OperationPayload:
    """
    Decode a raw payload into the typed variant for `op_type`.

    Raises PayloadError: NOT_IMPLEMENTED for unknown types, VALIDATION_FAILED
    ("Invalid <TYPE> payload") for any shape violation.
    """
    decoder = _DECODERS.get(op_type)
    if decoder is None:
        raise PayloadError(f"Unsupported operation type: {op_type}", code="NOT_IMPLEMENTED")

    try:
        return decoder(require_dict(payload))
    except ValidationError as exc:
        raise PayloadError(f"Invalid {op_type} payload", details=str(exc)) from exc


def parse_operation_input(raw: Any) -> OperationInput:
    """
    Validate one batch entry envelope. The payload itself stays raw; it is
    decoded inside the apply transaction so a bad payload becomes a recorded
    failure, not a rejected request.
    """
    raw = require_dict(raw, "operation")
    reject_unknown_keys(raw, ("client_op_id", "type", "payload", "occurred_at", "branch_id"))
    return OperationInput(
        client_op_id=require_uuid(raw.get("client_op_id"), "client_op_id"),
        type=require_text(raw.get("type"), "type", max_length=64),
        payload=raw.get("payload"),
        occurred_at=optional_datetime(raw.get("occurred_at"), "occurred_at"),
        branch_id=optional_uuid(raw.get("branch_id"), "branch_id"),
    )


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one operation in a batch (fresh or replayed)."""
    client_op_id: str
    type: str
    status: str  # APPLIED, FAILED
    deduped: bool = False
    result: Optional[dict] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "client_op_id": self.client_op_id,
            "type": self.type,
            "status": self.status,
            "deduped": self.deduped,
        }
        if self.status == "APPLIED":
            data["result"] = self.result
        else:
            data["error"] = {"code": self.error_code, "message": self.error_message}
        return data
