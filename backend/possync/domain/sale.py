"""
Sale aggregate: lifecycle state machine and monetary recalculation.

Every value here is an immutable snapshot. Transitions take a Sale and return
a new Sale; nothing touches the database. Totals are never patched
incrementally: each mutation rebuilds them through `recalculate`, which is a
pure function of the sale's inputs (items, discounts, VAT, FX rate, tender
and rounding settings, cash received).

LIFECYCLE:
- draft: cart, mutable
- finalized: committed contents and totals
- voided: finalized sale cancelled (same-day rule enforced by the service)
- reopened: finalized sale superseded by a new draft (ref_previous_sale_id)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from possync.money import HUNDRED, ZERO, new_id, round_khr, round_usd, to_decimal
from possync.time_utils import utcnow
from possync.validation import MAX_QUANTITY


SALE_TYPES = ("dine_in", "take_away", "delivery")
SALE_STATES = ("draft", "finalized", "voided", "reopened")
PAYMENT_METHODS = ("cash", "qr")
TENDER_CURRENCIES = ("KHR", "USD")
FULFILLMENT_STATUSES = ("in_prep", "ready", "delivered", "cancelled")
DISCOUNT_TYPES = ("percentage", "fixed")
ROUNDING_MODES = ("NEAREST", "UP", "DOWN")


class SaleError(Exception):
    """Raised when a sale transition violates lifecycle or input rules."""


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class SaleItemModifier:
    modifier_group_id: str
    modifier_option_id: str
    modifier_group_name: str = ""
    modifier_option_label: str = ""
    price_adjustment_usd: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "modifier_group_id": self.modifier_group_id,
            "modifier_option_id": self.modifier_option_id,
            "modifier_group_name": self.modifier_group_name,
            "modifier_option_label": self.modifier_option_label,
            "price_adjustment_usd": str(self.price_adjustment_usd),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SaleItemModifier":
        return cls(
            modifier_group_id=data["modifier_group_id"],
            modifier_option_id=data["modifier_option_id"],
            modifier_group_name=data.get("modifier_group_name") or "",
            modifier_option_label=data.get("modifier_option_label") or "",
            price_adjustment_usd=to_decimal(data.get("price_adjustment_usd") or 0),
        )


@dataclass(frozen=True)
class Discount:
    """Percentage (0-100) or fixed USD amount."""
    type: str
    amount: Decimal
    policy_id: Optional[str] = None


@dataclass(frozen=True)
class DiscountPolicy:
    id: str
    type: str
    value: Decimal


@dataclass(frozen=True)
class RoundingPolicy:
    """
    KHR cash rounding.

    mode: NEAREST (half up), UP (ceiling) or DOWN (floor)
    granularity: riel step, e.g. 100
    """
    enabled: bool = True
    mode: str = "NEAREST"
    granularity: int = 100


@dataclass(frozen=True)
class SaleItem:
    id: str
    sale_id: str
    menu_item_id: str
    menu_item_name: str
    unit_price_usd: Decimal
    unit_price_khr: int
    quantity: int
    modifiers: tuple[SaleItemModifier, ...] = ()
    line_discount: Optional[Discount] = None
    line_total_usd: Decimal = ZERO
    line_total_khr: int = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Sale:
    id: str
    client_uuid: str
    tenant_id: str
    branch_id: str
    employee_id: str
    sale_type: str
    fx_rate_used: Decimal
    state: str = "draft"
    ref_previous_sale_id: Optional[str] = None
    items: tuple[SaleItem, ...] = ()

    # VAT (rate is a fraction: 0.10 == 10%)
    vat_enabled: bool = False
    vat_rate: Decimal = ZERO
    vat_amount_usd: Decimal = ZERO
    vat_amount_khr: int = 0

    # Discounts
    order_discount: Optional[Discount] = None
    applied_policy_ids: tuple[str, ...] = ()
    policy_stale: bool = False  # priced from config defaults, no branch policy row

    # Totals
    subtotal_usd: Decimal = ZERO
    subtotal_khr: int = 0
    total_usd: Decimal = ZERO
    total_khr: int = 0

    # Tender & rounding
    tender_currency: str = "USD"
    khr_rounding_applied: bool = False
    rounding_policy: RoundingPolicy = field(default_factory=lambda: RoundingPolicy(enabled=False))
    total_khr_rounded: Optional[int] = None
    rounding_delta_khr: Optional[int] = None

    # Payment
    payment_method: str = "cash"
    cash_received_usd: Optional[Decimal] = None
    cash_received_khr: Optional[int] = None
    change_given_usd: Optional[Decimal] = None
    change_given_khr: Optional[int] = None

    fulfillment_status: str = "in_prep"
    void_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    in_prep_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def find_item(self, item_id: str) -> Optional[SaleItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


# =============================================================================
# RECALCULATION ENGINE
# =============================================================================

def _apply_discount(
    amount_usd: Decimal,
    amount_khr: Decimal,
    discount: Optional[Discount],
    fx_rate: Decimal,
) -> tuple[Decimal, Decimal]:
    if discount is None:
        return amount_usd, amount_khr

    if discount.type == "percentage":
        multiplier = (HUNDRED - discount.amount) / HUNDRED
        return amount_usd * multiplier, amount_khr * multiplier

    if discount.type == "fixed":
        return (
            max(ZERO, amount_usd - discount.amount),
            max(ZERO, amount_khr - discount.amount * fx_rate),
        )

    return amount_usd, amount_khr


def _modifier_total_usd(item: SaleItem) -> Decimal:
    return sum((m.price_adjustment_usd for m in item.modifiers), ZERO)


def item_base_totals(item: SaleItem, fx_rate: Decimal) -> tuple[Decimal, int]:
    """Undiscounted line totals (unit price plus modifiers, times quantity)."""
    modifier_usd = _modifier_total_usd(item)
    modifier_khr = round_khr(modifier_usd * fx_rate)
    base_usd = (item.unit_price_usd + modifier_usd) * item.quantity
    base_khr = (item.unit_price_khr + modifier_khr) * item.quantity
    return base_usd, base_khr


def recalculate_item(item: SaleItem, fx_rate: Decimal) -> SaleItem:
    base_usd, base_khr = item_base_totals(item, fx_rate)
    total_usd, total_khr = _apply_discount(base_usd, Decimal(base_khr), item.line_discount, fx_rate)
    return replace(
        item,
        line_total_usd=round_usd(total_usd),
        line_total_khr=round_khr(total_khr),
    )


def round_khr_total(amount_khr: int, policy: RoundingPolicy) -> int:
    """Round a riel total to the policy granularity."""
    granularity = int(policy.granularity or 0)
    if granularity <= 0:
        return amount_khr

    steps = Decimal(amount_khr) / Decimal(granularity)
    if policy.mode == "UP":
        steps = steps.to_integral_value(rounding=ROUND_CEILING)
    elif policy.mode == "DOWN":
        steps = steps.to_integral_value(rounding=ROUND_FLOOR)
    else:
        steps = steps.to_integral_value(rounding=ROUND_HALF_UP)
    return int(steps) * granularity


def _change_due(sale: Sale) -> tuple[Optional[Decimal], Optional[int]]:
    if sale.payment_method != "cash":
        return None, None

    if sale.tender_currency == "KHR":
        if sale.cash_received_khr is None:
            return None, None
        due = sale.total_khr_rounded if sale.total_khr_rounded is not None else sale.total_khr
        return None, max(0, sale.cash_received_khr - due)

    if sale.cash_received_usd is None:
        return None, None
    return max(ZERO, round_usd(sale.cash_received_usd - sale.total_usd)), None


def recalculate(sale: Sale) -> Sale:
    """
    Rebuild every derived amount on the sale.

    Pure and idempotent: recalculate(recalculate(s)) == recalculate(s).
    Does not touch timestamps.
    """
    fx = sale.fx_rate_used
    items = tuple(recalculate_item(item, fx) for item in sale.items)

    subtotal_usd = sum((item.line_total_usd for item in items), ZERO)
    subtotal_khr = sum(item.line_total_khr for item in items)

    discounted_usd, discounted_khr = _apply_discount(
        subtotal_usd, Decimal(subtotal_khr), sale.order_discount, fx
    )
    discounted_usd = round_usd(discounted_usd)
    discounted_khr = round_khr(discounted_khr)

    if sale.vat_enabled:
        vat_usd = round_usd(discounted_usd * sale.vat_rate)
        vat_khr = round_khr(discounted_khr * sale.vat_rate)
    else:
        vat_usd = round_usd(ZERO)
        vat_khr = 0

    total_usd = round_usd(discounted_usd + vat_usd)
    total_khr = discounted_khr + vat_khr

    if sale.tender_currency == "KHR" and sale.khr_rounding_applied:
        total_khr_rounded = round_khr_total(total_khr, sale.rounding_policy)
    else:
        total_khr_rounded = total_khr

    updated = replace(
        sale,
        items=items,
        subtotal_usd=round_usd(subtotal_usd),
        subtotal_khr=subtotal_khr,
        vat_amount_usd=vat_usd,
        vat_amount_khr=vat_khr,
        total_usd=total_usd,
        total_khr=total_khr,
        total_khr_rounded=total_khr_rounded,
        rounding_delta_khr=total_khr_rounded - total_khr,
    )

    change_usd, change_khr = _change_due(updated)
    return replace(updated, change_given_usd=change_usd, change_given_khr=change_khr)


# =============================================================================
# DISCOUNT POLICY SELECTION
# =============================================================================

def policy_discount_amount(policy: DiscountPolicy, base_amount_usd: Decimal) -> Decimal:
    if policy.type == "percentage":
        return base_amount_usd * policy.value / HUNDRED
    return policy.value


def find_best_policy(
    policies: Sequence[DiscountPolicy],
    base_amount_usd: Decimal,
) -> Optional[DiscountPolicy]:
    """
    Pick the policy with the largest absolute discount on `base_amount_usd`.
    Ties keep the first policy seen.
    """
    best = None
    best_amount = None
    for policy in policies:
        amount = policy_discount_amount(policy, base_amount_usd)
        if best is None or amount > best_amount:
            best, best_amount = policy, amount
    return best


# =============================================================================
# TRANSITIONS
# =============================================================================

def _require_draft(sale: Sale, message: str) -> None:
    if sale.state != "draft":
        raise SaleError(message)


def _validate_discount(discount_type: str, amount: Decimal) -> None:
    if discount_type not in DISCOUNT_TYPES:
        raise SaleError(f"Unknown discount type: {discount_type}")
    if amount < 0:
        raise SaleError("Discount amount must be >= 0")
    if discount_type == "percentage" and amount > HUNDRED:
        raise SaleError("Percentage discount cannot exceed 100")


def create_draft_sale(
    *,
    client_uuid: str,
    tenant_id: str,
    branch_id: str,
    employee_id: str,
    sale_type: str,
    fx_rate_used,
    policy_stale: bool = False,
    sale_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Sale:
    if sale_type not in SALE_TYPES:
        raise SaleError(f"Unknown sale type: {sale_type}")
    fx = to_decimal(fx_rate_used)
    if fx <= 0:
        raise SaleError("FX rate must be positive")

    now = now or utcnow()
    return recalculate(Sale(
        id=sale_id or new_id(),
        client_uuid=client_uuid,
        tenant_id=tenant_id,
        branch_id=branch_id,
        employee_id=employee_id,
        sale_type=sale_type,
        fx_rate_used=fx,
        policy_stale=policy_stale,
        created_at=now,
        updated_at=now,
    ))


def add_item(
    sale: Sale,
    *,
    menu_item_id: str,
    menu_item_name: str,
    unit_price_usd,
    quantity: int,
    modifiers: Iterable[SaleItemModifier] = (),
    item_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Sale, SaleItem]:
    """Add a line priced in USD; the KHR unit price is locked from the sale's FX rate."""
    _require_draft(sale, "Cannot add items to non-draft sale")
    if quantity < 1 or quantity > MAX_QUANTITY:
        raise SaleError(f"Quantity must be between 1 and {MAX_QUANTITY}")

    now = now or utcnow()
    price_usd = to_decimal(unit_price_usd)
    item = SaleItem(
        id=item_id or new_id(),
        sale_id=sale.id,
        menu_item_id=menu_item_id,
        menu_item_name=menu_item_name,
        unit_price_usd=price_usd,
        unit_price_khr=round_khr(price_usd * sale.fx_rate_used),
        quantity=quantity,
        modifiers=tuple(modifiers),
        created_at=now,
    )
    updated = recalculate(replace(sale, items=sale.items + (item,), updated_at=now))
    return updated, updated.find_item(item.id)


def remove_item(sale: Sale, item_id: str, *, now: Optional[datetime] = None) -> Sale:
    _require_draft(sale, "Cannot remove items from non-draft sale")
    if sale.find_item(item_id) is None:
        raise SaleError("Item not found")
    items = tuple(i for i in sale.items if i.id != item_id)
    return recalculate(replace(sale, items=items, updated_at=now or utcnow()))


def update_item_quantity(sale: Sale, item_id: str, quantity: int, *, now: Optional[datetime] = None) -> Sale:
    _require_draft(sale, "Cannot update quantities in non-draft sale")
    if quantity < 1 or quantity > MAX_QUANTITY:
        raise SaleError(f"Quantity must be between 1 and {MAX_QUANTITY}")
    if sale.find_item(item_id) is None:
        raise SaleError("Item not found")
    items = tuple(replace(i, quantity=quantity) if i.id == item_id else i for i in sale.items)
    return recalculate(replace(sale, items=items, updated_at=now or utcnow()))


def apply_line_discount(
    sale: Sale,
    item_id: str,
    discount_type: str,
    amount,
    policy_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Sale:
    amount = to_decimal(amount)
    _validate_discount(discount_type, amount)
    if sale.find_item(item_id) is None:
        raise SaleError("Item not found")

    discount = Discount(type=discount_type, amount=amount, policy_id=policy_id)
    items = tuple(replace(i, line_discount=discount) if i.id == item_id else i for i in sale.items)
    return recalculate(replace(sale, items=items, updated_at=now or utcnow()))


def apply_order_discount(
    sale: Sale,
    discount_type: str,
    amount,
    policy_ids: Iterable[str] = (),
    *,
    now: Optional[datetime] = None,
) -> Sale:
    amount = to_decimal(amount)
    _validate_discount(discount_type, amount)
    return recalculate(replace(
        sale,
        order_discount=Discount(type=discount_type, amount=amount),
        applied_policy_ids=tuple(policy_ids),
        updated_at=now or utcnow(),
    ))


def apply_vat(sale: Sale, vat_rate, vat_enabled: bool, *, now: Optional[datetime] = None) -> Sale:
    rate = to_decimal(vat_rate)
    if rate < 0:
        raise SaleError("VAT rate must be >= 0")
    return recalculate(replace(
        sale,
        vat_enabled=bool(vat_enabled),
        vat_rate=rate,
        updated_at=now or utcnow(),
    ))


def set_tender_currency(
    sale: Sale,
    currency: str,
    rounding_policy: RoundingPolicy,
    *,
    now: Optional[datetime] = None,
) -> Sale:
    if currency not in TENDER_CURRENCIES:
        raise SaleError(f"Unknown tender currency: {currency}")
    if rounding_policy.mode not in ROUNDING_MODES:
        raise SaleError(f"Unknown rounding mode: {rounding_policy.mode}")

    rounding_applied = currency == "KHR" and rounding_policy.enabled
    return recalculate(replace(
        sale,
        tender_currency=currency,
        khr_rounding_applied=rounding_applied,
        rounding_policy=rounding_policy,
        updated_at=now or utcnow(),
    ))


def set_payment_method(
    sale: Sale,
    method: str,
    *,
    cash_received_usd=None,
    cash_received_khr=None,
    now: Optional[datetime] = None,
) -> Sale:
    """
    Record the payment method. For cash, the amount received in the tender
    currency is primary; the other currency is derived from the FX rate.
    """
    if method not in PAYMENT_METHODS:
        raise SaleError(f"Unknown payment method: {method}")

    received_usd = sale.cash_received_usd
    received_khr = sale.cash_received_khr
    fx = sale.fx_rate_used

    if method == "cash" and (cash_received_usd is not None or cash_received_khr is not None):
        prefer_khr = sale.tender_currency == "KHR"
        if (prefer_khr and cash_received_khr is not None) or cash_received_usd is None:
            received_khr = round_khr(cash_received_khr)
            received_usd = round_usd(to_decimal(cash_received_khr) / fx)
        else:
            received_usd = round_usd(cash_received_usd)
            received_khr = round_khr(to_decimal(cash_received_usd) * fx)

    return recalculate(replace(
        sale,
        payment_method=method,
        cash_received_usd=received_usd,
        cash_received_khr=received_khr,
        updated_at=now or utcnow(),
    ))


def finalize_sale(sale: Sale, *, now: Optional[datetime] = None) -> Sale:
    if sale.state != "draft":
        raise SaleError("Only draft sales can be finalized")
    if not sale.items:
        raise SaleError("Cannot finalize empty sale")

    now = now or utcnow()
    return replace(
        recalculate(sale),
        state="finalized",
        finalized_at=now,
        in_prep_at=now,
        updated_at=now,
    )


def void_sale(sale: Sale, reason: str, *, now: Optional[datetime] = None) -> Sale:
    if sale.state != "finalized":
        raise SaleError("Only finalized sales can be voided")

    now = now or utcnow()
    return replace(
        sale,
        state="voided",
        fulfillment_status="cancelled",
        void_reason=reason,
        cancelled_at=now,
        updated_at=now,
    )


def update_fulfillment(sale: Sale, status: str, *, now: Optional[datetime] = None) -> Sale:
    if sale.state != "finalized":
        raise SaleError("Only finalized sales can have fulfillment updated")
    if status not in FULFILLMENT_STATUSES:
        raise SaleError(f"Unknown fulfillment status: {status}")

    now = now or utcnow()
    stamps = {}
    if status == "in_prep":
        stamps["in_prep_at"] = now
    elif status == "ready":
        stamps["ready_at"] = now
    elif status == "delivered":
        stamps["delivered_at"] = now
    elif status == "cancelled":
        stamps["cancelled_at"] = now
    return replace(sale, fulfillment_status=status, updated_at=now, **stamps)


def assert_deletable_draft(sale: Sale) -> None:
    if sale.state != "draft":
        raise SaleError("Only draft sales can be deleted")


def reopen_sale(
    original: Sale,
    actor_id: str,
    *,
    new_sale_id: Optional[str] = None,
    new_client_uuid: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Sale, Sale]:
    """
    Supersede a finalized sale with a new draft carrying the same contents.

    Returns (original marked reopened, new draft linked via ref_previous_sale_id).
    The new draft gets fresh ids; the original client uuid stays with the original.
    """
    if original.state != "finalized":
        raise SaleError("Only finalized sales can be reopened")

    now = now or utcnow()
    draft = create_draft_sale(
        client_uuid=new_client_uuid or new_id(),
        tenant_id=original.tenant_id,
        branch_id=original.branch_id,
        employee_id=actor_id,
        sale_type=original.sale_type,
        fx_rate_used=original.fx_rate_used,
        sale_id=new_sale_id,
        now=now,
    )
    items = tuple(
        replace(item, id=new_id(), sale_id=draft.id, created_at=now)
        for item in original.items
    )
    draft = recalculate(replace(
        draft,
        ref_previous_sale_id=original.id,
        items=items,
        vat_enabled=original.vat_enabled,
        vat_rate=original.vat_rate,
        tender_currency=original.tender_currency,
        khr_rounding_applied=original.khr_rounding_applied,
        rounding_policy=original.rounding_policy,
        payment_method=original.payment_method,
        order_discount=original.order_discount,
        applied_policy_ids=original.applied_policy_ids,
    ))

    reopened = replace(original, state="reopened", updated_at=now)
    return reopened, draft


# =============================================================================
# TENDER HELPERS
# =============================================================================

def tender_amounts(sale: Sale) -> tuple[Decimal, int]:
    """(amount_usd, amount_khr) actually tendered: only the tender currency is non-zero."""
    if sale.tender_currency == "KHR":
        khr = sale.total_khr_rounded if sale.total_khr_rounded is not None else sale.total_khr
        return round_usd(ZERO), khr
    return sale.total_usd, 0


_TENDER_METHOD_LABELS = {"cash": "CASH", "qr": "QR"}


def tender_method_label(method: str) -> str:
    """Event-facing tender method: CASH or QR."""
    try:
        return _TENDER_METHOD_LABELS[method]
    except KeyError:
        raise SaleError(f"Unknown payment method: {method}") from None
