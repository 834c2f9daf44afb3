# Overview: Sale persistence and cart operations; every mutation goes through the domain Sale.

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from ..extensions import db
from ..models import SaleItemRecord, SaleRecord
from possync.domain import sale as sale_domain
from possync.domain.sale import (
    Discount,
    RoundingPolicy,
    Sale,
    SaleError,
    SaleItem,
    SaleItemModifier,
    find_best_policy,
    tender_amounts,
    tender_method_label,
)
from possync.money import ZERO, new_id, to_decimal, to_json_number
from possync.time_utils import is_same_utc_day, to_utc_z, utcnow
from . import audit_service, menu_service, outbox_service, policy_service


# =============================================================================
# REPOSITORY
# =============================================================================

def _discount_from_columns(discount_type, amount, policy_id=None) -> Optional[Discount]:
    if not discount_type:
        return None
    return Discount(type=discount_type, amount=to_decimal(amount), policy_id=policy_id)


def _optional_decimal(value):
    return None if value is None else to_decimal(value)


def _optional_int(value):
    return None if value is None else int(value)


def _item_from_record(row: SaleItemRecord) -> SaleItem:
    return SaleItem(
        id=row.id,
        sale_id=row.sale_id,
        menu_item_id=row.menu_item_id,
        menu_item_name=row.menu_item_name,
        unit_price_usd=to_decimal(row.unit_price_usd),
        unit_price_khr=int(row.unit_price_khr),
        quantity=int(row.quantity),
        modifiers=tuple(SaleItemModifier.from_dict(m) for m in (row.modifiers or [])),
        line_discount=_discount_from_columns(
            row.line_discount_type, row.line_discount_amount, row.line_discount_policy_id
        ),
        line_total_usd=to_decimal(row.line_total_usd),
        line_total_khr=int(row.line_total_khr),
        created_at=row.created_at,
    )


def sale_from_record(row: SaleRecord) -> Sale:
    return Sale(
        id=row.id,
        client_uuid=row.client_uuid,
        tenant_id=row.tenant_id,
        branch_id=row.branch_id,
        employee_id=row.employee_id,
        sale_type=row.sale_type,
        fx_rate_used=to_decimal(row.fx_rate_used),
        state=row.state,
        ref_previous_sale_id=row.ref_previous_sale_id,
        items=tuple(_item_from_record(i) for i in row.items),
        vat_enabled=bool(row.vat_enabled),
        vat_rate=to_decimal(row.vat_rate),
        vat_amount_usd=to_decimal(row.vat_amount_usd),
        vat_amount_khr=int(row.vat_amount_khr),
        order_discount=_discount_from_columns(row.order_discount_type, row.order_discount_amount),
        applied_policy_ids=tuple(row.applied_policy_ids or ()),
        policy_stale=bool(row.policy_stale),
        subtotal_usd=to_decimal(row.subtotal_usd),
        subtotal_khr=int(row.subtotal_khr),
        total_usd=to_decimal(row.total_usd),
        total_khr=int(row.total_khr),
        tender_currency=row.tender_currency,
        khr_rounding_applied=bool(row.khr_rounding_applied),
        rounding_policy=RoundingPolicy(
            enabled=bool(row.khr_rounding_enabled),
            mode=row.khr_rounding_mode,
            granularity=int(row.khr_rounding_granularity),
        ),
        total_khr_rounded=_optional_int(row.total_khr_rounded),
        rounding_delta_khr=_optional_int(row.rounding_delta_khr),
        payment_method=row.payment_method,
        cash_received_usd=_optional_decimal(row.cash_received_usd),
        cash_received_khr=_optional_int(row.cash_received_khr),
        change_given_usd=_optional_decimal(row.change_given_usd),
        change_given_khr=_optional_int(row.change_given_khr),
        fulfillment_status=row.fulfillment_status,
        void_reason=row.void_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        finalized_at=row.finalized_at,
        in_prep_at=row.in_prep_at,
        ready_at=row.ready_at,
        delivered_at=row.delivered_at,
        cancelled_at=row.cancelled_at,
    )


def _copy_item(row: SaleItemRecord, item: SaleItem, position: int) -> None:
    row.sale_id = item.sale_id
    row.position = position
    row.menu_item_id = item.menu_item_id
    row.menu_item_name = item.menu_item_name
    row.unit_price_usd = item.unit_price_usd
    row.unit_price_khr = item.unit_price_khr
    row.quantity = item.quantity
    row.modifiers = [m.to_dict() for m in item.modifiers]
    row.line_discount_type = item.line_discount.type if item.line_discount else None
    row.line_discount_amount = item.line_discount.amount if item.line_discount else None
    row.line_discount_policy_id = item.line_discount.policy_id if item.line_discount else None
    row.line_total_usd = item.line_total_usd
    row.line_total_khr = item.line_total_khr
    row.created_at = item.created_at or utcnow()


def save_sale(session, sale: Sale) -> SaleRecord:
    """Upsert the sale row and bring its item rows in line with `sale.items`. Flushes, no commit."""
    row = session.get(SaleRecord, sale.id)
    if row is None:
        row = SaleRecord(id=sale.id)
        session.add(row)

    row.client_uuid = sale.client_uuid
    row.tenant_id = sale.tenant_id
    row.branch_id = sale.branch_id
    row.employee_id = sale.employee_id
    row.sale_type = sale.sale_type
    row.state = sale.state
    row.ref_previous_sale_id = sale.ref_previous_sale_id
    row.vat_enabled = sale.vat_enabled
    row.vat_rate = sale.vat_rate
    row.vat_amount_usd = sale.vat_amount_usd
    row.vat_amount_khr = sale.vat_amount_khr
    row.order_discount_type = sale.order_discount.type if sale.order_discount else None
    row.order_discount_amount = sale.order_discount.amount if sale.order_discount else None
    row.applied_policy_ids = list(sale.applied_policy_ids)
    row.policy_stale = sale.policy_stale
    row.fx_rate_used = sale.fx_rate_used
    row.subtotal_usd = sale.subtotal_usd
    row.subtotal_khr = sale.subtotal_khr
    row.total_usd = sale.total_usd
    row.total_khr = sale.total_khr
    row.tender_currency = sale.tender_currency
    row.khr_rounding_applied = sale.khr_rounding_applied
    row.khr_rounding_enabled = sale.rounding_policy.enabled
    row.khr_rounding_mode = sale.rounding_policy.mode
    row.khr_rounding_granularity = sale.rounding_policy.granularity
    row.total_khr_rounded = sale.total_khr_rounded
    row.rounding_delta_khr = sale.rounding_delta_khr
    row.payment_method = sale.payment_method
    row.cash_received_usd = sale.cash_received_usd
    row.cash_received_khr = sale.cash_received_khr
    row.change_given_usd = sale.change_given_usd
    row.change_given_khr = sale.change_given_khr
    row.fulfillment_status = sale.fulfillment_status
    row.void_reason = sale.void_reason
    row.created_at = sale.created_at or utcnow()
    row.updated_at = sale.updated_at or utcnow()
    row.finalized_at = sale.finalized_at
    row.in_prep_at = sale.in_prep_at
    row.ready_at = sale.ready_at
    row.delivered_at = sale.delivered_at
    row.cancelled_at = sale.cancelled_at

    existing = {item_row.id: item_row for item_row in row.items}
    keep = []
    for position, item in enumerate(sale.items):
        item_row = existing.get(item.id)
        if item_row is None:
            item_row = SaleItemRecord(id=item.id)
        _copy_item(item_row, item, position)
        keep.append(item_row)
    row.items = keep

    session.flush()
    return row


def get_sale_record(session, tenant_id: str, sale_id: str) -> Optional[SaleRecord]:
    return session.query(SaleRecord).filter_by(id=sale_id, tenant_id=tenant_id).one_or_none()


def get_sale_by_client_uuid(session, tenant_id: str, client_uuid: str) -> Optional[Sale]:
    row = (
        session.query(SaleRecord)
        .filter_by(tenant_id=tenant_id, client_uuid=client_uuid)
        .one_or_none()
    )
    return sale_from_record(row) if row is not None else None


# =============================================================================
# EVENTS
# =============================================================================

def build_sale_finalized_event(sale: Sale, actor_id: str) -> dict:
    amount_usd, amount_khr = tender_amounts(sale)
    return {
        "type": "sale.finalized",
        "v": 1,
        "tenantId": sale.tenant_id,
        "branchId": sale.branch_id,
        "saleId": sale.id,
        "lines": [{"menuItemId": i.menu_item_id, "qty": i.quantity} for i in sale.items],
        "totals": {
            "subtotalUsd": to_json_number(sale.subtotal_usd),
            "totalUsd": to_json_number(sale.total_usd),
            "totalKhr": sale.total_khr,
            "vatAmountUsd": to_json_number(sale.vat_amount_usd),
        },
        "tenders": [{
            "method": tender_method_label(sale.payment_method),
            "amountUsd": to_json_number(amount_usd),
            "amountKhr": amount_khr,
        }],
        "finalizedAt": to_utc_z(sale.finalized_at),
        "actorId": actor_id,
    }


def _sale_event(event_type: str, sale: Sale, actor_id: str, **extra) -> dict:
    event = {
        "type": event_type,
        "v": 1,
        "tenantId": sale.tenant_id,
        "branchId": sale.branch_id,
        "saleId": sale.id,
        "actorId": actor_id,
        "timestamp": to_utc_z(sale.updated_at or utcnow()),
    }
    event.update(extra)
    return event


# =============================================================================
# CART OPERATIONS
# =============================================================================

def _load_for_update(tenant_id: str, sale_id: str) -> Sale:
    row = (
        db.session.query(SaleRecord)
        .filter_by(id=sale_id, tenant_id=tenant_id)
        .with_for_update()
        .one_or_none()
    )
    if row is None:
        raise SaleError("Sale not found")
    return sale_from_record(row)


def _record(
    sale: Sale,
    *,
    actor_id: str,
    actor_role: Optional[str],
    action_type: str,
    event: Optional[dict] = None,
    details: Optional[dict] = None,
) -> None:
    audit_service.write_audit(
        db.session,
        tenant_id=sale.tenant_id,
        branch_id=sale.branch_id,
        employee_id=actor_id,
        actor_role=actor_role,
        action_type=action_type,
        resource_type="SALE",
        resource_id=sale.id,
        details=details,
    )
    if event is not None:
        outbox_service.publish(db.session, event)


def _commit(fn):
    """Run a cart mutation in one transaction; any error rolls back."""
    try:
        result = fn()
        db.session.commit()
        return result
    except Exception:
        db.session.rollback()
        raise


def create_draft_sale(
    *,
    tenant_id: str,
    branch_id: str,
    actor_id: str,
    sale_type: str,
    client_uuid: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> Sale:
    """
    Create (or return) the draft for `client_uuid`. Offline terminals retry
    draft creation, so an existing draft with the same client uuid is reused.
    """
    def _op():
        if client_uuid:
            existing = get_sale_by_client_uuid(db.session, tenant_id, client_uuid)
            if existing is not None:
                if existing.state != "draft":
                    raise SaleError("Sale already exists for client_sale_uuid")
                return existing

        sale = sale_domain.create_draft_sale(
            client_uuid=client_uuid or new_id(),
            tenant_id=tenant_id,
            branch_id=branch_id,
            employee_id=actor_id,
            sale_type=sale_type,
            fx_rate_used=policy_service.get_fx_rate(db.session, tenant_id, branch_id),
            policy_stale=not policy_service.has_branch_policy(db.session, tenant_id, branch_id),
        )
        vat = policy_service.get_vat_policy(db.session, tenant_id, branch_id)
        sale = sale_domain.apply_vat(sale, vat.rate, vat.enabled, now=sale.created_at)
        save_sale(db.session, sale)
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="CART_CREATED",
            event=_sale_event("sale.draft_created", sale, actor_id, saleType=sale.sale_type),
        )
        return sale

    return _commit(_op)


def apply_best_item_discount(session, sale: Sale, item: SaleItem) -> Sale:
    """Best-of item discount on menu price x qty; the policy id is kept on the line."""
    policies = policy_service.get_item_discount_policies(session, sale.tenant_id, sale.branch_id, item.menu_item_id)
    best = find_best_policy(policies, item.unit_price_usd * item.quantity)
    if best is None:
        return sale
    return sale_domain.apply_line_discount(sale, item.id, best.type, best.value, best.id, now=sale.updated_at)


def apply_best_order_discount(session, sale: Sale) -> Sale:
    """Best-of order discount on the sum of line totals."""
    policies = policy_service.get_order_discount_policies(session, sale.tenant_id, sale.branch_id)
    base = sum((i.line_total_usd for i in sale.items), ZERO)
    best = find_best_policy(policies, base)
    if best is None:
        return sale
    return sale_domain.apply_order_discount(sale, best.type, best.value, [best.id], now=sale.updated_at)


def add_item_to_sale(
    *,
    tenant_id: str,
    sale_id: str,
    actor_id: str,
    menu_item_id: str,
    quantity: int,
    modifiers: Iterable[SaleItemModifier] = (),
    actor_role: Optional[str] = None,
) -> Sale:
    def _op():
        sale = _load_for_update(tenant_id, sale_id)
        menu_item = menu_service.get_menu_item(db.session, tenant_id, sale.branch_id, menu_item_id)
        if menu_item is None:
            raise SaleError(f"Menu item not found or unavailable: {menu_item_id}")

        sale, item = sale_domain.add_item(
            sale,
            menu_item_id=menu_item.id,
            menu_item_name=menu_item.name,
            unit_price_usd=menu_item.price_usd,
            quantity=quantity,
            modifiers=modifiers,
        )
        sale = apply_best_item_discount(db.session, sale, item)
        save_sale(db.session, sale)
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="CART_ITEM_ADDED",
            details={"item_id": item.id, "menu_item_id": menu_item.id, "quantity": quantity},
        )
        return sale

    return _commit(_op)


def remove_item(*, tenant_id: str, sale_id: str, item_id: str, actor_id: str, actor_role: Optional[str] = None) -> Sale:
    def _op():
        sale = sale_domain.remove_item(_load_for_update(tenant_id, sale_id), item_id)
        save_sale(db.session, sale)
        _record(sale, actor_id=actor_id, actor_role=actor_role, action_type="CART_ITEM_REMOVED",
                details={"item_id": item_id})
        return sale

    return _commit(_op)


def update_item_quantity(
    *,
    tenant_id: str,
    sale_id: str,
    item_id: str,
    quantity: int,
    actor_id: str,
    actor_role: Optional[str] = None,
) -> Sale:
    def _op():
        sale = sale_domain.update_item_quantity(_load_for_update(tenant_id, sale_id), item_id, quantity)
        save_sale(db.session, sale)
        _record(sale, actor_id=actor_id, actor_role=actor_role, action_type="CART_ITEM_UPDATED",
                details={"item_id": item_id, "quantity": quantity})
        return sale

    return _commit(_op)


def pre_checkout(
    *,
    tenant_id: str,
    sale_id: str,
    actor_id: str,
    tender_currency: str,
    payment_method: str,
    cash_received_usd=None,
    cash_received_khr=None,
    actor_role: Optional[str] = None,
) -> Sale:
    """Apply tender, payment, the best order discount and current VAT to a draft."""
    def _op():
        sale = _load_for_update(tenant_id, sale_id)
        if sale.state != "draft":
            raise SaleError("Only draft sales can be checked out")

        rounding = policy_service.get_rounding_policy(db.session, tenant_id, sale.branch_id)
        sale = sale_domain.set_tender_currency(sale, tender_currency, rounding)
        sale = sale_domain.set_payment_method(
            sale, payment_method, cash_received_usd=cash_received_usd, cash_received_khr=cash_received_khr,
        )
        sale = apply_best_order_discount(db.session, sale)
        vat = policy_service.get_vat_policy(db.session, tenant_id, sale.branch_id)
        sale = sale_domain.apply_vat(sale, vat.rate, vat.enabled, now=sale.updated_at)
        save_sale(db.session, sale)
        _record(sale, actor_id=actor_id, actor_role=actor_role, action_type="CART_PRE_CHECKOUT",
                details={"tender_currency": tender_currency, "payment_method": payment_method})
        return sale

    return _commit(_op)


def finalize_draft_sale(*, tenant_id: str, sale_id: str, actor_id: str, actor_role: Optional[str] = None) -> Sale:
    def _op():
        sale = sale_domain.finalize_sale(_load_for_update(tenant_id, sale_id))
        save_sale(db.session, sale)
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="SALE_FINALIZED",
            event=build_sale_finalized_event(sale, actor_id),
            details={"total_usd": sale.total_usd, "total_khr": sale.total_khr},
        )
        return sale

    return _commit(_op)


def update_fulfillment(
    *,
    tenant_id: str,
    sale_id: str,
    status: str,
    actor_id: str,
    actor_role: Optional[str] = None,
) -> Sale:
    def _op():
        original = _load_for_update(tenant_id, sale_id)
        sale = sale_domain.update_fulfillment(original, status)
        save_sale(db.session, sale)
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="ORDER_STATUS_UPDATED",
            event=_sale_event(
                "sale.fulfillment_updated", sale, actor_id,
                fromStatus=original.fulfillment_status, toStatus=status,
            ),
            details={"from": original.fulfillment_status, "to": status},
        )
        return sale

    return _commit(_op)


def _assert_same_day(sale: Sale, now: datetime, verb: str) -> None:
    if sale.finalized_at is None or not is_same_utc_day(sale.finalized_at, now):
        raise SaleError(f"Only same-day sales can be {verb}")


def void_sale(
    *,
    tenant_id: str,
    sale_id: str,
    reason: str,
    actor_id: str,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Sale:
    def _op():
        current = now or utcnow()
        original = _load_for_update(tenant_id, sale_id)
        if original.state == "finalized":
            _assert_same_day(original, current, "voided")
        sale = sale_domain.void_sale(original, reason, now=current)
        save_sale(db.session, sale)

        amount_usd, amount_khr = tender_amounts(sale)
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="VOID_APPROVED",
            event=_sale_event(
                "sale.voided", sale, actor_id,
                reason=reason,
                lines=[{"menuItemId": i.menu_item_id, "qty": i.quantity} for i in sale.items],
                tenders=[{
                    "method": tender_method_label(sale.payment_method),
                    "amountUsd": to_json_number(amount_usd),
                    "amountKhr": amount_khr,
                }],
            ),
            details={"reason": reason},
        )
        return sale

    return _commit(_op)


def reopen_sale(
    *,
    tenant_id: str,
    sale_id: str,
    actor_id: str,
    reason: Optional[str] = None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Sale:
    """Supersede a same-day finalized sale with a new draft. Returns the new draft."""
    def _op():
        current = now or utcnow()
        original = _load_for_update(tenant_id, sale_id)
        if original.state == "finalized":
            _assert_same_day(original, current, "reopened")
        reopened, draft = sale_domain.reopen_sale(original, actor_id, now=current)
        save_sale(db.session, reopened)
        save_sale(db.session, draft)

        _record(
            reopened,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="SALE_REOPENED",
            event=_sale_event(
                "sale.reopened", reopened, actor_id,
                originalSaleId=reopened.id, newSaleId=draft.id, reason=reason,
            ),
            details={"new_sale_id": draft.id, "reason": reason},
        )
        _record(draft, actor_id=actor_id, actor_role=actor_role, action_type="CART_CREATED",
                details={"ref_previous_sale_id": reopened.id})
        return draft

    return _commit(_op)


def delete_draft_sale(*, tenant_id: str, sale_id: str, actor_id: str, actor_role: Optional[str] = None) -> None:
    def _op():
        sale = _load_for_update(tenant_id, sale_id)
        sale_domain.assert_deletable_draft(sale)
        row = db.session.get(SaleRecord, sale.id)
        db.session.delete(row)
        db.session.flush()
        _record(
            sale,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type="CART_DELETED",
            event=_sale_event("sale.draft_deleted", sale, actor_id, timestamp=to_utc_z(utcnow())),
        )

    _commit(_op)
