# Overview: Branch sales policy lookups (FX rate, VAT, KHR rounding, automatic discounts).

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import BranchSalesPolicy, DiscountPolicy as DiscountPolicyRow
from possync.domain.sale import ROUNDING_MODES, DiscountPolicy, RoundingPolicy
from possync.money import HUNDRED, ZERO, to_decimal


class PolicyError(Exception):
    pass


@dataclass(frozen=True)
class VatPolicy:
    enabled: bool
    rate: Decimal  # fraction, 0.10 == 10%


def _policy_row(session, tenant_id: str, branch_id: str) -> BranchSalesPolicy | None:
    return (
        session.query(BranchSalesPolicy)
        .filter_by(tenant_id=tenant_id, branch_id=branch_id)
        .one_or_none()
    )


def has_branch_policy(session, tenant_id: str, branch_id: str) -> bool:
    """False when lookups for this branch fall back to config defaults."""
    return _policy_row(session, tenant_id, branch_id) is not None


def get_fx_rate(session, tenant_id: str, branch_id: str) -> Decimal:
    row = _policy_row(session, tenant_id, branch_id)
    if row is not None and row.fx_rate_khr_per_usd:
        return to_decimal(row.fx_rate_khr_per_usd)
    return to_decimal(current_app.config.get("DEFAULT_FX_RATE_KHR_PER_USD", "4100"))


def get_vat_policy(session, tenant_id: str, branch_id: str) -> VatPolicy:
    row = _policy_row(session, tenant_id, branch_id)
    if row is None:
        return VatPolicy(enabled=False, rate=ZERO)
    return VatPolicy(
        enabled=bool(row.vat_enabled),
        rate=to_decimal(row.vat_rate_percent or 0) / HUNDRED,
    )


def get_rounding_policy(session, tenant_id: str, branch_id: str) -> RoundingPolicy:
    row = _policy_row(session, tenant_id, branch_id)
    if row is None:
        cfg = current_app.config
        return RoundingPolicy(
            enabled=bool(cfg.get("DEFAULT_KHR_ROUNDING_ENABLED", True)),
            mode=cfg.get("DEFAULT_KHR_ROUNDING_MODE", "NEAREST"),
            granularity=int(cfg.get("DEFAULT_KHR_ROUNDING_GRANULARITY", 100)),
        )
    return RoundingPolicy(
        enabled=bool(row.khr_rounding_enabled),
        mode=row.khr_rounding_mode,
        granularity=int(row.khr_rounding_granularity),
    )


def _active_discounts(session, tenant_id: str, branch_id: str, scope: str):
    return (
        session.query(DiscountPolicyRow)
        .filter_by(tenant_id=tenant_id, branch_id=branch_id, scope=scope, is_active=True)
        .order_by(DiscountPolicyRow.created_at.asc(), DiscountPolicyRow.id.asc())
    )


def get_item_discount_policies(session, tenant_id: str, branch_id: str, menu_item_id: str) -> list[DiscountPolicy]:
    rows = _active_discounts(session, tenant_id, branch_id, "ITEM").filter_by(menu_item_id=menu_item_id).all()
    return [DiscountPolicy(id=r.id, type=r.discount_type, value=to_decimal(r.value)) for r in rows]


def get_order_discount_policies(session, tenant_id: str, branch_id: str) -> list[DiscountPolicy]:
    rows = _active_discounts(session, tenant_id, branch_id, "ORDER").all()
    return [DiscountPolicy(id=r.id, type=r.discount_type, value=to_decimal(r.value)) for r in rows]


# =============================================================================
# ADMIN (CLI)
# =============================================================================

def set_branch_policy(
    tenant_id: str,
    branch_id: str,
    *,
    fx_rate_khr_per_usd=None,
    vat_enabled: bool | None = None,
    vat_rate_percent=None,
    khr_rounding_enabled: bool | None = None,
    khr_rounding_mode: str | None = None,
    khr_rounding_granularity: int | None = None,
) -> BranchSalesPolicy:
    row = _policy_row(db.session, tenant_id, branch_id)
    if row is None:
        row = BranchSalesPolicy(
            tenant_id=tenant_id,
            branch_id=branch_id,
            fx_rate_khr_per_usd=to_decimal(current_app.config.get("DEFAULT_FX_RATE_KHR_PER_USD", "4100")),
            khr_rounding_enabled=bool(current_app.config.get("DEFAULT_KHR_ROUNDING_ENABLED", True)),
            khr_rounding_mode=current_app.config.get("DEFAULT_KHR_ROUNDING_MODE", "NEAREST"),
            khr_rounding_granularity=int(current_app.config.get("DEFAULT_KHR_ROUNDING_GRANULARITY", 100)),
            vat_enabled=False,
            vat_rate_percent=0,
        )
        db.session.add(row)

    if fx_rate_khr_per_usd is not None:
        fx = to_decimal(fx_rate_khr_per_usd)
        if fx <= 0:
            raise PolicyError("FX rate must be positive")
        row.fx_rate_khr_per_usd = fx
    if vat_enabled is not None:
        row.vat_enabled = vat_enabled
    if vat_rate_percent is not None:
        rate = to_decimal(vat_rate_percent)
        if rate < 0 or rate > HUNDRED:
            raise PolicyError("VAT rate must be between 0 and 100")
        row.vat_rate_percent = rate
    if khr_rounding_enabled is not None:
        row.khr_rounding_enabled = khr_rounding_enabled
    if khr_rounding_mode is not None:
        if khr_rounding_mode not in ROUNDING_MODES:
            raise PolicyError(f"Rounding mode must be one of: {', '.join(ROUNDING_MODES)}")
        row.khr_rounding_mode = khr_rounding_mode
    if khr_rounding_granularity is not None:
        if khr_rounding_granularity <= 0:
            raise PolicyError("Rounding granularity must be positive")
        row.khr_rounding_granularity = khr_rounding_granularity

    db.session.commit()
    return row


def get_branch_policy(tenant_id: str, branch_id: str) -> BranchSalesPolicy | None:
    return _policy_row(db.session, tenant_id, branch_id)


def create_discount_policy(
    tenant_id: str,
    branch_id: str,
    *,
    scope: str,
    discount_type: str,
    value,
    menu_item_id: str | None = None,
) -> DiscountPolicyRow:
    if scope not in ("ITEM", "ORDER"):
        raise PolicyError("scope must be ITEM or ORDER")
    if scope == "ITEM" and not menu_item_id:
        raise PolicyError("ITEM discount policies require menu_item_id")
    if discount_type not in ("percentage", "fixed"):
        raise PolicyError("discount_type must be percentage or fixed")
    value = to_decimal(value)
    if value < 0 or (discount_type == "percentage" and value > HUNDRED):
        raise PolicyError("Invalid discount value")

    row = DiscountPolicyRow(
        tenant_id=tenant_id,
        branch_id=branch_id,
        scope=scope,
        menu_item_id=menu_item_id if scope == "ITEM" else None,
        discount_type=discount_type,
        value=value,
        is_active=True,
    )
    db.session.add(row)
    db.session.commit()
    return row
