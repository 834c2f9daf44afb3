# Overview: Menu lookups for pricing sale lines, honoring per-branch availability and overrides.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..extensions import db
from ..models import BranchMenuItem, MenuItem
from possync.money import to_decimal


class MenuError(Exception):
    pass


@dataclass(frozen=True)
class MenuItemInfo:
    id: str
    name: str
    price_usd: Decimal


def get_menu_item(session, tenant_id: str, branch_id: str, menu_item_id: str) -> Optional[MenuItemInfo]:
    """
    Priced menu item for a branch, or None when missing, inactive, or
    unavailable at the branch.
    """
    item = session.query(MenuItem).filter_by(id=menu_item_id, tenant_id=tenant_id).one_or_none()
    if item is None or not item.is_active:
        return None

    override = (
        session.query(BranchMenuItem)
        .filter_by(branch_id=branch_id, menu_item_id=menu_item_id)
        .one_or_none()
    )
    price = to_decimal(item.price_usd)
    if override is not None:
        if not override.is_available:
            return None
        if override.price_override_usd is not None:
            price = to_decimal(override.price_override_usd)

    return MenuItemInfo(id=item.id, name=item.name, price_usd=price)


def create_menu_item(tenant_id: str, name: str, price_usd, menu_item_id: str | None = None) -> MenuItem:
    if not name or not name.strip():
        raise MenuError("Menu item name is required")
    price = to_decimal(price_usd)
    if price < 0:
        raise MenuError("Price must be >= 0")

    item = MenuItem(tenant_id=tenant_id, name=name.strip(), price_usd=price, is_active=True)
    if menu_item_id:
        item.id = menu_item_id
    db.session.add(item)
    db.session.commit()
    return item


def set_branch_availability(branch_id: str, menu_item_id: str, *, is_available: bool, price_override_usd=None) -> BranchMenuItem:
    row = (
        db.session.query(BranchMenuItem)
        .filter_by(branch_id=branch_id, menu_item_id=menu_item_id)
        .one_or_none()
    )
    if row is None:
        row = BranchMenuItem(branch_id=branch_id, menu_item_id=menu_item_id)
        db.session.add(row)
    row.is_available = is_available
    row.price_override_usd = to_decimal(price_override_usd) if price_override_usd is not None else None
    db.session.commit()
    return row
