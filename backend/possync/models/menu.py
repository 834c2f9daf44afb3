from __future__ import annotations

from ..extensions import db
from possync.money import new_id, to_json_number
from possync.time_utils import utcnow


class MenuItem(db.Model):
    """Tenant-wide menu item with its base USD price."""
    __tablename__ = "menu_items"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    price_usd = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "price_usd": to_json_number(self.price_usd),
            "is_active": self.is_active,
        }


class BranchMenuItem(db.Model):
    """
    Per-branch availability and optional price override.

    No row means the item is sold at its base price.
    """
    __tablename__ = "branch_menu_items"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "menu_item_id", name="uq_branch_menu_items_branch_item"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    branch_id = db.Column(db.String(36), db.ForeignKey("branches.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.String(36), db.ForeignKey("menu_items.id"), nullable=False, index=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    price_override_usd = db.Column(db.Numeric(12, 2), nullable=True)
