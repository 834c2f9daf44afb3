from __future__ import annotations

from ..extensions import db
from possync.money import new_id, to_json_number
from possync.time_utils import to_utc_z, utcnow


class Branch(db.Model):
    """
    A tenant's physical location.

    FROZEN branches reject every sync operation until unfrozen.
    """
    __tablename__ = "branches"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, FROZEN

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class BranchSalesPolicy(db.Model):
    """Per-branch FX, VAT and KHR rounding settings. Missing rows fall back to Config defaults."""
    __tablename__ = "branch_sales_policies"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "branch_id", name="uq_branch_sales_policies_tenant_branch"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), db.ForeignKey("branches.id"), nullable=False, index=True)

    fx_rate_khr_per_usd = db.Column(db.Numeric(12, 4), nullable=False, default=4100)
    vat_enabled = db.Column(db.Boolean, nullable=False, default=False)
    vat_rate_percent = db.Column(db.Numeric(6, 2), nullable=False, default=0)

    khr_rounding_enabled = db.Column(db.Boolean, nullable=False, default=True)
    khr_rounding_mode = db.Column(db.String(16), nullable=False, default="NEAREST")  # NEAREST, UP, DOWN
    khr_rounding_granularity = db.Column(db.Integer, nullable=False, default=100)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "fx_rate_khr_per_usd": to_json_number(self.fx_rate_khr_per_usd),
            "vat_enabled": self.vat_enabled,
            "vat_rate_percent": to_json_number(self.vat_rate_percent),
            "khr_rounding_enabled": self.khr_rounding_enabled,
            "khr_rounding_mode": self.khr_rounding_mode,
            "khr_rounding_granularity": self.khr_rounding_granularity,
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountPolicy(db.Model):
    """
    Automatic discount rule.

    scope ITEM applies to one menu item (menu_item_id); scope ORDER applies to
    the order subtotal. When several match, the largest absolute discount wins.
    """
    __tablename__ = "discount_policies"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), db.ForeignKey("branches.id"), nullable=False, index=True)
    scope = db.Column(db.String(16), nullable=False)  # ITEM, ORDER
    menu_item_id = db.Column(db.String(36), nullable=True, index=True)
    discount_type = db.Column(db.String(16), nullable=False)  # percentage, fixed
    value = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "scope": self.scope,
            "menu_item_id": self.menu_item_id,
            "discount_type": self.discount_type,
            "value": to_json_number(self.value),
            "is_active": self.is_active,
        }
