from __future__ import annotations

from ..extensions import db
from possync.money import to_json_number
from possync.time_utils import to_utc_z, utcnow


class SaleRecord(db.Model):
    """
    Persisted sale.

    Amounts are written from the domain Sale after recalculation and are never
    adjusted in SQL. USD is Numeric(12,2); KHR totals are whole riel.

    LIFECYCLE: draft -> finalized -> voided | reopened
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "client_uuid", name="uq_sales_tenant_client_uuid"),
        db.Index("ix_sales_branch_state", "branch_id", "state"),
    )

    id = db.Column(db.String(36), primary_key=True)
    client_uuid = db.Column(db.String(36), nullable=False)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), nullable=False)
    employee_id = db.Column(db.String(36), nullable=False)
    sale_type = db.Column(db.String(16), nullable=False)  # dine_in, take_away, delivery
    state = db.Column(db.String(16), nullable=False, default="draft")
    ref_previous_sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=True)

    # VAT
    vat_enabled = db.Column(db.Boolean, nullable=False, default=False)
    vat_rate = db.Column(db.Numeric(6, 4), nullable=False, default=0)
    vat_amount_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    vat_amount_khr = db.Column(db.BigInteger, nullable=False, default=0)

    # Discounts
    order_discount_type = db.Column(db.String(16), nullable=True)
    order_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)
    applied_policy_ids = db.Column(db.JSON, nullable=False, default=list)
    policy_stale = db.Column(db.Boolean, nullable=False, default=False)

    # Currency
    fx_rate_used = db.Column(db.Numeric(12, 4), nullable=False)
    subtotal_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal_khr = db.Column(db.BigInteger, nullable=False, default=0)
    total_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_khr = db.Column(db.BigInteger, nullable=False, default=0)

    # Tender & rounding
    tender_currency = db.Column(db.String(3), nullable=False, default="USD")
    khr_rounding_applied = db.Column(db.Boolean, nullable=False, default=False)
    khr_rounding_enabled = db.Column(db.Boolean, nullable=False, default=False)
    khr_rounding_mode = db.Column(db.String(16), nullable=False, default="NEAREST")
    khr_rounding_granularity = db.Column(db.Integer, nullable=False, default=100)
    total_khr_rounded = db.Column(db.BigInteger, nullable=True)
    rounding_delta_khr = db.Column(db.BigInteger, nullable=True)

    # Payment
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    cash_received_usd = db.Column(db.Numeric(12, 2), nullable=True)
    cash_received_khr = db.Column(db.BigInteger, nullable=True)
    change_given_usd = db.Column(db.Numeric(12, 2), nullable=True)
    change_given_khr = db.Column(db.BigInteger, nullable=True)

    fulfillment_status = db.Column(db.String(16), nullable=False, default="in_prep")
    void_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    in_prep_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    items = db.relationship(
        "SaleItemRecord",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SaleItemRecord.position",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_uuid": self.client_uuid,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "employee_id": self.employee_id,
            "sale_type": self.sale_type,
            "state": self.state,
            "ref_previous_sale_id": self.ref_previous_sale_id,
            "vat_enabled": self.vat_enabled,
            "vat_rate": to_json_number(self.vat_rate),
            "vat_amount_usd": to_json_number(self.vat_amount_usd),
            "vat_amount_khr": self.vat_amount_khr,
            "order_discount_type": self.order_discount_type,
            "order_discount_amount": to_json_number(self.order_discount_amount),
            "applied_policy_ids": self.applied_policy_ids or [],
            "fx_rate_used": to_json_number(self.fx_rate_used),
            "subtotal_usd": to_json_number(self.subtotal_usd),
            "subtotal_khr": self.subtotal_khr,
            "total_usd": to_json_number(self.total_usd),
            "total_khr": self.total_khr,
            "tender_currency": self.tender_currency,
            "khr_rounding_applied": self.khr_rounding_applied,
            "total_khr_rounded": self.total_khr_rounded,
            "rounding_delta_khr": self.rounding_delta_khr,
            "payment_method": self.payment_method,
            "cash_received_usd": to_json_number(self.cash_received_usd),
            "cash_received_khr": self.cash_received_khr,
            "change_given_usd": to_json_number(self.change_given_usd),
            "change_given_khr": self.change_given_khr,
            "fulfillment_status": self.fulfillment_status,
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "finalized_at": to_utc_z(self.finalized_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "items": [item.to_dict() for item in self.items],
        }


class SaleItemRecord(db.Model):
    """Line item on a sale. KHR unit price is locked at add time from the sale's FX rate."""
    __tablename__ = "sale_items"

    id = db.Column(db.String(36), primary_key=True)
    sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    menu_item_id = db.Column(db.String(36), nullable=False)
    menu_item_name = db.Column(db.String(255), nullable=False)
    unit_price_usd = db.Column(db.Numeric(12, 2), nullable=False)
    unit_price_khr = db.Column(db.BigInteger, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    modifiers = db.Column(db.JSON, nullable=False, default=list)

    line_discount_type = db.Column(db.String(16), nullable=True)
    line_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)
    line_discount_policy_id = db.Column(db.String(36), nullable=True)
    line_total_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    line_total_khr = db.Column(db.BigInteger, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "menu_item_id": self.menu_item_id,
            "menu_item_name": self.menu_item_name,
            "unit_price_usd": to_json_number(self.unit_price_usd),
            "unit_price_khr": self.unit_price_khr,
            "quantity": self.quantity,
            "modifiers": self.modifiers or [],
            "line_discount_type": self.line_discount_type,
            "line_discount_amount": to_json_number(self.line_discount_amount),
            "line_total_usd": to_json_number(self.line_total_usd),
            "line_total_khr": self.line_total_khr,
        }
