from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from possync.money import new_id, to_json_number
from possync.time_utils import to_utc_z, utcnow


class CashRegister(db.Model):
    """Physical drawer/terminal in a branch. INACTIVE registers cannot open sessions."""
    __tablename__ = "cash_registers"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "name": self.name,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class CashSessionRecord(db.Model):
    """
    Persisted cash session.

    At most one OPEN session per (tenant, branch, register), and one
    device-agnostic OPEN session per (tenant, branch). The partial unique
    indexes back the check done while applying CASH_SESSION_OPENED.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_open_register",
            "tenant_id", "branch_id", "register_id",
            unique=True,
            sqlite_where=text("status = 'OPEN' AND register_id IS NOT NULL"),
            postgresql_where=text("status = 'OPEN' AND register_id IS NOT NULL"),
        ),
        db.Index(
            "uq_cash_sessions_open_branch",
            "tenant_id", "branch_id",
            unique=True,
            sqlite_where=text("status = 'OPEN' AND register_id IS NULL"),
            postgresql_where=text("status = 'OPEN' AND register_id IS NULL"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), nullable=False, index=True)
    register_id = db.Column(db.String(36), db.ForeignKey("cash_registers.id"), nullable=True)

    opened_by = db.Column(db.String(36), nullable=False)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False)
    opening_float_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    opening_float_khr = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    # Running balance: opening float plus cash movements
    expected_cash_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    expected_cash_khr = db.Column(db.Numeric(16, 2), nullable=False, default=0)

    counted_cash_usd = db.Column(db.Numeric(12, 2), nullable=True)
    counted_cash_khr = db.Column(db.Numeric(16, 2), nullable=True)
    variance_usd = db.Column(db.Numeric(12, 2), nullable=True)
    variance_khr = db.Column(db.Numeric(16, 2), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED, PENDING_REVIEW
    closed_by = db.Column(db.String(36), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "register_id": self.register_id,
            "opened_by": self.opened_by,
            "opened_at": to_utc_z(self.opened_at),
            "opening_float_usd": to_json_number(self.opening_float_usd),
            "opening_float_khr": to_json_number(self.opening_float_khr),
            "expected_cash_usd": to_json_number(self.expected_cash_usd),
            "expected_cash_khr": to_json_number(self.expected_cash_khr),
            "counted_cash_usd": to_json_number(self.counted_cash_usd),
            "counted_cash_khr": to_json_number(self.counted_cash_khr),
            "variance_usd": to_json_number(self.variance_usd),
            "variance_khr": to_json_number(self.variance_khr),
            "status": self.status,
            "closed_by": self.closed_by,
            "closed_at": to_utc_z(self.closed_at),
            "note": self.note,
        }


class CashMovement(db.Model):
    """
    Cash moved through a session's drawer: by a sale (SALE_CASH), its void
    (REFUND_CASH), or by hand (PAID_IN, PAID_OUT; no sale_id, reason required).

    Unique per (sale_id, type) so replayed outbox events do not double count.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "type", name="uq_cash_movements_sale_type"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    session_id = db.Column(db.String(36), db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    sale_id = db.Column(db.String(36), nullable=True)
    type = db.Column(db.String(16), nullable=False)  # SALE_CASH, REFUND_CASH, PAID_IN, PAID_OUT
    amount_usd = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    amount_khr = db.Column(db.Numeric(16, 2), nullable=False, default=0)
    reason = db.Column(db.String(120), nullable=True)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "sale_id": self.sale_id,
            "type": self.type,
            "amount_usd": to_json_number(self.amount_usd),
            "amount_khr": to_json_number(self.amount_khr),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
