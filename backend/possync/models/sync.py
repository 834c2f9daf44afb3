from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z, utcnow


class OfflineSyncOperation(db.Model):
    """
    Ledger of client-submitted offline operations.

    The (tenant_id, client_op_id) unique constraint is the only guard against
    applying the same operation twice. A row is created PROCESSING inside the
    apply transaction and moves exactly once to APPLIED or FAILED.

    IMMUTABLE: terminal rows are never updated, deleted, or re-processed.
    """
    __tablename__ = "offline_sync_operations"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "client_op_id", name="uq_offline_sync_operations_tenant_op"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), nullable=False, index=True)
    client_op_id = db.Column(db.String(36), nullable=False)

    # SALE_FINALIZED, CASH_SESSION_OPENED, CASH_SESSION_CLOSED (kept as text so
    # unsupported types can still be recorded as FAILED)
    type = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PROCESSING", index=True)  # PROCESSING, APPLIED, FAILED
    result = db.Column(db.JSON, nullable=True)
    error_code = db.Column(db.String(64), nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "client_op_id": self.client_op_id,
            "type": self.type,
            "status": self.status,
            "occurred_at": to_utc_z(self.occurred_at),
            "result": self.result,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
