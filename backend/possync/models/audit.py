from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z, utcnow


class AuditLog(db.Model):
    """
    Append-only audit trail.

    Written in the same transaction as the change it describes, so a rolled
    back change leaves no audit row behind.
    """
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    branch_id = db.Column(db.String(36), nullable=True, index=True)
    employee_id = db.Column(db.String(36), nullable=True)
    actor_role = db.Column(db.String(32), nullable=True)

    action_type = db.Column(db.String(64), nullable=False, index=True)
    resource_type = db.Column(db.String(64), nullable=True)
    resource_id = db.Column(db.String(64), nullable=True)
    outcome = db.Column(db.String(16), nullable=False, default="SUCCESS")  # SUCCESS, REJECTED, FAILED
    denial_reason = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "employee_id": self.employee_id,
            "actor_role": self.actor_role,
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "denial_reason": self.denial_reason,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }
