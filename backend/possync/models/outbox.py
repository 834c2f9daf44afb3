from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z, utcnow


class OutboxEvent(db.Model):
    """
    Transactional outbox.

    Rows are inserted in the same transaction as the business change and
    delivered later by the dispatcher. Integer ids give delivery order.
    """
    __tablename__ = "outbox_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    type = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": self.type,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }
