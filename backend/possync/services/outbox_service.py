# Overview: Transactional outbox; events are stored with the business change and delivered afterwards.

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Mapping

from flask import current_app

from ..extensions import db
from ..models import OutboxEvent
from possync.money import json_safe
from possync.time_utils import utcnow


EventHandler = Callable[[dict], None]


def publish(session, event: dict) -> OutboxEvent:
    """
    Stage an event in the caller's transaction. No commit.

    The event dict must carry `type` and `tenantId`.
    """
    row = OutboxEvent(
        tenant_id=event["tenantId"],
        type=event["type"],
        payload=json_safe(event),
    )
    session.add(row)
    session.flush()
    return row


def get_unsent(limit: int = 100) -> list[OutboxEvent]:
    return (
        db.session.query(OutboxEvent)
        .filter(OutboxEvent.sent_at.is_(None))
        .order_by(OutboxEvent.id.asc())
        .limit(limit)
        .all()
    )


def mark_sent(event_id: int) -> bool:
    row = db.session.get(OutboxEvent, event_id)
    if row is None or row.sent_at is not None:
        return False
    row.sent_at = utcnow()
    db.session.commit()
    return True


def dispatch_pending(handlers: Mapping[str, EventHandler], limit: int | None = None) -> dict:
    """
    Deliver unsent events oldest-first.

    Each event is handled inside its own savepoint: a handler exception undoes
    only that handler's writes, leaves the event unsent with attempts/last_error
    bumped, and dispatch moves on. Events with no handler are marked sent.
    """
    if limit is None:
        limit = current_app.config.get("OUTBOX_DISPATCH_LIMIT", 100)

    stats = {"sent": 0, "failed": 0}
    for row in get_unsent(limit):
        handler = handlers.get(row.type)
        nested = db.session.begin_nested()
        try:
            if handler is not None:
                handler(row.payload)
            nested.commit()
        except Exception as exc:
            nested.rollback()
            current_app.logger.exception("Outbox handler failed for event %s (%s)", row.id, row.type)
            row.attempts = (row.attempts or 0) + 1
            row.last_error = str(exc)[:2000]
            db.session.commit()
            stats["failed"] += 1
            continue

        row.attempts = (row.attempts or 0) + 1
        row.sent_at = utcnow()
        row.last_error = None
        db.session.commit()
        stats["sent"] += 1

    return stats


def cleanup_sent(retention_days: int | None = None) -> int:
    """Delete delivered events older than the retention window. Returns rows deleted."""
    if retention_days is None:
        retention_days = current_app.config.get("OUTBOX_RETENTION_DAYS", 7)
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = (
        db.session.query(OutboxEvent)
        .filter(OutboxEvent.sent_at.isnot(None), OutboxEvent.sent_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
