# Overview: Audit trail writer; rows share the caller's transaction.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import AuditLog
from possync.money import json_safe
from possync.time_utils import utcnow


def write_audit(
    session,
    *,
    tenant_id: str,
    branch_id: Optional[str],
    employee_id: Optional[str],
    actor_role: Optional[str],
    action_type: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    outcome: str = "SUCCESS",
    denial_reason: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """
    Insert an audit row and flush. Never commits: the row lives or dies with
    the surrounding transaction.
    """
    entry = AuditLog(
        tenant_id=tenant_id,
        branch_id=branch_id,
        employee_id=employee_id,
        actor_role=actor_role,
        action_type=action_type,
        resource_type=resource_type,
        resource_id=resource_id,
        outcome=outcome,
        denial_reason=denial_reason,
        occurred_at=occurred_at or utcnow(),
        details=json_safe(details or {}),
    )
    session.add(entry)
    session.flush()
    return entry


def list_audit_logs(
    tenant_id: str,
    *,
    branch_id: Optional[str] = None,
    action_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    limit: int = 100,
) -> list[AuditLog]:
    query = db.session.query(AuditLog).filter_by(tenant_id=tenant_id)
    if branch_id:
        query = query.filter_by(branch_id=branch_id)
    if action_type:
        query = query.filter_by(action_type=action_type)
    if resource_id:
        query = query.filter_by(resource_id=resource_id)
    return query.order_by(AuditLog.id.asc()).limit(limit).all()
