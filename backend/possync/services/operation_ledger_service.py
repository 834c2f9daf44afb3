# Overview: Idempotency ledger for offline sync operations (one row per tenant + client_op_id).

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from ..models import OfflineSyncOperation
from possync.domain.operations import OperationResult
from possync.money import json_safe
from possync.time_utils import utcnow


def find_by_key(session, tenant_id: str, client_op_id: str) -> Optional[OfflineSyncOperation]:
    return (
        session.query(OfflineSyncOperation)
        .filter_by(tenant_id=tenant_id, client_op_id=client_op_id)
        .one_or_none()
    )


def insert_processing(
    session,
    *,
    tenant_id: str,
    branch_id: str,
    client_op_id: str,
    type: str,
    payload: Any,
    occurred_at: Optional[datetime],
) -> Optional[OfflineSyncOperation]:
    """
    Claim the operation by inserting a PROCESSING row.

    Returns None when another transaction already owns the key. The unique
    violation only rolls back the savepoint, so the caller's transaction stays usable.
    """
    record = OfflineSyncOperation(
        tenant_id=tenant_id,
        branch_id=branch_id,
        client_op_id=client_op_id,
        type=type,
        payload=json_safe(payload),
        occurred_at=occurred_at,
        status="PROCESSING",
    )
    nested = session.begin_nested()
    try:
        session.add(record)
        session.flush()
        nested.commit()
    except IntegrityError:
        nested.rollback()
        return None
    return record


def _update_if_processing(session, tenant_id: str, client_op_id: str, values: dict) -> bool:
    values["updated_at"] = utcnow()
    updated = (
        session.query(OfflineSyncOperation)
        .filter_by(tenant_id=tenant_id, client_op_id=client_op_id, status="PROCESSING")
        .update(values, synchronize_session="fetch")
    )
    return updated > 0


def mark_applied(session, tenant_id: str, client_op_id: str, result: dict) -> bool:
    """PROCESSING -> APPLIED. Terminal rows are left untouched (returns False)."""
    return _update_if_processing(session, tenant_id, client_op_id, {
        "status": "APPLIED",
        "result": json_safe(result),
        "error_code": None,
        "error_message": None,
    })


def mark_failed(session, tenant_id: str, client_op_id: str, error_code: str, error_message: str) -> bool:
    """PROCESSING -> FAILED. Terminal rows are left untouched (returns False)."""
    return _update_if_processing(session, tenant_id, client_op_id, {
        "status": "FAILED",
        "result": None,
        "error_code": error_code,
        "error_message": error_message,
    })


def to_apply_result(record: OfflineSyncOperation, deduped: bool):
    """Stored record -> OperationResult. A record still PROCESSING reports FAILED."""
    if record.status == "APPLIED":
        return OperationResult(
            client_op_id=record.client_op_id,
            type=record.type,
            status="APPLIED",
            deduped=deduped,
            result=record.result,
        )
    return OperationResult(
        client_op_id=record.client_op_id,
        type=record.type,
        status="FAILED",
        deduped=deduped,
        error_code=record.error_code or "UNKNOWN",
        error_message=record.error_message or "Operation is still processing",
    )
