# Overview: Cash registers, cash session persistence, manager take-over and force-close, and drawer movements.

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import CashMovement, CashRegister, CashSessionRecord
from possync.domain.cash_session import (
    MANUAL_MOVEMENT_TYPES,
    CashSession,
    CashSessionError,
    force_close,
    hand_over,
    open_session,
    record_cash_in,
    record_cash_out,
    validate_reason,
)
from possync.money import ZERO, to_decimal, to_json_number
from possync.time_utils import to_utc_z, utcnow
from possync.validation import MAX_AMOUNT_KHR, require_amount
from . import audit_service, outbox_service
from .concurrency import lock_for_update


class RegisterError(Exception):
    pass


# =============================================================================
# REGISTERS
# =============================================================================

def get_register(session, register_id: str) -> Optional[CashRegister]:
    return session.get(CashRegister, register_id)


def create_register(tenant_id: str, branch_id: str, name: str, register_id: str | None = None) -> CashRegister:
    if not name or not name.strip():
        raise RegisterError("Register name is required")
    register = CashRegister(tenant_id=tenant_id, branch_id=branch_id, name=name.strip(), status="ACTIVE")
    if register_id:
        register.id = register_id
    db.session.add(register)
    db.session.commit()
    return register


def list_registers(tenant_id: str, branch_id: str | None = None, include_inactive: bool = False) -> list[CashRegister]:
    query = db.session.query(CashRegister).filter_by(tenant_id=tenant_id)
    if branch_id:
        query = query.filter_by(branch_id=branch_id)
    if not include_inactive:
        query = query.filter_by(status="ACTIVE")
    return query.order_by(CashRegister.name.asc()).all()


def deactivate_register(tenant_id: str, register_id: str) -> CashRegister:
    register = db.session.get(CashRegister, register_id)
    if register is None or register.tenant_id != tenant_id:
        raise RegisterError("Register not found")
    if find_open_session_for_register(db.session, tenant_id, register.branch_id, register_id) is not None:
        raise RegisterError("Cannot deactivate a register with an open session")
    register.status = "INACTIVE"
    db.session.commit()
    return register


# =============================================================================
# SESSIONS
# =============================================================================

def session_from_record(row: CashSessionRecord) -> CashSession:
    return CashSession(
        id=row.id,
        tenant_id=row.tenant_id,
        branch_id=row.branch_id,
        register_id=row.register_id,
        opened_by=row.opened_by,
        opened_at=row.opened_at,
        opening_float_usd=to_decimal(row.opening_float_usd),
        opening_float_khr=to_decimal(row.opening_float_khr),
        expected_cash_usd=to_decimal(row.expected_cash_usd),
        expected_cash_khr=to_decimal(row.expected_cash_khr),
        status=row.status,
        counted_cash_usd=None if row.counted_cash_usd is None else to_decimal(row.counted_cash_usd),
        counted_cash_khr=None if row.counted_cash_khr is None else to_decimal(row.counted_cash_khr),
        variance_usd=None if row.variance_usd is None else to_decimal(row.variance_usd),
        variance_khr=None if row.variance_khr is None else to_decimal(row.variance_khr),
        closed_by=row.closed_by,
        closed_at=row.closed_at,
        note=row.note,
    )


def _copy_session(row: CashSessionRecord, cash_session: CashSession) -> None:
    row.tenant_id = cash_session.tenant_id
    row.branch_id = cash_session.branch_id
    row.register_id = cash_session.register_id
    row.opened_by = cash_session.opened_by
    row.opened_at = cash_session.opened_at
    row.opening_float_usd = cash_session.opening_float_usd
    row.opening_float_khr = cash_session.opening_float_khr
    row.expected_cash_usd = cash_session.expected_cash_usd
    row.expected_cash_khr = cash_session.expected_cash_khr
    row.counted_cash_usd = cash_session.counted_cash_usd
    row.counted_cash_khr = cash_session.counted_cash_khr
    row.variance_usd = cash_session.variance_usd
    row.variance_khr = cash_session.variance_khr
    row.status = cash_session.status
    row.closed_by = cash_session.closed_by
    row.closed_at = cash_session.closed_at
    row.note = cash_session.note


def save_session(session, cash_session: CashSession) -> CashSessionRecord:
    """Insert or update the session row. Flushes, no commit."""
    row = session.get(CashSessionRecord, cash_session.id)
    if row is None:
        row = CashSessionRecord(id=cash_session.id)
        session.add(row)
    _copy_session(row, cash_session)
    session.flush()
    return row


def get_session_for_update(session, session_id: str) -> Optional[CashSession]:
    row = lock_for_update(session.query(CashSessionRecord).filter_by(id=session_id)).one_or_none()
    return session_from_record(row) if row is not None else None


def find_open_session_for_register(session, tenant_id: str, branch_id: str, register_id: str) -> Optional[CashSessionRecord]:
    return (
        session.query(CashSessionRecord)
        .filter_by(tenant_id=tenant_id, branch_id=branch_id, register_id=register_id, status="OPEN")
        .first()
    )


def find_open_branch_session(session, tenant_id: str, branch_id: str) -> Optional[CashSessionRecord]:
    """Device-agnostic OPEN session (no register) for the branch."""
    return (
        session.query(CashSessionRecord)
        .filter_by(tenant_id=tenant_id, branch_id=branch_id, status="OPEN")
        .filter(CashSessionRecord.register_id.is_(None))
        .first()
    )


def find_open_session_for_actor(session, tenant_id: str, branch_id: str, actor_id: str) -> Optional[CashSessionRecord]:
    return lock_for_update(
        session.query(CashSessionRecord)
        .filter_by(tenant_id=tenant_id, branch_id=branch_id, opened_by=actor_id, status="OPEN")
        .order_by(CashSessionRecord.opened_at.desc())
    ).first()


def _commit(fn):
    """Run a manager action in one transaction; any error rolls back."""
    try:
        result = fn()
        db.session.commit()
        return result
    except Exception:
        db.session.rollback()
        raise


def _closed_event(closed: CashSession) -> dict:
    return {
        "type": "cash.session_closed",
        "v": 1,
        "tenantId": closed.tenant_id,
        "branchId": closed.branch_id,
        "sessionId": closed.id,
        "closedBy": closed.closed_by,
        "closedAt": to_utc_z(closed.closed_at),
        "expectedCash": to_json_number(closed.expected_cash_usd),
        "actualCash": to_json_number(closed.counted_cash_usd),
        "variance": to_json_number(closed.variance_usd),
        "status": closed.status,
    }


def _load_open_session(tenant_id: str, session_id: str) -> CashSession:
    current = get_session_for_update(db.session, session_id)
    if current is None or current.tenant_id != tenant_id:
        raise CashSessionError("Session not found")
    if current.status != "OPEN":
        raise CashSessionError("Session is not open")
    return current


# =============================================================================
# MANAGER ACTIONS
# =============================================================================

def take_over_session(
    *,
    tenant_id: str,
    branch_id: str,
    new_opened_by: str,
    reason: str,
    opening_float_usd,
    opening_float_khr,
    register_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> CashSession:
    """
    Close the OPEN session on a register (or the branch session when no
    register is given) without a count, and open a fresh one for
    `new_opened_by` in the same transaction.
    """
    reason = validate_reason(reason)

    def _op():
        if register_id is not None:
            row = find_open_session_for_register(db.session, tenant_id, branch_id, register_id)
        else:
            row = find_open_branch_session(db.session, tenant_id, branch_id)
        if row is None:
            raise CashSessionError("No open session found to take over")

        now = utcnow()
        previous = hand_over(session_from_record(row), closed_by=new_opened_by, reason=reason, closed_at=now)
        # Flush the close first: the partial unique index allows one OPEN row
        save_session(db.session, previous)

        replacement = open_session(
            tenant_id=tenant_id,
            branch_id=branch_id,
            register_id=register_id,
            opened_by=new_opened_by,
            opening_float_usd=require_amount(opening_float_usd, "opening_float_usd"),
            opening_float_khr=require_amount(opening_float_khr, "opening_float_khr", maximum=MAX_AMOUNT_KHR),
            note=f"Taken over from previous session. Reason: {reason}",
            opened_at=now,
        )
        save_session(db.session, replacement)

        audit_service.write_audit(
            db.session,
            tenant_id=tenant_id,
            branch_id=branch_id,
            employee_id=new_opened_by,
            actor_role=actor_role,
            action_type="CASH_SESSION_TAKEN_OVER",
            resource_type="CASH_SESSION",
            resource_id=replacement.id,
            occurred_at=now,
            details={
                "previous_session_id": previous.id,
                "previous_opened_by": previous.opened_by,
                "previous_expected_cash_usd": previous.expected_cash_usd,
                "reason": reason,
            },
        )
        outbox_service.publish(db.session, {
            "type": "cash.session_taken_over",
            "v": 1,
            "tenantId": tenant_id,
            "branchId": branch_id,
            "oldSessionId": previous.id,
            "newSessionId": replacement.id,
            "takenOverBy": new_opened_by,
            "reason": reason,
            "timestamp": to_utc_z(now),
        })
        current_app.logger.info(
            "Cash session %s taken over by %s as %s", previous.id, new_opened_by, replacement.id,
        )
        return replacement

    return _commit(_op)


def force_close_session(
    *,
    tenant_id: str,
    session_id: str,
    closed_by: str,
    reason: str,
    counted_cash_usd=None,
    counted_cash_khr=None,
    note: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> CashSession:
    """
    Manager close of someone else's session. Variance review applies as on a
    normal close; without a count the drawer is assumed to match.
    """
    reason = validate_reason(reason)

    def _op():
        current = _load_open_session(tenant_id, session_id)
        closed = force_close(
            current,
            closed_by=closed_by,
            counted_cash_usd=counted_cash_usd,
            counted_cash_khr=counted_cash_khr,
            note=note,
        )
        save_session(db.session, closed)

        audit_service.write_audit(
            db.session,
            tenant_id=closed.tenant_id,
            branch_id=closed.branch_id,
            employee_id=closed_by,
            actor_role=actor_role,
            action_type="CASH_SESSION_FORCE_CLOSED",
            resource_type="CASH_SESSION",
            resource_id=closed.id,
            occurred_at=closed.closed_at,
            details={
                "reason": reason,
                "status": closed.status,
                "expected_cash_usd": closed.expected_cash_usd,
                "expected_cash_khr": closed.expected_cash_khr,
                "counted_cash_usd": closed.counted_cash_usd,
                "counted_cash_khr": closed.counted_cash_khr,
                "variance_usd": closed.variance_usd,
                "variance_khr": closed.variance_khr,
                "counted_provided": counted_cash_usd is not None or counted_cash_khr is not None,
            },
        )
        outbox_service.publish(db.session, _closed_event(closed))
        return closed

    return _commit(_op)


# =============================================================================
# MANUAL MOVEMENTS
# =============================================================================

def _paid_out_limits() -> tuple:
    cfg = current_app.config
    return (
        to_decimal(cfg.get("CASH_PAID_OUT_LIMIT_USD", "500")),
        to_decimal(cfg.get("CASH_PAID_OUT_LIMIT_KHR", "2000000")),
    )


def record_cash_movement(
    *,
    tenant_id: str,
    session_id: str,
    actor_id: str,
    movement_type: str,
    amount_usd=0,
    amount_khr=0,
    reason: str,
    manager_approved: bool = False,
    actor_role: Optional[str] = None,
) -> CashMovement:
    """
    Paid-in or paid-out by hand against an OPEN session. Paid-outs above the
    configured limit need `manager_approved`.
    """
    if movement_type not in MANUAL_MOVEMENT_TYPES:
        raise CashSessionError(f"Movement type must be one of: {', '.join(MANUAL_MOVEMENT_TYPES)}")
    reason = validate_reason(reason)
    usd = require_amount(amount_usd, "amount_usd")
    khr = require_amount(amount_khr, "amount_khr", maximum=MAX_AMOUNT_KHR)
    if usd == 0 and khr == 0:
        raise CashSessionError("Amount must be greater than zero")

    if movement_type == "PAID_OUT":
        if not current_app.config.get("CASH_ALLOW_PAID_OUT", True):
            raise CashSessionError("Paid-out operations are not allowed by tenant policy")
        limit_usd, limit_khr = _paid_out_limits()
        if not manager_approved and (usd > limit_usd or khr > limit_khr):
            raise CashSessionError(
                f"Paid-out amount exceeds limit (${limit_usd} USD / {limit_khr} KHR). Manager approval required."
            )

    def _op():
        current = _load_open_session(tenant_id, session_id)
        if movement_type == "PAID_IN":
            updated = record_cash_in(current, usd, khr)
        else:
            updated = record_cash_out(current, usd, khr)
        save_session(db.session, updated)

        movement = CashMovement(
            session_id=updated.id,
            type=movement_type,
            amount_usd=usd,
            amount_khr=khr,
            reason=reason,
            created_by=actor_id,
        )
        db.session.add(movement)
        db.session.flush()

        audit_service.write_audit(
            db.session,
            tenant_id=tenant_id,
            branch_id=updated.branch_id,
            employee_id=actor_id,
            actor_role=actor_role,
            action_type=movement_type,
            resource_type="CASH_SESSION",
            resource_id=updated.id,
            details={
                "movement_id": movement.id,
                "amount_usd": usd,
                "amount_khr": khr,
                "reason": reason,
                "manager_approved": manager_approved,
            },
        )
        outbox_service.publish(db.session, {
            "type": f"cash.{movement_type.lower()}",
            "v": 1,
            "tenantId": tenant_id,
            "branchId": updated.branch_id,
            "sessionId": updated.id,
            "movementId": movement.id,
            "movementType": movement_type,
            "actorId": actor_id,
            "amountUsd": to_json_number(usd),
            "amountKhr": to_json_number(khr),
            "reason": reason,
            "expectedCashUsd": to_json_number(updated.expected_cash_usd),
            "timestamp": to_utc_z(movement.created_at),
        })
        return movement

    return _commit(_op)


def record_paid_in(**kwargs) -> CashMovement:
    return record_cash_movement(movement_type="PAID_IN", **kwargs)


def record_paid_out(**kwargs) -> CashMovement:
    return record_cash_movement(movement_type="PAID_OUT", **kwargs)


# =============================================================================
# EVENT CONSUMERS
# =============================================================================

def _cash_tender_totals(event: dict) -> tuple:
    usd = ZERO
    khr = ZERO
    for tender in event.get("tenders") or []:
        if tender.get("method") == "CASH":
            usd += to_decimal(tender.get("amountUsd") or 0)
            khr += to_decimal(tender.get("amountKhr") or 0)
    return usd, khr


def _record_movement(event: dict, movement_type: str, result_event_type: str) -> Optional[CashMovement]:
    session = db.session
    usd, khr = _cash_tender_totals(event)
    if usd == 0 and khr == 0:
        return None

    sale_id = event["saleId"]
    if session.query(CashMovement).filter_by(sale_id=sale_id, type=movement_type).first() is not None:
        return None

    row = find_open_session_for_actor(session, event["tenantId"], event["branchId"], event["actorId"])
    if row is None:
        current_app.logger.warning(
            "No open cash session for actor %s in branch %s; %s for sale %s not recorded",
            event["actorId"], event["branchId"], movement_type, sale_id,
        )
        return None

    cash_session = session_from_record(row)
    if movement_type == "SALE_CASH":
        cash_session = record_cash_in(cash_session, usd, khr)
    else:
        cash_session = record_cash_out(cash_session, usd, khr)
    _copy_session(row, cash_session)

    movement = CashMovement(
        session_id=row.id,
        sale_id=sale_id,
        type=movement_type,
        amount_usd=usd,
        amount_khr=khr,
        created_by=event["actorId"],
    )
    session.add(movement)
    session.flush()

    audit_service.write_audit(
        session,
        tenant_id=event["tenantId"],
        branch_id=event["branchId"],
        employee_id=event["actorId"],
        actor_role=None,
        action_type=movement_type,
        resource_type="CASH_SESSION",
        resource_id=row.id,
        details={"sale_id": sale_id, "amount_usd": usd, "amount_khr": khr},
    )
    outbox_service.publish(session, {
        "type": result_event_type,
        "v": 1,
        "tenantId": event["tenantId"],
        "branchId": event["branchId"],
        "sessionId": row.id,
        "saleId": sale_id,
        "amountUsd": to_json_number(usd),
        "amountKhr": to_json_number(khr),
        "expectedCashUsd": to_json_number(row.expected_cash_usd),
        "recordedAt": to_utc_z(movement.created_at),
    })
    return movement


def record_sale_cash(event: dict) -> Optional[CashMovement]:
    """sale.finalized consumer: add CASH tenders to the actor's open session."""
    return _record_movement(event, "SALE_CASH", "cash.sale_cash_recorded")


def record_void_refund(event: dict) -> Optional[CashMovement]:
    """sale.voided consumer: take the sale's CASH tenders back out of the drawer."""
    return _record_movement(event, "REFUND_CASH", "cash.refund_cash_recorded")


def default_handlers() -> dict:
    """Outbox handlers this package consumes itself."""
    return {
        "sale.finalized": record_sale_cash,
        "sale.voided": record_void_refund,
    }
