# Overview: Transactional apply pipeline for offline sync batches (ledger, savepoint, appliers, audit, outbox).

"""
Each operation runs in its own transaction:

    insert PROCESSING row -> branch checks -> SAVEPOINT -> decode + apply
        success: mark APPLIED, audit, outbox, COMMIT
        business failure: ROLLBACK TO SAVEPOINT, mark FAILED, audit, COMMIT, stop batch
        unexpected error: ROLLBACK everything (no ledger row survives), re-raise

Business failures are values (ApplyFailure), never exceptions, from the
applier boundary upward. Only infrastructure and programming errors raise.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence, Union

from flask import current_app

from possync.domain import sale as sale_domain
from possync.domain.cash_session import CashSessionError, close_session, open_session
from possync.domain.operations import (
    CASH_SESSION_CLOSED,
    CASH_SESSION_OPENED,
    SALE_FINALIZED,
    CashSessionClosedPayload,
    CashSessionOpenedPayload,
    OperationInput,
    OperationResult,
    PayloadError,
    SaleFinalizedPayload,
    decode_operation,
)
from possync.domain.sale import SaleError, SaleItemModifier
from possync.money import to_json_number
from possync.time_utils import to_utc_z, utcnow
from . import (
    audit_service,
    branch_service,
    cash_session_service,
    menu_service,
    operation_ledger_service,
    outbox_service,
    policy_service,
    sales_service,
)
from .branch_service import BranchFrozenError
from .concurrency import TransactionManager


@dataclass(frozen=True)
class SyncContext:
    """Caller identity established by the authentication gateway."""
    tenant_id: str
    branch_id: str
    actor_id: str
    actor_role: Optional[str] = None


@dataclass(frozen=True)
class ApplyFailure:
    """
    Typed business rejection of one operation.

    outcome: audit outcome (REJECTED or FAILED)
    denial_reason: audit denial reason (VALIDATION_FAILED, BRANCH_FROZEN, DEPENDENCY_MISSING, POLICY_BLOCKED)
    """
    code: str
    message: str
    outcome: str = "REJECTED"
    denial_reason: Optional[str] = None
    audit_action: str = "SYNC_OPERATION_FAILED"


@dataclass(frozen=True)
class Applied:
    result: dict
    events: tuple = ()


ApplyOutcome = Union[Applied, ApplyFailure]


@dataclass(frozen=True)
class BatchResult:
    results: tuple[OperationResult, ...] = ()
    stopped_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "stopped_at": self.stopped_at,
        }


def validation_failure(message: str) -> ApplyFailure:
    return ApplyFailure("VALIDATION_FAILED", message, denial_reason="VALIDATION_FAILED")


def dependency_missing(message: str) -> ApplyFailure:
    return ApplyFailure("DEPENDENCY_MISSING", message, outcome="FAILED", denial_reason="DEPENDENCY_MISSING")


class SyncService:
    """
    Applies sync batches. Collaborators are injected as modules (or any object
    with the same functions) so tests can substitute them.
    """

    def __init__(
        self,
        *,
        ledger=operation_ledger_service,
        branch_guard=branch_service,
        policy=policy_service,
        menu=menu_service,
        audit=audit_service,
        outbox=outbox_service,
        sales=sales_service,
        cash=cash_session_service,
        transactions: Optional[TransactionManager] = None,
    ):
        self.ledger = ledger
        self.branch_guard = branch_guard
        self.policy = policy
        self.menu = menu
        self.audit = audit
        self.outbox = outbox
        self.sales = sales
        self.cash = cash
        self.transactions = transactions or TransactionManager()
        self._appliers: dict[str, Callable] = {
            SALE_FINALIZED: self._apply_sale_finalized,
            CASH_SESSION_OPENED: self._apply_cash_session_opened,
            CASH_SESSION_CLOSED: self._apply_cash_session_closed,
        }

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def apply_batch(self, ctx: SyncContext, operations: Sequence[OperationInput]) -> BatchResult:
        """Apply operations strictly in order; stop at the first FAILED result."""
        results: list[OperationResult] = []
        for index, op in enumerate(operations):
            existing = self.ledger.find_by_key(self.transactions.session, ctx.tenant_id, op.client_op_id)
            if existing is not None:
                outcome = self.ledger.to_apply_result(existing, True)
                current_app.logger.info(
                    "Sync replay %s (%s) -> %s", op.client_op_id, op.type, outcome.status
                )
            else:
                outcome = self.transactions.with_transaction(lambda session: self._apply_one(session, ctx, op))

            results.append(outcome)
            if outcome.status == "FAILED":
                return BatchResult(results=tuple(results), stopped_at=index)

        return BatchResult(results=tuple(results), stopped_at=None)

    def _apply_one(self, session, ctx: SyncContext, op: OperationInput) -> OperationResult:
        record = self.ledger.insert_processing(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            client_op_id=op.client_op_id,
            type=op.type,
            payload=op.payload,
            occurred_at=op.occurred_at,
        )
        if record is None:
            # Lost the insert race: another request owns this key.
            existing = self.ledger.find_by_key(session, ctx.tenant_id, op.client_op_id)
            if existing is None:
                raise RuntimeError(f"Sync operation {op.client_op_id} vanished after duplicate insert")
            current_app.logger.info("Sync replay after insert race %s (%s)", op.client_op_id, op.type)
            return self.ledger.to_apply_result(existing, True)

        outcome = self._check_branch(session, ctx, op)
        if outcome is None:
            nested = session.begin_nested()
            outcome = self._decode_and_apply(session, ctx, op)
            if isinstance(outcome, ApplyFailure):
                nested.rollback()
            else:
                nested.commit()

        if isinstance(outcome, ApplyFailure):
            return self._record_failure(session, ctx, op, outcome)
        return self._record_success(session, ctx, op, outcome)

    def _check_branch(self, session, ctx: SyncContext, op: OperationInput) -> Optional[ApplyFailure]:
        if op.branch_id is not None and op.branch_id != ctx.branch_id:
            return validation_failure("branch_id does not match authenticated branch")
        try:
            self.branch_guard.assert_branch_active(session, ctx.tenant_id, ctx.branch_id)
        except BranchFrozenError as exc:
            return ApplyFailure(
                exc.code,
                exc.message,
                denial_reason="BRANCH_FROZEN",
                audit_action="SYNC_REJECTED_BRANCH_FROZEN",
            )
        return None

    def _decode_and_apply(self, session, ctx: SyncContext, op: OperationInput) -> ApplyOutcome:
        try:
            payload = decode_operation(op.type, op.payload)
        except PayloadError as exc:
            if exc.code == "NOT_IMPLEMENTED":
                return ApplyFailure("NOT_IMPLEMENTED", exc.message, denial_reason="VALIDATION_FAILED")
            return validation_failure(exc.message)

        now = op.occurred_at or utcnow()
        try:
            return self._appliers[op.type](session, ctx, payload, now)
        except (SaleError, CashSessionError) as exc:
            return validation_failure(str(exc))

    def _record_success(self, session, ctx: SyncContext, op: OperationInput, applied: Applied) -> OperationResult:
        self.ledger.mark_applied(session, ctx.tenant_id, op.client_op_id, applied.result)
        self.audit.write_audit(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            actor_role=ctx.actor_role,
            action_type="SYNC_OPERATION_APPLIED",
            resource_type="SYNC_OPERATION",
            resource_id=op.client_op_id,
            outcome="SUCCESS",
            occurred_at=op.occurred_at,
            details={"type": op.type, "result": applied.result},
        )
        for event in applied.events:
            self.outbox.publish(session, event)

        return OperationResult(
            client_op_id=op.client_op_id,
            type=op.type,
            status="APPLIED",
            deduped=False,
            result=applied.result,
        )

    def _record_failure(self, session, ctx: SyncContext, op: OperationInput, failure: ApplyFailure) -> OperationResult:
        current_app.logger.warning(
            "Sync operation %s (%s) failed: %s %s", op.client_op_id, op.type, failure.code, failure.message
        )
        self.ledger.mark_failed(session, ctx.tenant_id, op.client_op_id, failure.code, failure.message)
        self.audit.write_audit(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            actor_role=ctx.actor_role,
            action_type=failure.audit_action,
            resource_type="SYNC_OPERATION",
            resource_id=op.client_op_id,
            outcome=failure.outcome,
            denial_reason=failure.denial_reason,
            occurred_at=op.occurred_at,
            details={"type": op.type, "error_code": failure.code, "error_message": failure.message},
        )
        return OperationResult(
            client_op_id=op.client_op_id,
            type=op.type,
            status="FAILED",
            deduped=False,
            error_code=failure.code,
            error_message=failure.message,
        )

    # =========================================================================
    # APPLIERS
    # =========================================================================

    def _apply_sale_finalized(self, session, ctx: SyncContext, payload: SaleFinalizedPayload, now: datetime) -> ApplyOutcome:
        existing = self.sales.get_sale_by_client_uuid(session, ctx.tenant_id, payload.client_sale_uuid)
        if existing is not None and existing.state != "draft":
            return validation_failure("Sale already exists for client_sale_uuid")

        sale = sale_domain.create_draft_sale(
            client_uuid=payload.client_sale_uuid,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            sale_type=payload.sale_type,
            fx_rate_used=self.policy.get_fx_rate(session, ctx.tenant_id, ctx.branch_id),
            policy_stale=not self.policy.has_branch_policy(session, ctx.tenant_id, ctx.branch_id),
            sale_id=existing.id if existing is not None else None,
            now=now,
        )
        vat = self.policy.get_vat_policy(session, ctx.tenant_id, ctx.branch_id)
        sale = sale_domain.apply_vat(sale, vat.rate, vat.enabled, now=now)

        for line in payload.items:
            menu_item = self.menu.get_menu_item(session, ctx.tenant_id, ctx.branch_id, line.menu_item_id)
            if menu_item is None:
                return dependency_missing(f"Menu item not found or unavailable: {line.menu_item_id}")

            sale, item = sale_domain.add_item(
                sale,
                menu_item_id=menu_item.id,
                menu_item_name=menu_item.name,
                unit_price_usd=menu_item.price_usd,
                quantity=line.quantity,
                modifiers=[
                    SaleItemModifier(
                        modifier_group_id=m.modifier_group_id,
                        modifier_option_id=m.modifier_option_id,
                        price_adjustment_usd=m.price_adjustment_usd,
                    )
                    for m in line.modifiers
                ],
                now=now,
            )
            policies = self.policy.get_item_discount_policies(session, ctx.tenant_id, ctx.branch_id, menu_item.id)
            best = sale_domain.find_best_policy(policies, menu_item.price_usd * line.quantity)
            if best is not None:
                sale = sale_domain.apply_line_discount(sale, item.id, best.type, best.value, best.id, now=now)

        rounding = self.policy.get_rounding_policy(session, ctx.tenant_id, ctx.branch_id)
        sale = sale_domain.set_tender_currency(sale, payload.tender_currency, rounding, now=now)

        cash = payload.cash_received
        sale = sale_domain.set_payment_method(
            sale,
            payload.payment_method,
            cash_received_usd=cash.usd if cash is not None else None,
            cash_received_khr=cash.khr if cash is not None else None,
            now=now,
        )

        order_policies = self.policy.get_order_discount_policies(session, ctx.tenant_id, ctx.branch_id)
        best = sale_domain.find_best_policy(order_policies, sum(i.line_total_usd for i in sale.items))
        if best is not None:
            sale = sale_domain.apply_order_discount(sale, best.type, best.value, [best.id], now=now)

        sale = sale_domain.apply_vat(sale, vat.rate, vat.enabled, now=now)
        sale = sale_domain.finalize_sale(sale, now=now)

        self.sales.save_sale(session, sale)
        self.audit.write_audit(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            actor_role=ctx.actor_role,
            action_type="SALE_FINALIZED",
            resource_type="SALE",
            resource_id=sale.id,
            occurred_at=now,
            details={
                "client_sale_uuid": sale.client_uuid,
                "total_usd": sale.total_usd,
                "total_khr": sale.total_khr,
                "tender_currency": sale.tender_currency,
                "payment_method": sale.payment_method,
            },
        )
        return Applied(
            result={"type": SALE_FINALIZED, "saleId": sale.id},
            events=(self.sales.build_sale_finalized_event(sale, ctx.actor_id),),
        )

    def _apply_cash_session_opened(self, session, ctx: SyncContext, payload: CashSessionOpenedPayload, now: datetime) -> ApplyOutcome:
        if payload.register_id is not None:
            register = self.cash.get_register(session, payload.register_id)
            if register is None:
                return dependency_missing("Register not found")
            if register.tenant_id != ctx.tenant_id or register.branch_id != ctx.branch_id:
                return validation_failure("Register does not belong to this tenant/branch")
            if register.status != "ACTIVE":
                return validation_failure("Register is not active")
            if self.cash.find_open_session_for_register(session, ctx.tenant_id, ctx.branch_id, register.id) is not None:
                return validation_failure("A session is already open on this register. Close it or take over first.")
        elif self.cash.find_open_branch_session(session, ctx.tenant_id, ctx.branch_id) is not None:
            return validation_failure("A session is already open for this branch. Close it or take over first.")

        cash_session = open_session(
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            register_id=payload.register_id,
            opened_by=ctx.actor_id,
            opening_float_usd=payload.opening_float_usd,
            opening_float_khr=payload.opening_float_khr,
            note=payload.note,
            opened_at=now,
        )
        self.cash.save_session(session, cash_session)

        self.audit.write_audit(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            actor_role=ctx.actor_role,
            action_type="CASH_SESSION_OPENED",
            resource_type="CASH_SESSION",
            resource_id=cash_session.id,
            occurred_at=now,
            details={
                "register_id": cash_session.register_id,
                "opening_float_usd": cash_session.opening_float_usd,
                "opening_float_khr": cash_session.opening_float_khr,
            },
        )
        event = {
            "type": "cash.session_opened",
            "v": 1,
            "tenantId": ctx.tenant_id,
            "branchId": ctx.branch_id,
            "sessionId": cash_session.id,
            "openedBy": ctx.actor_id,
            "openingFloat": to_json_number(cash_session.opening_float_usd),
            "openedAt": to_utc_z(cash_session.opened_at),
        }
        return Applied(result={"type": CASH_SESSION_OPENED, "sessionId": cash_session.id}, events=(event,))

    def _apply_cash_session_closed(self, session, ctx: SyncContext, payload: CashSessionClosedPayload, now: datetime) -> ApplyOutcome:
        current = self.cash.get_session_for_update(session, payload.session_id)
        if current is None:
            return dependency_missing("Session not found")
        if current.tenant_id != ctx.tenant_id or current.branch_id != ctx.branch_id:
            return validation_failure("Session does not belong to this tenant/branch")
        if current.status != "OPEN":
            return validation_failure("Session is not open")

        closed = close_session(
            current,
            closed_by=ctx.actor_id,
            counted_cash_usd=payload.counted_cash_usd,
            counted_cash_khr=payload.counted_cash_khr,
            note=payload.note,
            closed_at=now,
        )
        self.cash.save_session(session, closed)

        self.audit.write_audit(
            session,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            employee_id=ctx.actor_id,
            actor_role=ctx.actor_role,
            action_type="CASH_SESSION_CLOSED",
            resource_type="CASH_SESSION",
            resource_id=closed.id,
            occurred_at=now,
            details={
                "status": closed.status,
                "expected_cash_usd": closed.expected_cash_usd,
                "expected_cash_khr": closed.expected_cash_khr,
                "counted_cash_usd": closed.counted_cash_usd,
                "counted_cash_khr": closed.counted_cash_khr,
                "variance_usd": closed.variance_usd,
                "variance_khr": closed.variance_khr,
            },
        )
        event = {
            "type": "cash.session_closed",
            "v": 1,
            "tenantId": ctx.tenant_id,
            "branchId": ctx.branch_id,
            "sessionId": closed.id,
            "closedBy": ctx.actor_id,
            "closedAt": to_utc_z(closed.closed_at),
            "expectedCash": to_json_number(closed.expected_cash_usd),
            "actualCash": to_json_number(closed.counted_cash_usd),
            "variance": to_json_number(closed.variance_usd),
            "status": closed.status,
        }
        return Applied(
            result={"type": CASH_SESSION_CLOSED, "sessionId": closed.id, "status": closed.status},
            events=(event,),
        )


def apply_batch(
    tenant_id: str,
    branch_id: str,
    actor_id: str,
    actor_role: Optional[str],
    operations: Sequence[OperationInput],
) -> BatchResult:
    ctx = SyncContext(tenant_id=tenant_id, branch_id=branch_id, actor_id=actor_id, actor_role=actor_role)
    return SyncService().apply_batch(ctx, operations)
