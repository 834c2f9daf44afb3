"""
Cash session (drawer shift) lifecycle.

- OPEN: expected cash starts at the opening float and moves with cash sales
- CLOSED: counted cash within tolerance of expected
- PENDING_REVIEW: |variance_usd| above VARIANCE_REVIEW_THRESHOLD_USD, needs a manager

A manager may take an OPEN session over (closed uncounted, a new one opened)
or force-close it (counted defaults to expected).

Sessions are immutable snapshots; close and movement functions return new ones.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from possync.money import ZERO, new_id, round_usd, to_decimal
from possync.time_utils import utcnow


VARIANCE_REVIEW_THRESHOLD_USD = Decimal("5")

SESSION_STATUSES = ("OPEN", "CLOSED", "PENDING_REVIEW")

# Manual drawer movements; sale-driven ones are SALE_CASH and REFUND_CASH.
MANUAL_MOVEMENT_TYPES = ("PAID_IN", "PAID_OUT")

REASON_MIN_LENGTH = 3
REASON_MAX_LENGTH = 120


class CashSessionError(Exception):
    pass


@dataclass(frozen=True)
class CashSession:
    id: str
    tenant_id: str
    branch_id: str
    register_id: Optional[str]
    opened_by: str
    opened_at: datetime
    opening_float_usd: Decimal
    opening_float_khr: Decimal
    expected_cash_usd: Decimal
    expected_cash_khr: Decimal
    status: str = "OPEN"
    counted_cash_usd: Optional[Decimal] = None
    counted_cash_khr: Optional[Decimal] = None
    variance_usd: Optional[Decimal] = None
    variance_khr: Optional[Decimal] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    note: Optional[str] = None


def open_session(
    *,
    tenant_id: str,
    branch_id: str,
    register_id: Optional[str],
    opened_by: str,
    opening_float_usd,
    opening_float_khr,
    note: Optional[str] = None,
    opened_at: Optional[datetime] = None,
    session_id: Optional[str] = None,
) -> CashSession:
    float_usd = to_decimal(opening_float_usd)
    float_khr = to_decimal(opening_float_khr)
    if float_usd < 0 or float_khr < 0:
        raise CashSessionError("Opening float must be >= 0")

    return CashSession(
        id=session_id or new_id(),
        tenant_id=tenant_id,
        branch_id=branch_id,
        register_id=register_id,
        opened_by=opened_by,
        opened_at=opened_at or utcnow(),
        opening_float_usd=float_usd,
        opening_float_khr=float_khr,
        expected_cash_usd=float_usd,
        expected_cash_khr=float_khr,
        note=note,
    )


def classify_variance(variance_usd: Decimal) -> str:
    """CLOSED within tolerance, PENDING_REVIEW beyond it (strictly greater)."""
    if abs(variance_usd) > VARIANCE_REVIEW_THRESHOLD_USD:
        return "PENDING_REVIEW"
    return "CLOSED"


def close_session(
    session: CashSession,
    *,
    closed_by: str,
    counted_cash_usd,
    counted_cash_khr,
    note: Optional[str] = None,
    closed_at: Optional[datetime] = None,
) -> CashSession:
    if session.status != "OPEN":
        raise CashSessionError("Session is not open")

    counted_usd = to_decimal(counted_cash_usd)
    counted_khr = to_decimal(counted_cash_khr)
    if counted_usd < 0 or counted_khr < 0:
        raise CashSessionError("Counted cash must be >= 0")

    variance_usd = counted_usd - session.expected_cash_usd
    variance_khr = counted_khr - session.expected_cash_khr

    return replace(
        session,
        status=classify_variance(variance_usd),
        counted_cash_usd=counted_usd,
        counted_cash_khr=counted_khr,
        variance_usd=variance_usd,
        variance_khr=variance_khr,
        closed_by=closed_by,
        closed_at=closed_at or utcnow(),
        note=note if note is not None else session.note,
    )


def record_cash_in(session: CashSession, amount_usd=ZERO, amount_khr=ZERO) -> CashSession:
    """Cash taken into the drawer (e.g. a cash sale)."""
    if session.status != "OPEN":
        raise CashSessionError("Session is not open")
    return replace(
        session,
        expected_cash_usd=round_usd(session.expected_cash_usd + to_decimal(amount_usd)),
        expected_cash_khr=session.expected_cash_khr + to_decimal(amount_khr),
    )


def record_cash_out(session: CashSession, amount_usd=ZERO, amount_khr=ZERO) -> CashSession:
    """Cash paid out of the drawer (e.g. a refund on void)."""
    if session.status != "OPEN":
        raise CashSessionError("Session is not open")
    return replace(
        session,
        expected_cash_usd=round_usd(session.expected_cash_usd - to_decimal(amount_usd)),
        expected_cash_khr=session.expected_cash_khr - to_decimal(amount_khr),
    )


def validate_reason(reason: Optional[str], *, max_length: int = REASON_MAX_LENGTH) -> str:
    reason = (reason or "").strip()
    if len(reason) < REASON_MIN_LENGTH or len(reason) > max_length:
        raise CashSessionError(f"Reason must be between {REASON_MIN_LENGTH} and {max_length} characters")
    return reason


def hand_over(
    session: CashSession,
    *,
    closed_by: str,
    reason: str,
    closed_at: Optional[datetime] = None,
) -> CashSession:
    """
    Close a session because a manager takes the drawer over. Nothing is
    counted, so there is no variance and no review.
    """
    if session.status != "OPEN":
        raise CashSessionError("Session is not open")
    return replace(
        session,
        status="CLOSED",
        closed_by=closed_by,
        closed_at=closed_at or utcnow(),
        note=f"Taken over by manager. Reason: {reason}",
    )


def force_close(
    session: CashSession,
    *,
    closed_by: str,
    counted_cash_usd=None,
    counted_cash_khr=None,
    note: Optional[str] = None,
    closed_at: Optional[datetime] = None,
) -> CashSession:
    """Manager close. A missing count is taken to match expected cash."""
    return close_session(
        session,
        closed_by=closed_by,
        counted_cash_usd=session.expected_cash_usd if counted_cash_usd is None else counted_cash_usd,
        counted_cash_khr=session.expected_cash_khr if counted_cash_khr is None else counted_cash_khr,
        note=note,
        closed_at=closed_at,
    )
