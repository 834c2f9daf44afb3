from datetime import datetime
from decimal import Decimal

import pytest

from possync.domain.cash_session import (
    CashSessionError,
    classify_variance,
    close_session,
    force_close,
    hand_over,
    open_session,
    record_cash_in,
    record_cash_out,
    validate_reason,
)


OPENED = datetime(2026, 3, 1, 8, 0, 0)
CLOSED = datetime(2026, 3, 1, 17, 0, 0)


def _open(usd="100", khr="400000"):
    return open_session(
        tenant_id="t-1",
        branch_id="b-1",
        register_id=None,
        opened_by="e-1",
        opening_float_usd=usd,
        opening_float_khr=khr,
        opened_at=OPENED,
    )


class TestCashSessionLifecycle:
    """Open, move cash, close with variance classification."""

    def test_open_sets_expected_to_float(self):
        session = _open()
        assert session.status == "OPEN"
        assert session.expected_cash_usd == Decimal("100")
        assert session.expected_cash_khr == Decimal("400000")
        assert session.opened_at == OPENED

    def test_negative_float_rejected(self):
        with pytest.raises(CashSessionError):
            _open(usd="-1")

    @pytest.mark.parametrize("counted_usd,variance,status", [
        ("90", Decimal("-10"), "PENDING_REVIEW"),
        ("96", Decimal("-4"), "CLOSED"),
        ("105", Decimal("5"), "CLOSED"),
        ("105.01", Decimal("5.01"), "PENDING_REVIEW"),
    ])
    def test_variance_escalation(self, counted_usd, variance, status):
        closed = close_session(
            _open(),
            closed_by="e-2",
            counted_cash_usd=counted_usd,
            counted_cash_khr="400000",
            closed_at=CLOSED,
        )
        assert closed.variance_usd == variance
        assert closed.variance_khr == Decimal("0")
        assert closed.status == status
        assert closed.closed_by == "e-2"
        assert closed.closed_at == CLOSED

    def test_variance_per_currency(self):
        closed = close_session(_open(), closed_by="e-1", counted_cash_usd="100", counted_cash_khr="390000")
        assert closed.variance_usd == Decimal("0")
        assert closed.variance_khr == Decimal("-10000")
        assert closed.status == "CLOSED"

    def test_close_twice_rejected(self):
        closed = close_session(_open(), closed_by="e-1", counted_cash_usd="100", counted_cash_khr="400000")
        with pytest.raises(CashSessionError, match="Session is not open"):
            close_session(closed, closed_by="e-1", counted_cash_usd="100", counted_cash_khr="400000")

    def test_cash_movements_adjust_expected(self):
        session = record_cash_in(_open(), Decimal("1.50"), 0)
        assert session.expected_cash_usd == Decimal("101.50")
        session = record_cash_out(session, Decimal("1.50"), 0)
        assert session.expected_cash_usd == Decimal("100.00")

    def test_classify_threshold_is_strict(self):
        assert classify_variance(Decimal("5")) == "CLOSED"
        assert classify_variance(Decimal("-5")) == "CLOSED"
        assert classify_variance(Decimal("-5.01")) == "PENDING_REVIEW"


class TestManagerActions:
    """Take-over and force-close."""

    def test_hand_over_closes_without_count(self):
        closed = hand_over(_open(), closed_by="m-1", reason="Shift change", closed_at=CLOSED)
        assert closed.status == "CLOSED"
        assert closed.closed_by == "m-1"
        assert closed.counted_cash_usd is None
        assert closed.variance_usd is None
        assert closed.note == "Taken over by manager. Reason: Shift change"

    def test_hand_over_requires_open_session(self):
        closed = hand_over(_open(), closed_by="m-1", reason="Shift change")
        with pytest.raises(CashSessionError, match="Session is not open"):
            hand_over(closed, closed_by="m-1", reason="Again")

    def test_force_close_defaults_count_to_expected(self):
        session = record_cash_in(_open(), Decimal("12.50"), 0)
        closed = force_close(session, closed_by="m-1", closed_at=CLOSED)
        assert closed.counted_cash_usd == Decimal("112.50")
        assert closed.variance_usd == Decimal("0")
        assert closed.status == "CLOSED"

    def test_force_close_with_short_count_needs_review(self):
        closed = force_close(_open(), closed_by="m-1", counted_cash_usd="80")
        assert closed.variance_usd == Decimal("-20")
        assert closed.status == "PENDING_REVIEW"

    @pytest.mark.parametrize("reason", [None, "", "  ab ", "x" * 121])
    def test_reason_length(self, reason):
        with pytest.raises(CashSessionError, match="Reason must be between 3 and 120 characters"):
            validate_reason(reason)

    def test_reason_trimmed(self):
        assert validate_reason("  Ice delivery ") == "Ice delivery"
