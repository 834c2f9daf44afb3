"""
Outbox delivery tests, including the cash-drawer consumers of sale events.
"""

from datetime import timedelta
from decimal import Decimal

from conftest import make_op, sale_payload
from possync.models import CashMovement, CashSessionRecord, OutboxEvent
from possync.services import cash_session_service, outbox_service
from possync.services.sync_service import SyncService
from possync.time_utils import utcnow


def _open_and_sell(ctx, coffee, **sale_kwargs):
    service = SyncService()
    opened = service.apply_batch(ctx, [
        make_op("CASH_SESSION_OPENED", {"opening_float_usd": 100, "opening_float_khr": 400000}),
    ])
    sold = service.apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1), **sale_kwargs))])
    return opened.results[0].result["sessionId"], sold.results[0].result["saleId"]


class TestDispatch:
    """dispatch_pending / mark_sent / cleanup_sent."""

    def test_events_without_handler_are_marked_sent(self, db_session, ctx):
        SyncService().apply_batch(ctx, [
            make_op("CASH_SESSION_OPENED", {"opening_float_usd": 0, "opening_float_khr": 0}),
        ])

        stats = outbox_service.dispatch_pending({})
        assert stats == {"sent": 1, "failed": 0}
        assert outbox_service.get_unsent() == []

    def test_failing_handler_keeps_event_pending(self, db_session, ctx, coffee):
        SyncService().apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1)))])

        def boom(event):
            raise RuntimeError("drawer offline")

        stats = outbox_service.dispatch_pending({"sale.finalized": boom})
        assert stats == {"sent": 0, "failed": 1}

        row = db_session.query(OutboxEvent).filter_by(type="sale.finalized").one()
        assert row.sent_at is None
        assert row.attempts == 1
        assert row.last_error == "drawer offline"

    def test_mark_sent_once(self, db_session, ctx, coffee):
        SyncService().apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1)))])
        row = outbox_service.get_unsent()[0]

        assert outbox_service.mark_sent(row.id) is True
        assert outbox_service.mark_sent(row.id) is False
        assert outbox_service.mark_sent(999999) is False

    def test_cleanup_sent(self, db_session, ctx, coffee):
        SyncService().apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1)))])
        outbox_service.dispatch_pending({})
        row = db_session.query(OutboxEvent).one()

        assert outbox_service.cleanup_sent(7) == 0

        row.sent_at = utcnow() - timedelta(days=8)
        db_session.commit()
        assert outbox_service.cleanup_sent(7) == 1
        assert db_session.query(OutboxEvent).count() == 0


class TestCashConsumers:
    """sale.finalized / sale.voided move cash in the actor's open session."""

    def test_sale_cash_recorded_once(self, db_session, ctx, coffee):
        session_id, sale_id = _open_and_sell(ctx, coffee)

        stats = outbox_service.dispatch_pending(cash_session_service.default_handlers())
        assert stats == {"sent": 2, "failed": 0}

        session = db_session.get(CashSessionRecord, session_id)
        assert session.expected_cash_usd == Decimal("101.50")
        movement = db_session.query(CashMovement).filter_by(sale_id=sale_id).one()
        assert movement.type == "SALE_CASH"

        recorded = db_session.query(OutboxEvent).filter_by(type="cash.sale_cash_recorded").one()
        assert recorded.payload["expectedCashUsd"] == 101.5

        # redelivery is a no-op
        event = db_session.query(OutboxEvent).filter_by(type="sale.finalized").one().payload
        assert cash_session_service.record_sale_cash(event) is None
        assert db_session.query(CashMovement).count() == 1

    def test_qr_sale_moves_no_cash(self, db_session, ctx, coffee):
        session_id, _ = _open_and_sell(ctx, coffee, payment_method="qr")
        outbox_service.dispatch_pending(cash_session_service.default_handlers())

        assert db_session.query(CashMovement).count() == 0
        assert db_session.get(CashSessionRecord, session_id).expected_cash_usd == Decimal("100")

    def test_khr_cash_sale(self, db_session, ctx, coffee):
        session_id, _ = _open_and_sell(ctx, coffee, tender_currency="KHR")
        outbox_service.dispatch_pending(cash_session_service.default_handlers())

        session = db_session.get(CashSessionRecord, session_id)
        assert session.expected_cash_usd == Decimal("100")
        assert session.expected_cash_khr == Decimal("406200")

    def test_no_open_session_is_skipped(self, db_session, ctx, coffee):
        SyncService().apply_batch(ctx, [make_op("SALE_FINALIZED", sale_payload((coffee.id, 1)))])

        stats = outbox_service.dispatch_pending(cash_session_service.default_handlers())
        assert stats == {"sent": 1, "failed": 0}
        assert db_session.query(CashMovement).count() == 0
