"""
Cart service tests: draft lifecycle persisted through the repository, with
audit rows and outbox events per mutation.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from possync.domain.sale import SaleError
from possync.models import AuditLog, DiscountPolicy, OutboxEvent, SaleItemRecord, SaleRecord
from possync.services import sales_service


@pytest.fixture
def draft(db_session, tenant_id, branch, actor_id):
    return sales_service.create_draft_sale(
        tenant_id=tenant_id,
        branch_id=branch.id,
        actor_id=actor_id,
        sale_type="take_away",
        client_uuid=str(uuid.uuid4()),
    )


def _actions(db_session, sale_id):
    return [a.action_type for a in db_session.query(AuditLog).filter_by(resource_id=sale_id).order_by(AuditLog.id)]


def _finalized(tenant_id, sale_id, actor_id, menu_item_id):
    sales_service.add_item_to_sale(
        tenant_id=tenant_id, sale_id=sale_id, actor_id=actor_id, menu_item_id=menu_item_id, quantity=1,
    )
    sales_service.pre_checkout(
        tenant_id=tenant_id, sale_id=sale_id, actor_id=actor_id, tender_currency="USD", payment_method="cash",
        cash_received_usd=5,
    )
    return sales_service.finalize_draft_sale(tenant_id=tenant_id, sale_id=sale_id, actor_id=actor_id)


class TestDrafts:
    """Draft creation and cart edits."""

    def test_create_draft(self, db_session, draft):
        row = db_session.get(SaleRecord, draft.id)
        assert row.state == "draft"
        assert row.fx_rate_used == Decimal("4100")
        assert row.policy_stale is True
        assert _actions(db_session, draft.id) == ["CART_CREATED"]
        assert db_session.query(OutboxEvent).filter_by(type="sale.draft_created").count() == 1

    def test_create_draft_is_retry_safe(self, db_session, draft, tenant_id, branch, actor_id):
        again = sales_service.create_draft_sale(
            tenant_id=tenant_id,
            branch_id=branch.id,
            actor_id=actor_id,
            sale_type="take_away",
            client_uuid=draft.client_uuid,
        )
        assert again.id == draft.id
        assert db_session.query(SaleRecord).count() == 1

    def test_add_update_remove(self, db_session, draft, tenant_id, actor_id, noodles):
        sale = sales_service.add_item_to_sale(
            tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id, menu_item_id=noodles.id, quantity=2,
        )
        item = sale.items[0]
        assert sale.total_usd == Decimal("8.50")

        sale = sales_service.update_item_quantity(
            tenant_id=tenant_id, sale_id=draft.id, item_id=item.id, quantity=3, actor_id=actor_id,
        )
        assert sale.total_usd == Decimal("12.75")
        assert db_session.get(SaleItemRecord, item.id).quantity == 3

        sale = sales_service.remove_item(tenant_id=tenant_id, sale_id=draft.id, item_id=item.id, actor_id=actor_id)
        assert sale.items == ()
        assert db_session.query(SaleItemRecord).count() == 0
        assert _actions(db_session, draft.id) == [
            "CART_CREATED", "CART_ITEM_ADDED", "CART_ITEM_UPDATED", "CART_ITEM_REMOVED",
        ]

    def test_add_item_applies_best_item_discount(self, db_session, draft, tenant_id, branch, actor_id, noodles):
        db_session.add(DiscountPolicy(tenant_id=tenant_id, branch_id=branch.id, scope="ITEM",
                                      menu_item_id=noodles.id, discount_type="percentage", value=Decimal("20")))
        db_session.commit()

        sale = sales_service.add_item_to_sale(
            tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id, menu_item_id=noodles.id, quantity=1,
        )
        assert sale.items[0].line_total_usd == Decimal("3.40")
        assert sale.items[0].line_discount.policy_id is not None

    def test_unknown_menu_item_rolls_back(self, db_session, draft, tenant_id, actor_id):
        with pytest.raises(SaleError, match="Menu item not found or unavailable"):
            sales_service.add_item_to_sale(
                tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id, menu_item_id=str(uuid.uuid4()), quantity=1,
            )
        assert _actions(db_session, draft.id) == ["CART_CREATED"]

    def test_delete_draft(self, db_session, draft, tenant_id, actor_id):
        sales_service.delete_draft_sale(tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id)
        assert db_session.get(SaleRecord, draft.id) is None
        assert "CART_DELETED" in _actions(db_session, draft.id)
        assert db_session.query(OutboxEvent).filter_by(type="sale.draft_deleted").count() == 1


class TestCheckoutAndAfter:
    """pre-checkout, finalize, fulfillment, void and reopen."""

    def test_finalize_publishes_event(self, db_session, draft, tenant_id, actor_id, coffee):
        sale = _finalized(tenant_id, draft.id, actor_id, coffee.id)

        assert sale.state == "finalized"
        assert sale.change_given_usd == Decimal("3.50")
        event = db_session.query(OutboxEvent).filter_by(type="sale.finalized").one()
        assert event.payload["tenders"] == [{"method": "CASH", "amountUsd": 1.5, "amountKhr": 0}]

    def test_finalized_sale_cannot_be_deleted(self, db_session, draft, tenant_id, actor_id, coffee):
        _finalized(tenant_id, draft.id, actor_id, coffee.id)
        with pytest.raises(SaleError, match="Only draft sales can be deleted"):
            sales_service.delete_draft_sale(tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id)
        assert db_session.get(SaleRecord, draft.id).state == "finalized"

    def test_fulfillment(self, db_session, draft, tenant_id, actor_id, coffee):
        _finalized(tenant_id, draft.id, actor_id, coffee.id)
        sale = sales_service.update_fulfillment(tenant_id=tenant_id, sale_id=draft.id, status="ready", actor_id=actor_id)
        assert sale.fulfillment_status == "ready"

        event = db_session.query(OutboxEvent).filter_by(type="sale.fulfillment_updated").one()
        assert event.payload["fromStatus"] == "in_prep"
        assert event.payload["toStatus"] == "ready"

    def test_void_same_day(self, db_session, draft, tenant_id, actor_id, coffee):
        sale = _finalized(tenant_id, draft.id, actor_id, coffee.id)
        voided = sales_service.void_sale(
            tenant_id=tenant_id, sale_id=draft.id, reason="wrong order", actor_id=actor_id, now=sale.finalized_at,
        )
        assert voided.state == "voided"
        event = db_session.query(OutboxEvent).filter_by(type="sale.voided").one()
        assert event.payload["reason"] == "wrong order"
        assert event.payload["tenders"][0]["amountUsd"] == 1.5
        assert "VOID_APPROVED" in _actions(db_session, draft.id)

    def test_void_next_day_rejected(self, db_session, draft, tenant_id, actor_id, coffee):
        sale = _finalized(tenant_id, draft.id, actor_id, coffee.id)
        with pytest.raises(SaleError, match="Only same-day sales can be voided"):
            sales_service.void_sale(
                tenant_id=tenant_id, sale_id=draft.id, reason="late", actor_id=actor_id,
                now=sale.finalized_at + timedelta(days=1),
            )
        assert db_session.get(SaleRecord, draft.id).state == "finalized"

    def test_reopen(self, db_session, draft, tenant_id, actor_id, coffee):
        sale = _finalized(tenant_id, draft.id, actor_id, coffee.id)
        new_draft = sales_service.reopen_sale(
            tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id, reason="add dessert", now=sale.finalized_at,
        )

        assert db_session.get(SaleRecord, draft.id).state == "reopened"
        row = db_session.get(SaleRecord, new_draft.id)
        assert row.state == "draft"
        assert row.ref_previous_sale_id == draft.id
        assert len(row.items) == 1
        assert "SALE_REOPENED" in _actions(db_session, draft.id)
        assert _actions(db_session, new_draft.id) == ["CART_CREATED"]

    def test_reopen_next_day_rejected(self, db_session, draft, tenant_id, actor_id, coffee):
        sale = _finalized(tenant_id, draft.id, actor_id, coffee.id)
        with pytest.raises(SaleError, match="Only same-day sales can be reopened"):
            sales_service.reopen_sale(
                tenant_id=tenant_id, sale_id=draft.id, actor_id=actor_id, now=sale.finalized_at + timedelta(days=1),
            )
