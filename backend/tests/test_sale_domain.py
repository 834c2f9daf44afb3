"""
Sale aggregate tests: lifecycle transitions and the USD/KHR recalculation engine.

These run without a database; every transition is a pure function.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from possync.domain import sale as s
from possync.domain.sale import (
    DiscountPolicy,
    RoundingPolicy,
    SaleError,
    SaleItemModifier,
    find_best_policy,
    recalculate,
    round_khr_total,
    tender_amounts,
    tender_method_label,
)


NOW = datetime(2026, 3, 1, 9, 30, 0)


def _draft(**kwargs):
    defaults = dict(
        client_uuid="c-1",
        tenant_id="t-1",
        branch_id="b-1",
        employee_id="e-1",
        sale_type="dine_in",
        fx_rate_used="4100",
        now=NOW,
    )
    defaults.update(kwargs)
    return s.create_draft_sale(**defaults)


def _with_item(sale, price="4.25", qty=2, **kwargs):
    sale, item = s.add_item(
        sale,
        menu_item_id="m-1",
        menu_item_name="Fried Noodles",
        unit_price_usd=price,
        quantity=qty,
        now=NOW,
        **kwargs,
    )
    return sale, item


class TestRecalculation:
    """Totals are rebuilt from inputs on every mutation."""

    def test_khr_unit_price_locked_from_fx(self):
        sale, item = _with_item(_draft(), price="1.50", qty=1)
        assert item.unit_price_khr == 6150
        assert sale.subtotal_usd == Decimal("1.50")
        assert sale.subtotal_khr == 6150
        assert sale.total_usd == Decimal("1.50")
        assert sale.total_khr == 6150

    def test_recalculate_is_idempotent(self):
        sale, item = _with_item(_draft())
        sale = s.apply_line_discount(sale, item.id, "percentage", 10, now=NOW)
        sale = s.apply_order_discount(sale, "fixed", "0.50", now=NOW)
        sale = s.apply_vat(sale, "0.10", True, now=NOW)
        sale = s.set_tender_currency(sale, "KHR", RoundingPolicy(True, "NEAREST", 100), now=NOW)

        once = recalculate(sale)
        assert recalculate(once) == once
        assert once == sale

    def test_percentage_line_discount(self):
        sale, item = _with_item(_draft())
        sale = s.apply_line_discount(sale, item.id, "percentage", 10, now=NOW)
        line = sale.find_item(item.id)
        assert line.line_total_usd == Decimal("7.65")
        assert line.line_total_khr == 31365

    def test_fixed_line_discount_floors_at_zero(self):
        sale, item = _with_item(_draft())
        sale = s.apply_line_discount(sale, item.id, "fixed", 1, now=NOW)
        assert sale.find_item(item.id).line_total_usd == Decimal("7.50")
        assert sale.find_item(item.id).line_total_khr == 30750

        sale = s.apply_line_discount(sale, item.id, "fixed", 50, now=NOW)
        assert sale.find_item(item.id).line_total_usd == Decimal("0.00")
        assert sale.find_item(item.id).line_total_khr == 0

    def test_modifiers_add_to_unit_price(self):
        modifier = SaleItemModifier(
            modifier_group_id="g-1",
            modifier_option_id="o-1",
            price_adjustment_usd=Decimal("0.25"),
        )
        sale, item = _with_item(_draft(), price="1.50", qty=2, modifiers=[modifier])
        assert sale.find_item(item.id).line_total_usd == Decimal("3.50")
        assert sale.find_item(item.id).line_total_khr == (6150 + 1025) * 2

    def test_vat_applied_to_discounted_subtotal(self):
        sale, _ = _with_item(_draft())
        sale = s.apply_order_discount(sale, "percentage", 10, now=NOW)
        sale = s.apply_vat(sale, "0.10", True, now=NOW)

        assert sale.subtotal_usd == Decimal("8.50")
        assert sale.vat_amount_usd == Decimal("0.77")
        assert sale.total_usd == Decimal("8.42")
        assert sale.vat_amount_khr == 3137
        assert sale.total_khr == 31365 + 3137

    def test_vat_disabled_contributes_nothing(self):
        sale, _ = _with_item(_draft())
        sale = s.apply_vat(sale, "0.10", False, now=NOW)
        assert sale.vat_amount_usd == Decimal("0.00")
        assert sale.total_usd == Decimal("8.50")


class TestKhrRounding:
    """KHR cash rounding by mode and granularity."""

    @pytest.mark.parametrize("mode,expected", [
        ("NEAREST", 6200),
        ("UP", 6200),
        ("DOWN", 6100),
    ])
    def test_modes_at_half_step(self, mode, expected):
        assert round_khr_total(6150, RoundingPolicy(True, mode, 100)) == expected

    @pytest.mark.parametrize("mode,expected", [
        ("NEAREST", 6100),
        ("UP", 6200),
        ("DOWN", 6100),
    ])
    def test_modes_below_half_step(self, mode, expected):
        assert round_khr_total(6120, RoundingPolicy(True, mode, 100)) == expected

    def test_rounding_only_for_khr_tender(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)

        usd = s.set_tender_currency(sale, "USD", RoundingPolicy(True, "NEAREST", 100), now=NOW)
        assert usd.khr_rounding_applied is False
        assert usd.total_khr_rounded == 6150
        assert usd.rounding_delta_khr == 0

        khr = s.set_tender_currency(sale, "KHR", RoundingPolicy(True, "NEAREST", 100), now=NOW)
        assert khr.khr_rounding_applied is True
        assert khr.total_khr_rounded == 6200
        assert khr.rounding_delta_khr == 50

    def test_rounding_disabled_keeps_exact_total(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        sale = s.set_tender_currency(sale, "KHR", RoundingPolicy(False, "NEAREST", 100), now=NOW)
        assert sale.total_khr_rounded == 6150
        assert sale.rounding_delta_khr == 0


class TestBestPolicy:
    """Best-of discount selection by absolute discount amount."""

    POLICIES = [
        DiscountPolicy(id="pct", type="percentage", value=Decimal("10")),
        DiscountPolicy(id="fix", type="fixed", value=Decimal("1")),
    ]

    @pytest.mark.parametrize("base,expected", [
        (Decimal("20"), "pct"),
        (Decimal("5"), "fix"),
        (Decimal("10"), "pct"),  # tie: first seen wins
    ])
    def test_largest_discount_wins(self, base, expected):
        assert find_best_policy(self.POLICIES, base).id == expected

    def test_tie_keeps_first_seen_in_either_order(self):
        reversed_policies = list(reversed(self.POLICIES))
        assert find_best_policy(reversed_policies, Decimal("10")).id == "fix"

    def test_no_policies(self):
        assert find_best_policy([], Decimal("10")) is None


class TestPayment:
    """Cash received and change in the tender currency."""

    def test_usd_change(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        sale = s.set_payment_method(sale, "cash", cash_received_usd=5, now=NOW)
        assert sale.cash_received_usd == Decimal("5.00")
        assert sale.cash_received_khr == 20500
        assert sale.change_given_usd == Decimal("3.50")
        assert sale.change_given_khr is None

    def test_khr_change_against_rounded_total(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        sale = s.set_tender_currency(sale, "KHR", RoundingPolicy(True, "NEAREST", 100), now=NOW)
        sale = s.set_payment_method(sale, "cash", cash_received_khr=10000, now=NOW)
        assert sale.cash_received_usd == Decimal("2.44")
        assert sale.change_given_khr == 3800
        assert sale.change_given_usd is None

    def test_qr_has_no_change(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        sale = s.set_payment_method(sale, "qr", now=NOW)
        assert sale.change_given_usd is None
        assert sale.change_given_khr is None

    def test_change_never_negative(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        sale = s.set_payment_method(sale, "cash", cash_received_usd=1, now=NOW)
        assert sale.change_given_usd == Decimal("0.00")

    def test_tender_amounts_only_in_tender_currency(self):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        assert tender_amounts(sale) == (Decimal("1.50"), 0)

        khr = s.set_tender_currency(sale, "KHR", RoundingPolicy(True, "NEAREST", 100), now=NOW)
        assert tender_amounts(khr) == (Decimal("0.00"), 6200)

    @pytest.mark.parametrize("method", ["transfer", "other", "CASH"])
    def test_only_cash_and_qr_accepted(self, method):
        sale, _ = _with_item(_draft(), price="1.50", qty=1)
        with pytest.raises(SaleError, match="Unknown payment method"):
            s.set_payment_method(sale, method, now=NOW)

    def test_tender_method_labels(self):
        assert tender_method_label("cash") == "CASH"
        assert tender_method_label("qr") == "QR"
        with pytest.raises(SaleError):
            tender_method_label("transfer")


class TestLifecycle:
    """draft -> finalized -> voided | reopened."""

    def test_finalize_requires_items(self):
        with pytest.raises(SaleError, match="Cannot finalize empty sale"):
            s.finalize_sale(_draft(), now=NOW)

    def test_finalize_sets_timestamps(self):
        sale, _ = _with_item(_draft())
        finalized = s.finalize_sale(sale, now=NOW)
        assert finalized.state == "finalized"
        assert finalized.finalized_at == NOW
        assert finalized.in_prep_at == NOW
        assert finalized.fulfillment_status == "in_prep"

    def test_finalize_only_from_draft(self):
        sale, _ = _with_item(_draft())
        finalized = s.finalize_sale(sale, now=NOW)
        with pytest.raises(SaleError, match="Only draft sales can be finalized"):
            s.finalize_sale(finalized, now=NOW)

    def test_cannot_add_items_after_finalize(self):
        sale, _ = _with_item(_draft())
        finalized = s.finalize_sale(sale, now=NOW)
        with pytest.raises(SaleError):
            _with_item(finalized)

    def test_void_only_finalized(self):
        sale, _ = _with_item(_draft())
        with pytest.raises(SaleError, match="Only finalized sales can be voided"):
            s.void_sale(sale, "mistake", now=NOW)

        voided = s.void_sale(s.finalize_sale(sale, now=NOW), "mistake", now=NOW)
        assert voided.state == "voided"
        assert voided.fulfillment_status == "cancelled"
        assert voided.cancelled_at == NOW
        assert voided.void_reason == "mistake"

    def test_update_fulfillment(self):
        sale, _ = _with_item(_draft())
        with pytest.raises(SaleError, match="Only finalized sales can have fulfillment updated"):
            s.update_fulfillment(sale, "ready", now=NOW)

        ready = s.update_fulfillment(s.finalize_sale(sale, now=NOW), "ready", now=NOW)
        assert ready.fulfillment_status == "ready"
        assert ready.ready_at == NOW

    def test_delete_only_drafts(self):
        sale, _ = _with_item(_draft())
        s.assert_deletable_draft(sale)
        with pytest.raises(SaleError, match="Only draft sales can be deleted"):
            s.assert_deletable_draft(s.finalize_sale(sale, now=NOW))

    def test_reopen_links_new_draft(self):
        sale, _ = _with_item(_draft())
        sale = s.apply_vat(sale, "0.10", True, now=NOW)
        finalized = s.finalize_sale(sale, now=NOW)

        original, draft = s.reopen_sale(finalized, "e-2", now=NOW)

        assert original.state == "reopened"
        assert draft.state == "draft"
        assert draft.ref_previous_sale_id == finalized.id
        assert draft.id != finalized.id
        assert draft.employee_id == "e-2"
        assert draft.vat_enabled is True
        assert draft.total_usd == finalized.total_usd
        assert [i.menu_item_id for i in draft.items] == [i.menu_item_id for i in finalized.items]
        assert {i.id for i in draft.items}.isdisjoint({i.id for i in finalized.items})

    def test_reopen_only_finalized(self):
        with pytest.raises(SaleError, match="Only finalized sales can be reopened"):
            s.reopen_sale(_draft(), "e-2", now=NOW)

    def test_update_quantity_and_remove(self):
        sale, item = _with_item(_draft())
        sale = s.update_item_quantity(sale, item.id, 3, now=NOW)
        assert sale.total_usd == Decimal("12.75")

        with pytest.raises(SaleError, match="Item not found"):
            s.update_item_quantity(sale, "missing", 1, now=NOW)

        sale = s.remove_item(sale, item.id, now=NOW)
        assert sale.items == ()
        assert sale.total_usd == Decimal("0.00")

    @pytest.mark.parametrize("qty", [0, 10000])
    def test_quantity_bounds(self, qty):
        with pytest.raises(SaleError, match="Quantity must be between 1 and 9999"):
            _with_item(_draft(), qty=qty)

        sale, item = _with_item(_draft())
        with pytest.raises(SaleError, match="Quantity must be between 1 and 9999"):
            s.update_item_quantity(sale, item.id, qty, now=NOW)

    def test_policy_stale_carried_on_draft(self):
        assert _draft().policy_stale is False
        assert _draft(policy_stale=True).policy_stale is True
