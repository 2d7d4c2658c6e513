import random
from datetime import date
from decimal import Decimal

import pytest

from src.core.exceptions import CurrencyMismatchError, InvalidLineItemError
from src.modules.billing.calculator import (
    LineItemInput,
    TaxRateInput,
    calculate_charge,
    calculate_line_item,
    calculate_totals,
)
from src.shared.utils.money import Money

HST = TaxRateInput(name="HST", rate=Decimal("0.13"))
GST = TaxRateInput(name="GST", rate=Decimal("0.05"))
PST = TaxRateInput(name="PST", rate=Decimal("0.07"))


def cad(cents: int) -> Money:
    return Money(cents, "CAD")


def item(unit_price: int, quantity: int = 1, discount_rate=None, tax_rates=(), **kwargs) -> LineItemInput:
    return LineItemInput(
        description=kwargs.pop("description", "Line"),
        quantity=quantity,
        unit_price=cad(unit_price),
        discount_rate=Decimal(str(discount_rate)) if discount_rate is not None else None,
        tax_rates=tuple(tax_rates),
        **kwargs,
    )


class TestLineItem:
    """Tests for single line item calculation."""

    def test_discount_then_tax(self):
        """$120.00, 10% off, 13% tax -> $122.04."""
        line = calculate_line_item(item(12000, discount_rate=10, tax_rates=[HST]))

        assert line.gross_amount == cad(12000)
        assert line.discount_amount == cad(1200)
        assert line.discounted_amount == cad(10800)
        assert line.tax_amount == cad(1404)
        assert line.line_total == cad(12204)

    def test_tax_charged_on_discounted_amount_only(self):
        line = calculate_line_item(item(10000, discount_rate=100, tax_rates=[HST]))
        assert line.discounted_amount == cad(0)
        assert line.tax_amount == cad(0)

    def test_each_tax_rounded_separately(self):
        # 333 * 0.05 = 16.65 -> 17; 333 * 0.07 = 23.31 -> 23
        line = calculate_line_item(item(333, tax_rates=[GST, PST]))
        assert [t.amount for t in line.taxes] == [cad(17), cad(23)]
        assert line.tax_amount == cad(40)

    def test_zero_quantity_contributes_nothing(self):
        line = calculate_line_item(item(5000, quantity=0, tax_rates=[HST], description="Free trial"))
        assert line.line_total == cad(0)
        assert line.item.description == "Free trial"

    def test_negative_quantity_rejected(self):
        with pytest.raises(InvalidLineItemError) as exc_info:
            calculate_line_item(item(5000, quantity=-1), index=2)
        assert exc_info.value.details["field"] == "line_items.2.quantity"

    def test_negative_price_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_line_item(item(-1))

    @pytest.mark.parametrize("rate", [-1, 101])
    def test_discount_rate_out_of_range_rejected(self, rate):
        with pytest.raises(InvalidLineItemError):
            calculate_line_item(item(1000, discount_rate=rate))

    @pytest.mark.parametrize("rate", ["-0.01", "1.5", "13"])
    def test_tax_rate_out_of_range_rejected(self, rate):
        with pytest.raises(InvalidLineItemError):
            calculate_line_item(item(1000, tax_rates=[TaxRateInput(name="BAD", rate=Decimal(rate))]))

    def test_service_period_order(self):
        with pytest.raises(InvalidLineItemError):
            calculate_line_item(
                item(1000, service_period_start=date(2026, 2, 1), service_period_end=date(2026, 1, 1))
            )


class TestInvoiceTotals:
    """Invoice examples with known results."""

    def test_quantity_without_tax(self):
        totals = calculate_totals([item(5000, quantity=2)], "CAD")
        assert totals.total == cad(10000)
        assert totals.total_tax == cad(0)

    def test_gst_only(self):
        totals = calculate_totals([item(10000, tax_rates=[GST])], "CAD")
        assert totals.total_tax == cad(500)
        assert totals.total == cad(10500)

    def test_gst_and_pst(self):
        totals = calculate_totals([item(10000, tax_rates=[GST, PST])], "CAD")
        assert totals.total_tax == cad(1200)
        assert totals.tax_breakdown == {"GST": cad(500), "PST": cad(700)}

    def test_discount_and_combined_tax(self):
        totals = calculate_totals([item(10000, discount_rate=10, tax_rates=[GST, PST])], "CAD")
        assert totals.total_discount == cad(1000)
        assert totals.total_tax == cad(1080)
        assert totals.total == cad(10080)

    def test_quantity_with_gst(self):
        totals = calculate_totals([item(2500, quantity=3, tax_rates=[GST])], "CAD")
        assert totals.subtotal == cad(7500)
        assert totals.total_tax == cad(375)
        assert totals.total == cad(7875)

    def test_single_item_invoice(self):
        totals = calculate_totals([item(12000, discount_rate=10, tax_rates=[HST])], "CAD")
        assert totals.total == cad(12204)

    def test_empty_invoice(self):
        totals = calculate_totals([], "CAD")
        assert totals.total == cad(0)

    def test_currency_mismatch(self):
        usd_item = LineItemInput(description="USD", quantity=1, unit_price=Money(100, "USD"))
        with pytest.raises(CurrencyMismatchError):
            calculate_totals([usd_item], "CAD")

    def test_no_penny_drift_on_random_invoices(self):
        """Grand total is exactly the sum of line totals for any set of lines."""
        rng = random.Random(8)
        rates = [GST, PST, HST, TaxRateInput(name="QST", rate=Decimal("0.09975"))]
        for _ in range(300):
            items = [
                item(
                    rng.randint(0, 250_000),
                    quantity=rng.randint(0, 12),
                    discount_rate=rng.choice([None, 0, 5, 10, 12.5, 15, 33.33, 100]),
                    tax_rates=rng.sample(rates, rng.randint(0, 2)),
                )
                for _ in range(rng.randint(1, 8))
            ]
            totals = calculate_totals(items, "CAD")

            assert totals.total.amount == sum(line.line_total.amount for line in totals.lines)
            assert totals.total == totals.subtotal - totals.total_discount + totals.total_tax
            assert totals.total_tax.amount == sum(m.amount for m in totals.tax_breakdown.values())
            for line in totals.lines:
                assert line.line_total == line.gross_amount - line.discount_amount + line.tax_amount


class TestCharge:
    """Charge-level discount and taxes."""

    def test_two_students_with_percentage_discount(self):
        items = [item(10000, description="Ken"), item(10000, description="Yuki")]
        charge = calculate_charge(items, "CAD", discount_amount=cad(3000))

        assert charge.subtotal == cad(20000)
        assert charge.discount_amount == cad(3000)
        assert charge.tax_amount == cad(0)
        assert charge.total == cad(17000)

    def test_tax_on_amount_after_discount(self):
        charge = calculate_charge([item(20000)], "CAD", discount_amount=cad(3000), tax_rates=[HST])
        assert charge.taxable_amount == cad(17000)
        assert charge.tax_amount == cad(2210)
        assert charge.total == cad(19210)

    def test_discount_capped_at_subtotal(self):
        charge = calculate_charge([item(1000)], "CAD", discount_amount=cad(5000), tax_rates=[HST])
        assert charge.discount_amount == cad(1000)
        assert charge.total == cad(0)

    def test_negative_discount_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_charge([item(1000)], "CAD", discount_amount=cad(-1))
