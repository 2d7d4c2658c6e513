"""
Line-item and charge calculations.

Pure functions, no I/O. Every percentage or rate is applied per line (or per
tax rate) and rounded to a whole minor unit right there; aggregates are plain
integer sums of those rounded parts, so the grand total always equals the sum
of line totals.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from src.core.exceptions import InvalidLineItemError
from src.modules.billing.types import LineItemType
from src.shared.utils.money import Money, sum_money

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TaxRateInput:
    """A tax rate as a fraction, e.g. Decimal("0.13") for 13%."""

    name: str
    rate: Decimal
    tax_rate_id: int | None = None


@dataclass(frozen=True)
class LineItemInput:
    description: str
    quantity: int
    unit_price: Money
    item_type: LineItemType = LineItemType.SERVICE
    # Percentage 0-100
    discount_rate: Decimal | None = None
    tax_rates: tuple[TaxRateInput, ...] = ()
    service_period_start: date | None = None
    service_period_end: date | None = None


@dataclass(frozen=True)
class TaxLine:
    name: str
    rate: Decimal
    amount: Money
    tax_rate_id: int | None = None


@dataclass(frozen=True)
class LineItemTotals:
    item: LineItemInput
    gross_amount: Money
    discount_amount: Money
    discounted_amount: Money
    taxes: tuple[TaxLine, ...]
    tax_amount: Money
    line_total: Money


@dataclass(frozen=True)
class InvoiceTotals:
    currency: str
    lines: tuple[LineItemTotals, ...]
    subtotal: Money
    total_discount: Money
    total_tax: Money
    total: Money
    # Tax name -> amount, in first-seen order
    tax_breakdown: dict[str, Money] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeBreakdown:
    """A payment charge: summed lines, one charge-level discount, taxes on the rest."""

    currency: str
    lines: tuple[LineItemTotals, ...]
    subtotal: Money
    discount_amount: Money
    taxable_amount: Money
    taxes: tuple[TaxLine, ...]
    tax_amount: Money
    total: Money


def validate_tax_rate(rate: TaxRateInput, index: int | None = None) -> None:
    if not isinstance(rate.rate, Decimal):
        raise InvalidLineItemError("Tax rate must be a decimal fraction", field="tax_rates", index=index)
    if rate.rate < 0 or rate.rate > 1:
        raise InvalidLineItemError(
            f"Tax rate {rate.name} must be between 0 and 1, got {rate.rate}",
            field="tax_rates",
            index=index,
        )


def validate_line_item(item: LineItemInput, index: int | None = None) -> None:
    """Reject bad input instead of clamping it."""
    if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
        raise InvalidLineItemError("Quantity must be a whole number", field="quantity", index=index)
    if item.quantity < 0:
        raise InvalidLineItemError("Quantity cannot be negative", field="quantity", index=index)
    if item.unit_price.is_negative():
        raise InvalidLineItemError("Unit price cannot be negative", field="unit_price", index=index)
    if item.discount_rate is not None and (item.discount_rate < 0 or item.discount_rate > HUNDRED):
        raise InvalidLineItemError(
            "Discount rate must be between 0 and 100", field="discount_rate", index=index
        )
    for rate in item.tax_rates:
        validate_tax_rate(rate, index)
    if (
        item.service_period_start is not None
        and item.service_period_end is not None
        and item.service_period_end < item.service_period_start
    ):
        raise InvalidLineItemError(
            "Service period end cannot be before its start", field="service_period_end", index=index
        )


def compute_taxes(amount: Money, rates: tuple[TaxRateInput, ...] | list[TaxRateInput]) -> tuple[TaxLine, ...]:
    """One rounded amount per rate, each on the full (post-discount) amount."""
    return tuple(
        TaxLine(name=rate.name, rate=rate.rate, amount=amount.multiply(rate.rate), tax_rate_id=rate.tax_rate_id)
        for rate in rates
    )


def calculate_line_item(item: LineItemInput, index: int | None = None) -> LineItemTotals:
    validate_line_item(item, index)
    currency = item.unit_price.currency

    gross = item.unit_price.multiply(item.quantity)
    if item.discount_rate:
        discount = gross.percentage(item.discount_rate)
    else:
        discount = Money.zero(currency)
    discounted = gross - discount

    taxes = compute_taxes(discounted, item.tax_rates)
    tax_amount = sum_money((t.amount for t in taxes), currency)

    return LineItemTotals(
        item=item,
        gross_amount=gross,
        discount_amount=discount,
        discounted_amount=discounted,
        taxes=taxes,
        tax_amount=tax_amount,
        line_total=discounted + tax_amount,
    )


def _breakdown(taxes) -> dict[str, Money]:
    breakdown: dict[str, Money] = {}
    for tax in taxes:
        if tax.name in breakdown:
            breakdown[tax.name] = breakdown[tax.name] + tax.amount
        else:
            breakdown[tax.name] = tax.amount
    return breakdown


def calculate_totals(items: list[LineItemInput], currency: str) -> InvoiceTotals:
    """
    Invoice totals for an ordered list of line items.

    Raises:
        InvalidLineItemError: for the first invalid item.
        CurrencyMismatchError: if an item is priced in another currency.
    """
    lines = tuple(calculate_line_item(item, index) for index, item in enumerate(items))

    subtotal = sum_money((line.gross_amount for line in lines), currency)
    total_discount = sum_money((line.discount_amount for line in lines), currency)
    total_tax = sum_money((line.tax_amount for line in lines), currency)
    total = sum_money((line.line_total for line in lines), currency)

    return InvoiceTotals(
        currency=currency,
        lines=lines,
        subtotal=subtotal,
        total_discount=total_discount,
        total_tax=total_tax,
        total=total,
        tax_breakdown=_breakdown(tax for line in lines for tax in line.taxes),
    )


def calculate_charge(
    items: list[LineItemInput],
    currency: str,
    discount_amount: Money | None = None,
    tax_rates: list[TaxRateInput] | None = None,
) -> ChargeBreakdown:
    """
    Amounts for a payment charge.

    The discount (already resolved, e.g. from a discount code) applies to the
    summed subtotal and is capped at it; taxes are charged on what remains.
    Line-level tax rates on the items are ignored here, charge taxes come from
    ``tax_rates``.
    """
    for rate in tax_rates or []:
        validate_tax_rate(rate)
    lines = tuple(calculate_line_item(item, index) for index, item in enumerate(items))
    subtotal = sum_money((line.discounted_amount for line in lines), currency)

    discount = discount_amount if discount_amount is not None else Money.zero(currency)
    if discount.is_negative():
        raise InvalidLineItemError("Discount amount cannot be negative", field="discount_amount")
    discount = discount.min(subtotal)

    taxable = subtotal - discount
    taxes = compute_taxes(taxable, tax_rates or [])
    tax_amount = sum_money((t.amount for t in taxes), currency)

    return ChargeBreakdown(
        currency=currency,
        lines=lines,
        subtotal=subtotal,
        discount_amount=discount,
        taxable_amount=taxable,
        taxes=taxes,
        tax_amount=tax_amount,
        total=taxable + tax_amount,
    )
