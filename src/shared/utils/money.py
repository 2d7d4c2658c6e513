"""Money in integer minor units.

Amounts never pass through float. Scaling by a rate (quantity, percentage,
tax rate) goes through Decimal and is rounded half away from zero to a whole
minor unit at the point of the operation.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from functools import total_ordering
from typing import Iterable, Union

from src.core.exceptions.base import CurrencyMismatchError

Scalar = Union[int, Decimal, Fraction, str]

# Currencies without the usual two decimal places
_MINOR_UNIT_EXPONENTS = {"JPY": 0, "KRW": 0}


def minor_unit_exponent(currency: str) -> int:
    return _MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def _to_decimal(value: Scalar) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a valid money scalar")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, Fraction):
        return Decimal(value.numerator) / Decimal(value.denominator)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid numeric value: {value!r}") from exc
    # float is rejected on purpose: 0.1 * 3 != 0.3
    raise TypeError(f"Unsupported money scalar type: {type(value).__name__}")


def round_half_away(value: Decimal) -> int:
    """
    Round to the nearest integer, ties away from zero.

    Decimal's ROUND_HALF_UP already rounds ties away from zero for negatives.

    Examples:
        >>> round_half_away(Decimal("1404.0"))
        1404
        >>> round_half_away(Decimal("2.5"))
        3
        >>> round_half_away(Decimal("-2.5"))
        -3
    """
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


@total_ordering
@dataclass(frozen=True)
class Money:
    """An amount of a single currency, in minor units (cents)."""

    amount: int
    currency: str

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError("Money amount must be an integer number of minor units")
        if not self.currency:
            raise ValueError("Money currency is required")
        object.__setattr__(self, "currency", self.currency.upper())

    # --- Constructors ---

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_major(cls, value: Scalar, currency: str) -> "Money":
        """Parse a major-unit amount ("120.00") into minor units."""
        scaled = _to_decimal(value).scaleb(minor_unit_exponent(currency))
        return cls(round_half_away(scaled), currency)

    # --- Arithmetic ---

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def add(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def multiply(self, factor: Scalar) -> "Money":
        """Scale by an integer quantity or a rational rate, rounding once."""
        if isinstance(factor, int) and not isinstance(factor, bool):
            return Money(self.amount * factor, self.currency)
        return Money(round_half_away(Decimal(self.amount) * _to_decimal(factor)), self.currency)

    def percentage(self, percent: Scalar) -> "Money":
        """Share of this amount for a 0-100 percentage, e.g. 15 -> 15%."""
        return self.multiply(_to_decimal(percent) / Decimal(100))

    def divide(self, divisor: int) -> "Money":
        if isinstance(divisor, bool) or not isinstance(divisor, int) or divisor == 0:
            raise ValueError("Money can only be divided by a non-zero integer")
        return Money(round_half_away(Decimal(self.amount) / Decimal(divisor)), self.currency)

    def __add__(self, other: "Money") -> "Money":
        return self.add(other)

    def __sub__(self, other: "Money") -> "Money":
        return self.subtract(other)

    def __mul__(self, factor: Scalar) -> "Money":
        return self.multiply(factor)

    __rmul__ = __mul__

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    # --- Comparison ---

    def compare(self, other: "Money") -> int:
        """-1, 0 or 1."""
        self._check_currency(other)
        return (self.amount > other.amount) - (self.amount < other.amount)

    def __lt__(self, other: "Money") -> bool:
        return self.compare(other) < 0

    def min(self, other: "Money") -> "Money":
        return self if self.compare(other) <= 0 else other

    def max(self, other: "Money") -> "Money":
        return self if self.compare(other) >= 0 else other

    def is_negative(self) -> bool:
        return self.amount < 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_zero(self) -> bool:
        return self.amount == 0

    # --- Formatting boundary ---

    def to_major(self) -> Decimal:
        exponent = minor_unit_exponent(self.currency)
        return Decimal(self.amount).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))

    def format(self) -> str:
        """Display string, e.g. "$122.04 CAD"."""
        major = self.to_major()
        sign = "-" if major < 0 else ""
        return f"{sign}${abs(major):,} {self.currency}"

    def __str__(self) -> str:
        return self.format()


def sum_money(amounts: Iterable[Money], currency: str) -> Money:
    """Sum amounts of one currency; an empty iterable gives zero."""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total
