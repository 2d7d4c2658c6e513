import random
from decimal import Decimal
from fractions import Fraction

import pytest

from src.core.exceptions import CurrencyMismatchError
from src.shared.utils.money import Money, round_half_away, sum_money


class TestRoundHalfAway:
    """Tests for round_half_away function."""

    def test_ties_round_away_from_zero(self):
        assert round_half_away(Decimal("2.5")) == 3
        assert round_half_away(Decimal("-2.5")) == -3
        assert round_half_away(Decimal("0.5")) == 1

    def test_non_ties(self):
        assert round_half_away(Decimal("1404.0")) == 1404
        assert round_half_away(Decimal("10.49")) == 10
        assert round_half_away(Decimal("-10.51")) == -11


class TestMoney:
    """Tests for the Money value type."""

    def test_requires_integer_amount(self):
        with pytest.raises(TypeError):
            Money(10.5, "CAD")
        with pytest.raises(TypeError):
            Money(True, "CAD")

    def test_currency_normalized(self):
        assert Money(100, "cad").currency == "CAD"

    def test_from_major(self):
        assert Money.from_major("120.00", "CAD") == Money(12000, "CAD")
        assert Money.from_major(Decimal("0.005"), "CAD") == Money(1, "CAD")
        assert Money.from_major(500, "JPY") == Money(500, "JPY")

    def test_float_scalars_rejected(self):
        with pytest.raises(TypeError):
            Money(100, "CAD").multiply(0.13)

    def test_add_subtract(self):
        a = Money(12000, "CAD")
        b = Money(1200, "CAD")
        assert a + b == Money(13200, "CAD")
        assert a - b == Money(10800, "CAD")
        assert (b - a).is_negative()

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatchError):
            Money(100, "CAD") + Money(100, "USD")
        with pytest.raises(CurrencyMismatchError):
            Money(100, "CAD").compare(Money(100, "USD"))

    def test_multiply_by_quantity_is_exact(self):
        assert Money(2500, "CAD") * 3 == Money(7500, "CAD")

    def test_multiply_by_rate_rounds_once(self):
        # 10800 * 0.13 = 1404
        assert Money(10800, "CAD").multiply(Decimal("0.13")) == Money(1404, "CAD")
        # 1 * 0.5 = 0.5 -> 1
        assert Money(1, "CAD").multiply(Decimal("0.5")) == Money(1, "CAD")
        assert Money(-1, "CAD").multiply(Decimal("0.5")) == Money(-1, "CAD")
        assert Money(300, "CAD").multiply(Fraction(1, 3)) == Money(100, "CAD")

    def test_percentage(self):
        assert Money(12000, "CAD").percentage(10) == Money(1200, "CAD")
        assert Money(20000, "CAD").percentage(Decimal("15")) == Money(3000, "CAD")

    def test_compare_and_sign(self):
        assert Money(5, "CAD").compare(Money(7, "CAD")) == -1
        assert Money(7, "CAD").compare(Money(7, "CAD")) == 0
        assert Money(8, "CAD") > Money(7, "CAD")
        assert Money(0, "CAD").is_zero()
        assert Money(1, "CAD").is_positive()
        assert Money(3, "CAD").min(Money(2, "CAD")) == Money(2, "CAD")

    def test_format(self):
        assert Money(12204, "CAD").format() == "$122.04 CAD"
        assert Money(123456789, "CAD").format() == "$1,234,567.89 CAD"
        assert Money(-500, "CAD").format() == "-$5.00 CAD"

    def test_sum_money(self):
        assert sum_money([], "CAD") == Money.zero("CAD")
        assert sum_money([Money(1, "CAD"), Money(2, "CAD")], "CAD") == Money(3, "CAD")

    def test_divide_then_multiply_round_trip(self):
        """Each share is within half a minor unit of the exact quotient."""
        rng = random.Random(20240613)
        for _ in range(500):
            amount = rng.randint(-10_000_000, 10_000_000)
            n = rng.randint(1, 97)
            m = Money(amount, "CAD")
            assert abs((m.divide(n) * n).amount - amount) <= n // 2 + 1
            # Division result never drifts more than half a unit from the exact quotient
            assert abs(Decimal(m.divide(n).amount) - Decimal(amount) / n) <= Decimal("0.5")

    def test_divide_rejects_zero(self):
        with pytest.raises(ValueError):
            Money(100, "CAD").divide(0)
