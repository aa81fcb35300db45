"""
Tests for fixed-point helpers.

Tests:
- Truncating division toward zero
- Scaled multiply-divide and word-width checks
- Clamped interpolation, including the empty-range guard
"""

import pytest

from volfee.errors import ArithmeticOverflow, InvalidConfiguration
from volfee.fixed_point import (
    MAX_UINT, checked_add, checked_mul, div_trunc, interpolate, scaled_mul_div
)


class TestDivTrunc:
    """Division truncates toward zero, unlike //."""

    def test_positive(self):
        assert div_trunc(7, 2) == 3

    def test_negative_numerator_truncates_up(self):
        """-7 / 2 is -3 (floor division would give -4)."""
        assert div_trunc(-7, 2) == -3
        assert -7 // 2 == -4

    def test_negative_denominator(self):
        assert div_trunc(7, -2) == -3
        assert div_trunc(-7, -2) == 3

    def test_zero_divisor_raises(self):
        with pytest.raises(ZeroDivisionError):
            div_trunc(1, 0)


class TestCheckedOps:
    """Emulated 256-bit word arithmetic."""

    def test_checked_add_at_limit(self):
        assert checked_add(MAX_UINT - 1, 1) == MAX_UINT

    def test_checked_add_overflow(self):
        with pytest.raises(ArithmeticOverflow):
            checked_add(MAX_UINT, 1)

    def test_checked_mul_overflow(self):
        with pytest.raises(ArithmeticOverflow):
            checked_mul(1 << 200, 1 << 100)

    def test_checked_mul_rejects_negative_result(self):
        with pytest.raises(ArithmeticOverflow):
            checked_mul(-3, 4)


class TestScaledMulDiv:
    """a * b / scale."""

    def test_reference_alpha_weighting(self):
        """0.30 weight on a squared displacement of 10000 is 3000."""
        assert scaled_mul_div(3000, 10000, 10000) == 3000

    def test_truncates(self):
        assert scaled_mul_div(7000, 1029, 10000) == 720  # 720.3

    def test_zero_scale_is_configuration_error(self):
        with pytest.raises(InvalidConfiguration):
            scaled_mul_div(1, 1, 0)

    def test_negative_operand_rejected(self):
        with pytest.raises(ArithmeticOverflow):
            scaled_mul_div(-1, 5, 10)

    def test_intermediate_overflow(self):
        with pytest.raises(ArithmeticOverflow):
            scaled_mul_div(MAX_UINT, 2, 2)


class TestInterpolate:
    """Clamped linear interpolation."""

    def test_clamps_below_and_at_low(self):
        assert interpolate(0, 100, 10000, 500, 10000) == 500
        assert interpolate(100, 100, 10000, 500, 10000) == 500

    def test_clamps_at_and_above_high(self):
        assert interpolate(10000, 100, 10000, 500, 10000) == 10000
        assert interpolate(99999, 100, 10000, 500, 10000) == 10000

    def test_reference_midpoint(self):
        """5050 is halfway between 100 and 10000: 500 + 9500 / 2."""
        assert interpolate(5050, 100, 10000, 500, 10000) == 5250

    def test_reference_scenario_value(self):
        """500 + 9500 * 2900 / 9900 = 3282.8..., truncated."""
        assert interpolate(3000, 100, 10000, 500, 10000) == 3282

    def test_descending_range_truncates_toward_zero(self):
        """10 + (-10 * 1) / 3 = 10 - 3 = 7 (floor division would give 6)."""
        assert interpolate(1, 0, 3, 10, 0) == 7

    def test_empty_range_raises(self):
        with pytest.raises(InvalidConfiguration):
            interpolate(5, 10, 10, 0, 100)
