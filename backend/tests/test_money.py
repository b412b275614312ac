"""
test_money.py - Unit tests for app.services.money.

Tests cover:
  - round_half_up on positive and negative halves
  - format_currency fr-FR output (grouping, decimal comma, euro sign)
  - parse_currency_input tolerance (commas, spaces, garbage, empty)
  - compute_tax_cents basis-point arithmetic

All tests are pure unit tests; no database or external services required.
"""

import pytest

from app.services.money import (
    compute_tax_cents,
    format_currency,
    parse_currency_input,
    round_half_up,
)


# ===========================================================================
# Rounding
# ===========================================================================

class TestRoundHalfUp:
    """Halves always go towards +infinity."""

    @pytest.mark.parametrize("value,expected", [
        (0.5, 1),
        (1.5, 2),
        (2.5, 3),
        (2.4999, 2),
        (-0.5, 0),
        (-1.5, -1),
        (-1.51, -2),
        (7, 7),
    ])
    def test_values(self, value, expected):
        assert round_half_up(value) == expected

    def test_returns_int(self):
        assert isinstance(round_half_up(12.0), int)

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
    def test_non_finite_gives_zero(self, value):
        assert round_half_up(value) == 0

    def test_large_int_is_unchanged(self):
        assert round_half_up(10**400) == 10**400


# ===========================================================================
# Display
# ===========================================================================

class TestFormatCurrency:

    def test_small_amount(self):
        assert format_currency(1250) == "12,50\u00a0€"

    def test_thousands_are_grouped(self):
        """123456 cents -> 1 234,56 € with a narrow no-break space."""
        assert format_currency(123456) == "1\u202f234,56\u00a0€"

    def test_zero(self):
        assert format_currency(0) == "0,00\u00a0€"

    def test_negative(self):
        assert format_currency(-5) == "-0,05\u00a0€"


# ===========================================================================
# Parsing
# ===========================================================================

class TestParseCurrencyInput:

    def test_decimal_comma(self):
        assert parse_currency_input("12,50") == 1250

    def test_spaces_are_ignored(self):
        assert parse_currency_input(" 1 234,56 ") == 123456

    def test_decimal_point(self):
        assert parse_currency_input("3.2") == 320

    def test_trailing_garbage_is_ignored(self):
        assert parse_currency_input("12,5 €") == 1250

    def test_sub_cent_rounds_half_up(self):
        """0,005 € = 0.5 cent -> 1 cent."""
        assert parse_currency_input("0,005") == 1

    @pytest.mark.parametrize("text", [None, "", "   ", "abc", "€12"])
    def test_unparseable_returns_none(self, text):
        assert parse_currency_input(text) is None


# ===========================================================================
# Tax
# ===========================================================================

class TestComputeTaxCents:

    def test_twenty_percent(self):
        """10000 cents at 2000 bp -> 2000 cents."""
        assert compute_tax_cents(10000, 2000) == 2000

    def test_half_cent_rounds_up(self):
        """1025 × 0.2 = 205.0; 1027 × 0.055 = 56.485 -> 56."""
        assert compute_tax_cents(1025, 2000) == 205
        assert compute_tax_cents(1027, 550) == 56

    def test_zero_rate(self):
        assert compute_tax_cents(99999, 0) == 0

    def test_amount_beyond_float_range(self):
        """Integer amounts are taxed exactly, whatever their size."""
        assert compute_tax_cents(10**400, 2000) == 2 * 10**399
        assert compute_tax_cents(10**400 + 25, 2000) == 2 * 10**399 + 5


class TestDisplayParseRoundTrip:
    """Parsing the display string without its symbol gives the cents back."""

    @pytest.mark.parametrize("cents", [0, 1, 99, 1250, 123456, 987654321])
    def test_round_trip(self, cents):
        assert parse_currency_input(format_currency(cents).replace("€", "")) == cents
