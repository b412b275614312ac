"""
test_estimate_calculations.py - Unit tests for the chiffrage pricing engine.

Tests cover:
  - compute_estimate_line_values: FO / MO costs, margin, PU HT, tax, clamping
  - derive_line_fields: defaults for missing multipliers, pinned tax rate
  - compute_estimate_totals: sums, discount, rounding modes, HT floor,
    TTC reconciliation (HT + adjusted tax == rounded TTC)
  - apply_rounding edge cases
  - discount conversions between cents and basis points
  - stored / read-only totals of frozen versions
  - build_section_path_resolver chapter paths

All tests are pure unit tests; no database or external services required.
"""

import pytest

from app.services.estimate_calculations import (
    EstimateLine,
    apply_rounding,
    build_section_path_resolver,
    compute_estimate_line_values,
    compute_estimate_totals,
    compute_initial_discount_cents,
    compute_read_only_totals,
    derive_line_fields,
    discount_bp_to_cents,
    discount_cents_to_bp,
    resolve_item_title,
    stored_discount_cents,
)


@pytest.fixture
def priced_lines():
    """
    Fixture lines of conftest as calculator inputs (Macon at 4500 c/h).

    With margin 1.2: sales 3000 + 18600 + 3600 = 25200, costs 21000.
    """
    return [
        EstimateLine(quantity=10, unit_price_ht_cents=250),
        EstimateLine(quantity=2, unit_price_ht_cents=1000, h_mo=3, labor_role_hourly_rate_cents=4500),
        EstimateLine(quantity=4, unit_price_ht_cents=500, k_fo=1.5),
    ]


# ===========================================================================
# Line values
# ===========================================================================

class TestLineValues:

    def test_full_line(self):
        """
        FO = 10 × 250 × 1 = 2500; MO = 2 h × 4000 × 1.5 = 12000
        cost 14500; sale = 14500 × 1.25 = 18125; PU = 1812.5 -> 1813
        tax = 3625; TTC = 21750
        """
        line = EstimateLine(quantity=10, unit_price_ht_cents=250, k_fo=1, h_mo=2, k_mo=1.5,
                            labor_role_hourly_rate_cents=4000)
        values = compute_estimate_line_values(line, margin_multiplier=1.25, tax_rate_bp=2000)
        assert values.cost_line_cents == 14500
        assert values.sale_line_cents == 18125
        assert values.pu_ht_cents == 1813
        assert values.tax_line_cents == 3625
        assert values.ttc_line_cents == 21750

    def test_missing_multipliers_use_defaults(self):
        """k_fo and k_mo default to 1, h_mo to 0, margin to 1."""
        values = compute_estimate_line_values(EstimateLine(quantity=3, unit_price_ht_cents=100), None, 0)
        assert values.cost_line_cents == 300
        assert values.sale_line_cents == 300

    def test_zero_quantity_has_zero_unit_price(self):
        line = EstimateLine(quantity=0, unit_price_ht_cents=100, h_mo=1, labor_role_hourly_rate_cents=5000)
        values = compute_estimate_line_values(line, 1, 2000)
        assert values.sale_line_cents == 5000
        assert values.pu_ht_cents == 0

    @pytest.mark.parametrize("field", ["quantity", "unit_price_ht_cents", "k_fo", "h_mo", "k_mo"])
    def test_negative_inputs_are_clamped(self, field):
        line = EstimateLine(quantity=2, unit_price_ht_cents=100, h_mo=1, labor_role_hourly_rate_cents=100)
        setattr(line, field, -5)
        values = compute_estimate_line_values(line, 1, 0)
        assert values.cost_line_cents >= 0
        assert values.sale_line_cents >= 0

    def test_garbage_numbers_never_raise(self):
        line = EstimateLine(quantity="abc", unit_price_ht_cents=float("nan"), k_fo=float("inf"))
        values = compute_estimate_line_values(line, "x", None)
        assert values.sale_line_cents == 0
        assert values.ttc_line_cents == 0

    @pytest.mark.parametrize("k_fo", [1, 0])
    def test_product_beyond_float_range_gives_zero(self, k_fo):
        """1e200 × 1e200 overflows (and times 0 is NaN); the line prices at 0."""
        line = EstimateLine(quantity=1e200, unit_price_ht_cents=1e200, k_fo=k_fo)
        values = compute_estimate_line_values(line, 1.2, 2000)
        assert values.cost_line_cents == 0
        assert values.sale_line_cents == 0
        assert values.pu_ht_cents == 0
        assert values.ttc_line_cents == 0

    def test_int_beyond_float_range_falls_back(self):
        line = EstimateLine(quantity=2, unit_price_ht_cents=10**400, h_mo=1, labor_role_hourly_rate_cents=100)
        values = compute_estimate_line_values(line, 1, 0)
        assert values.sale_line_cents == 100

    def test_from_row_reads_mappings(self):
        line = EstimateLine.from_row({"quantity": 2, "k_fo": 1.1, "item_type": None}, hourly_rate_cents=3000)
        assert line.quantity == 2
        assert line.k_fo == 1.1
        assert line.labor_role_hourly_rate_cents == 3000
        assert line.item_type == "line"


class TestDeriveLineFields:

    def test_fills_defaults_and_derived_cents(self):
        row = {"quantity": 4, "unit_price_ht_cents": 500, "k_fo": None, "h_mo": None, "k_mo": None,
               "tax_rate_bp": 550}
        fields = derive_line_fields(row, 1.2, 2000, None)
        assert (fields["k_fo"], fields["h_mo"], fields["k_mo"]) == (1.0, 0.0, 1.0)
        assert fields["tax_rate_bp"] == 2000
        assert fields["line_total_ht_cents"] == 2400
        assert fields["line_tax_cents"] == 480
        assert fields["line_total_ttc_cents"] == 2880
        assert fields["pu_ht_cents"] == 600

    def test_keeps_explicit_multipliers(self):
        row = {"quantity": 1, "unit_price_ht_cents": 100, "k_fo": 2, "h_mo": 0.5, "k_mo": 3}
        fields = derive_line_fields(row, 1, 0, 1000)
        assert (fields["k_fo"], fields["h_mo"], fields["k_mo"]) == (2, 0.5, 3)
        # FO 200 + MO 0.5 × 1000 × 3 = 1500
        assert fields["line_total_ht_cents"] == 1700


# ===========================================================================
# Version totals
# ===========================================================================

class TestEstimateTotals:

    def test_sums_lines(self, priced_lines):
        """Sale 25200, tax 5040, TTC 30240; cost 2500 + 15500 + 3000."""
        totals = compute_estimate_totals(priced_lines, margin_multiplier=1.2, tax_rate_bp=2000)
        assert totals.cost_subtotal_cents == 21000
        assert totals.sale_subtotal_cents == 25200
        assert totals.sale_total_cents == 25200
        assert totals.tax_cents == 5040
        assert totals.ttc_cents == 30240
        assert totals.rounded_ttc_cents == 30240
        assert totals.rounding_adjustment_cents == 0
        assert totals.adjusted_tax_cents == 5040

    def test_sections_are_ignored(self, priced_lines):
        section = EstimateLine(quantity=100, unit_price_ht_cents=100, item_type="section")
        totals = compute_estimate_totals(priced_lines + [section], 1.2, 0, 2000)
        assert totals.sale_subtotal_cents == 25200

    def test_discount_applies_before_tax(self, priced_lines):
        """25200 - 1200 = 24000; tax 4800; TTC 28800."""
        totals = compute_estimate_totals(priced_lines, 1.2, discount_cents=1200, tax_rate_bp=2000)
        assert totals.sale_total_cents == 24000
        assert totals.tax_cents == 4800
        assert totals.ttc_cents == 28800

    def test_discount_larger_than_subtotal(self, priced_lines):
        totals = compute_estimate_totals(priced_lines, 1.2, discount_cents=999999, tax_rate_bp=2000)
        assert totals.sale_total_cents == 0
        assert totals.rounded_ttc_cents == 0

    def test_rounding_up(self, priced_lines):
        """30240 -> 31000 with a 10 € step; the tax absorbs the +760."""
        totals = compute_estimate_totals(priced_lines, 1.2, 0, 2000, "up", 1000)
        assert totals.rounded_ttc_cents == 31000
        assert totals.rounding_adjustment_cents == 760
        assert totals.adjusted_tax_cents == 5800

    def test_rounding_down(self, priced_lines):
        totals = compute_estimate_totals(priced_lines, 1.2, 0, 2000, "down", 1000)
        assert totals.rounded_ttc_cents == 30000
        assert totals.rounding_adjustment_cents == -240
        assert totals.adjusted_tax_cents == 4800

    def test_rounding_nearest(self, priced_lines):
        totals = compute_estimate_totals(priced_lines, 1.2, 0, 2000, "nearest", 100)
        assert totals.rounded_ttc_cents == 30200

    def test_rounded_ttc_never_below_ht(self):
        """HT 100, TTC 120, rounded down to 0 with a 10 € step -> floored at 100."""
        totals = compute_estimate_totals(
            [EstimateLine(quantity=1, unit_price_ht_cents=100)], 1, 0, 2000, "down", 1000
        )
        assert totals.rounded_ttc_cents == 100
        assert totals.adjusted_tax_cents == 0

    @pytest.mark.parametrize("mode,step", [("none", 1), ("up", 500), ("down", 700), ("nearest", 1000)])
    @pytest.mark.parametrize("discount", [0, 333, 20000])
    def test_ht_plus_adjusted_tax_is_rounded_ttc(self, priced_lines, mode, step, discount):
        totals = compute_estimate_totals(priced_lines, 1.3, discount, 550, mode, step)
        assert totals.sale_total_cents + totals.adjusted_tax_cents == totals.rounded_ttc_cents
        assert totals.rounded_ttc_cents >= totals.sale_total_cents

    def test_huge_margin_never_raises(self):
        totals = compute_estimate_totals(
            [EstimateLine(quantity=1, unit_price_ht_cents=1000)], margin_multiplier=1e308, tax_rate_bp=2000,
        )
        assert totals.sale_total_cents == 0
        assert totals.rounded_ttc_cents == 0

    @pytest.mark.parametrize("mode", ["none", "up", "down", "nearest"])
    def test_subtotal_beyond_float_range_still_reconciles(self, mode):
        lines = [EstimateLine(quantity=1.5e308, unit_price_ht_cents=1)] * 2
        totals = compute_estimate_totals(lines, 1, 0, 2000, mode, 100)
        assert totals.sale_subtotal_cents > 2 * 10**308
        assert totals.sale_total_cents + totals.adjusted_tax_cents == totals.rounded_ttc_cents
        assert totals.rounded_ttc_cents >= totals.sale_total_cents

    def test_signature(self):
        totals = compute_estimate_totals([EstimateLine(quantity=1, unit_price_ht_cents=1000)], 1, 0, 2000)
        assert totals.signature == "1000-200-1200"


class TestApplyRounding:

    def test_none_is_identity(self):
        assert apply_rounding(12345, "none", 1000) == 12345

    @pytest.mark.parametrize("step", [0, -5, None, "abc"])
    def test_invalid_step_falls_back_to_one(self, step):
        assert apply_rounding(12345, "up", step) == 12345

    def test_nearest_half_goes_up(self):
        assert apply_rounding(1050, "nearest", 100) == 1100

    def test_integer_step_is_exact_for_huge_values(self):
        value = 10**400 + 1
        assert apply_rounding(value, "up", 100) == 10**400 + 100
        assert apply_rounding(value, "down", 100) == 10**400
        assert apply_rounding(value, "nearest", 100) == 10**400

    def test_tiny_fractional_step_leaves_value(self):
        assert apply_rounding(1000, "up", 1e-320) == 1000


# ===========================================================================
# Discounts
# ===========================================================================

class TestDiscountConversion:

    def test_cents_to_bp(self):
        """1260 / 25200 = 5 % = 500 bp."""
        assert discount_cents_to_bp(1260, 25200) == 500

    def test_bp_to_cents(self):
        assert discount_bp_to_cents(500, 25200) == 1260

    def test_zero_subtotal(self):
        assert discount_cents_to_bp(1000, 0) == 0
        assert discount_bp_to_cents(500, 0) == 0

    def test_initial_discount_from_live_prices(self, priced_lines):
        assert compute_initial_discount_cents(priced_lines, 1.2, 2000, 1000) == 2520

    def test_stored_discount_from_stored_ht(self):
        lines = [EstimateLine(line_total_ht_cents=3000), EstimateLine(line_total_ht_cents=18600),
                 EstimateLine(line_total_ht_cents=3600)]
        assert stored_discount_cents(lines, 24000, 9999) == 1200

    def test_stored_discount_without_stored_ht_uses_bp(self):
        lines = [EstimateLine(line_total_ht_cents=10000)]
        assert stored_discount_cents(lines, None, 250) == 250


class TestReadOnlyTotals:

    @pytest.fixture
    def frozen_lines(self):
        return [EstimateLine(quantity=1, unit_price_ht_cents=2000, line_total_ht_cents=3000),
                EstimateLine(quantity=1, unit_price_ht_cents=20000, line_total_ht_cents=22200)]

    def test_stored_figures_win(self, frozen_lines):
        totals = compute_read_only_totals(frozen_lines, 1200, 24000, 4800, 28800)
        assert totals.sale_subtotal_cents == 25200
        assert totals.sale_total_cents == 24000
        assert totals.tax_cents == 4800
        assert totals.rounded_ttc_cents == 28800
        assert totals.rounding_adjustment_cents == 0

    def test_rounded_stored_ttc(self, frozen_lines):
        totals = compute_read_only_totals(frozen_lines, 1200, 24000, 4800, 29000)
        assert totals.rounding_adjustment_cents == 200
        assert totals.adjusted_tax_cents == 5000

    def test_missing_stored_totals_fall_back(self, frozen_lines):
        totals = compute_read_only_totals(frozen_lines, 1200, None, None, None)
        assert totals.sale_total_cents == 24000
        assert totals.rounded_ttc_cents == 24000
        assert totals.tax_cents == 0

    def test_costs_ignore_margin(self, frozen_lines):
        totals = compute_read_only_totals(frozen_lines, 0, None, None, None)
        assert totals.cost_subtotal_cents == 22000


# ===========================================================================
# Chapter paths
# ===========================================================================

class TestSectionPaths:

    def test_paths(self, chiffrage_items):
        resolve = build_section_path_resolver(chiffrage_items)
        by_id = {item["id"]: item for item in chiffrage_items}
        assert resolve(by_id["l1"]) == "Gros oeuvre"
        assert resolve(by_id["l3"]) == "Gros oeuvre > Fondations"
        assert resolve(by_id["s1"]) == ""

    def test_untitled_section(self):
        items = [
            {"id": "s", "parent_id": None, "item_type": "section", "title": "  "},
            {"id": "l", "parent_id": "s", "item_type": "line", "title": "x"},
        ]
        assert build_section_path_resolver(items)(items[1]) == "Sans titre"

    def test_parent_cycle_terminates(self):
        items = [
            {"id": "a", "parent_id": "b", "item_type": "section", "title": "A"},
            {"id": "b", "parent_id": "a", "item_type": "section", "title": "B"},
            {"id": "l", "parent_id": "a", "item_type": "line", "title": "x"},
        ]
        assert build_section_path_resolver(items)(items[2]) == "B > A"

    def test_resolve_item_title(self):
        assert resolve_item_title("  Dalle ", "Sans titre") == "Dalle"
        assert resolve_item_title(None, "Sans titre") == "Sans titre"


# ===========================================================================
# Worked examples
# ===========================================================================

class TestWorkedExamples:
    """Reference figures used when the pricing rules were agreed."""

    def test_single_line(self):
        """
        3 × 10,00 €, no labour, margin 1.2, VAT 20 %:
        cost 3000, sale 3600, PU 1200, tax 720, TTC 4320.
        """
        line = EstimateLine(quantity=3, unit_price_ht_cents=1000, k_fo=1, h_mo=0, k_mo=1,
                            labor_role_hourly_rate_cents=0)
        values = compute_estimate_line_values(line, 1.2, 2000)
        assert (values.cost_line_cents, values.sale_line_cents, values.pu_ht_cents,
                values.tax_line_cents, values.ttc_line_cents) == (3000, 3600, 1200, 720, 4320)

    def test_discount_and_nearest_rounding(self):
        """
        Sales 3600 + 2400 = 6000; discount 600 -> HT 5400; tax 1080; TTC 6480.
        Nearest 10 € -> 6000, adjustment -480, adjusted tax 600.
        """
        lines = [EstimateLine(quantity=1, unit_price_ht_cents=3600),
                 EstimateLine(quantity=1, unit_price_ht_cents=2400)]
        totals = compute_estimate_totals(lines, 1, 600, 2000, "nearest", 1000)
        assert totals.sale_subtotal_cents == 6000
        assert totals.sale_total_cents == 5400
        assert totals.tax_cents == 1080
        assert totals.ttc_cents == 6480
        assert totals.rounded_ttc_cents == 6000
        assert totals.rounding_adjustment_cents == -480
        assert totals.adjusted_tax_cents == 600

    def test_empty_estimate(self):
        totals = compute_estimate_totals([], 1.2, 0, 2000, "up", 1000)
        assert totals.sale_total_cents == 0
        assert totals.rounded_ttc_cents == 0
        assert totals.adjusted_tax_cents == 0
