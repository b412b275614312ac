"""
Estimate Calculations - pricing engine for chiffrage lines and version totals.

Line pricing (one leaf line of the estimate tree):
    FO cost   = round(quantity × unit price × K FO)          materials
    MO cost   = round(hours × hourly rate × K MO)            labour
    cost      = max(0, FO + MO)
    sale      = max(0, round(cost × margin multiplier))
    PU HT     = round(sale / quantity)                        display only
    tax       = round(sale × tax bp / 10000)
    TTC       = sale + tax

Version totals fold every leaf line, subtract a flat discount, add tax and
apply the rounding policy to the TTC figure. Rounding never pushes the TTC
below the HT total, and the displayed tax absorbs the rounding delta so that
HT + tax always equals the rounded TTC.

Every function here is total: invalid or missing numbers are clamped or
defaulted, nothing raises. They run on every keystroke of the editor.
"""
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.services.money import BP_SCALE, compute_tax_cents, round_half_up

ROUNDING_MODES = ("none", "nearest", "up", "down")

# Defaults applied to missing line multipliers
DEFAULT_K_FO: float = 1.0
DEFAULT_K_MO: float = 1.0
DEFAULT_H_MO: float = 0.0
DEFAULT_MARGIN_MULTIPLIER: float = 1.0


@dataclass
class EstimateLine:
    """Pricing inputs of one estimate item, detached from any storage row."""
    quantity: Optional[float] = None
    unit_price_ht_cents: Optional[float] = None
    tax_rate_bp: Optional[float] = None
    k_fo: Optional[float] = None
    h_mo: Optional[float] = None
    k_mo: Optional[float] = None
    pu_ht_cents: Optional[float] = None
    labor_role_hourly_rate_cents: Optional[float] = None
    line_total_ht_cents: Optional[int] = None
    item_type: str = "line"

    @classmethod
    def from_row(cls, row: Any, hourly_rate_cents: Optional[float] = None) -> "EstimateLine":
        """Build from an ORM row or a row-shaped mapping."""
        def read(name: str):
            if isinstance(row, Mapping):
                return row.get(name)
            return getattr(row, name, None)

        return cls(
            quantity=read("quantity"),
            unit_price_ht_cents=read("unit_price_ht_cents"),
            tax_rate_bp=read("tax_rate_bp"),
            k_fo=read("k_fo"),
            h_mo=read("h_mo"),
            k_mo=read("k_mo"),
            pu_ht_cents=read("pu_ht_cents"),
            labor_role_hourly_rate_cents=hourly_rate_cents,
            line_total_ht_cents=read("line_total_ht_cents"),
            item_type=read("item_type") or "line",
        )


@dataclass(frozen=True)
class EstimateLineValues:
    cost_line_cents: int
    sale_line_cents: int
    pu_ht_cents: int
    tax_line_cents: int
    ttc_line_cents: int


@dataclass(frozen=True)
class EstimateTotals:
    cost_subtotal_cents: int = 0
    sale_subtotal_cents: int = 0
    discount_cents: int = 0
    sale_total_cents: int = 0
    tax_cents: int = 0
    ttc_cents: int = 0
    rounded_ttc_cents: int = 0
    rounding_adjustment_cents: int = 0
    adjusted_tax_cents: int = 0

    @property
    def signature(self) -> str:
        """Key of the figures persisted on the version row."""
        return f"{self.sale_total_cents}-{self.adjusted_tax_cents}-{self.rounded_ttc_cents}"


# ── Helpers ───────────────────────────────────────────────────────────────────

def _safe_number(value: Any, fallback: float) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    return number if math.isfinite(number) else fallback


def _non_negative(value: Any, fallback: float) -> float:
    return max(_safe_number(value, fallback), 0.0)


def _scaled(*factors: float) -> int:
    """Half-up rounded product; 0 when it leaves the float range."""
    try:
        product = math.prod(float(f) for f in factors)
    except OverflowError:
        return 0
    return round_half_up(product)


def _quotient(numerator: int, denominator: float) -> int:
    try:
        return round_half_up(numerator / denominator)
    except OverflowError:
        return 0


def apply_rounding(value: int, mode: str, step: Any) -> int:
    """Round value to a multiple of step; 'none' leaves it untouched."""
    if mode == "none":
        return value
    safe_step = _safe_number(step, 1.0)
    if safe_step <= 0:
        safe_step = 1.0
    if safe_step.is_integer():
        whole_step = int(safe_step)
        if mode == "up":
            return -(-value // whole_step) * whole_step
        if mode == "down":
            return value // whole_step * whole_step
        return (2 * value + whole_step) // (2 * whole_step) * whole_step
    try:
        ratio = value / safe_step
    except OverflowError:
        return value
    if not math.isfinite(ratio):
        return value
    if mode == "up":
        return int(math.ceil(ratio) * safe_step)
    if mode == "down":
        return int(math.floor(ratio) * safe_step)
    return int(round_half_up(ratio) * safe_step)


# ── Line values ───────────────────────────────────────────────────────────────

def compute_estimate_line_values(
    item: EstimateLine,
    margin_multiplier: Any = DEFAULT_MARGIN_MULTIPLIER,
    tax_rate_bp: Any = 0,
) -> EstimateLineValues:
    quantity = _non_negative(item.quantity, 0)
    unit_price = _non_negative(item.unit_price_ht_cents, 0)
    k_fo = _non_negative(item.k_fo, DEFAULT_K_FO)
    h_mo = _non_negative(item.h_mo, DEFAULT_H_MO)
    k_mo = _non_negative(item.k_mo, DEFAULT_K_MO)
    hourly_rate = _non_negative(item.labor_role_hourly_rate_cents, 0)
    margin = _non_negative(margin_multiplier, DEFAULT_MARGIN_MULTIPLIER)
    tax_rate = _non_negative(tax_rate_bp, 0)

    fo_cost = _scaled(quantity, unit_price, k_fo)
    mo_cost = _scaled(h_mo, hourly_rate, k_mo)
    cost_line = max(fo_cost + mo_cost, 0)
    sale_line = max(_scaled(cost_line, margin), 0)
    # Display value only; never multiplied back by the quantity.
    pu_ht = _quotient(sale_line, quantity) if quantity > 0 else 0
    tax_line = compute_tax_cents(sale_line, tax_rate)

    return EstimateLineValues(
        cost_line_cents=cost_line,
        sale_line_cents=sale_line,
        pu_ht_cents=pu_ht,
        tax_line_cents=tax_line,
        ttc_line_cents=sale_line + tax_line,
    )


def derive_line_fields(
    row: Mapping[str, Any],
    margin_multiplier: Any,
    tax_rate_bp: Any,
    hourly_rate_cents: Optional[float],
) -> Dict[str, Any]:
    """
    Stored fields of a line after recomputation: defaults filled in for the
    multipliers, the tax rate pinned to the one used, derived cents replaced.
    """
    k_fo = DEFAULT_K_FO if row.get("k_fo") is None else row.get("k_fo")
    h_mo = DEFAULT_H_MO if row.get("h_mo") is None else row.get("h_mo")
    k_mo = DEFAULT_K_MO if row.get("k_mo") is None else row.get("k_mo")
    line = replace(
        EstimateLine.from_row(row, hourly_rate_cents),
        k_fo=k_fo, h_mo=h_mo, k_mo=k_mo, tax_rate_bp=tax_rate_bp,
    )
    values = compute_estimate_line_values(line, margin_multiplier, tax_rate_bp)
    return {
        "tax_rate_bp": tax_rate_bp,
        "k_fo": k_fo,
        "h_mo": h_mo,
        "k_mo": k_mo,
        "pu_ht_cents": values.pu_ht_cents,
        "line_total_ht_cents": values.sale_line_cents,
        "line_tax_cents": values.tax_line_cents,
        "line_total_ttc_cents": values.ttc_line_cents,
    }


# ── Version totals ────────────────────────────────────────────────────────────

def compute_estimate_totals(
    line_items: Iterable[EstimateLine],
    margin_multiplier: Any = DEFAULT_MARGIN_MULTIPLIER,
    discount_cents: Any = 0,
    tax_rate_bp: Any = 0,
    rounding_mode: str = "none",
    rounding_step_cents: Any = 1,
) -> EstimateTotals:
    """
    Fold leaf lines into the payable totals of a version.

    Margin and tax come from the version and apply to every line; a line's own
    tax_rate_bp is not consulted here.
    """
    margin = _non_negative(margin_multiplier, DEFAULT_MARGIN_MULTIPLIER)
    discount = int(_non_negative(discount_cents, 0))
    tax_rate = _non_negative(tax_rate_bp, 0)

    cost_subtotal = 0
    sale_subtotal = 0
    for item in line_items:
        if item.item_type != "line":
            continue
        values = compute_estimate_line_values(item, margin, tax_rate)
        cost_subtotal += values.cost_line_cents
        sale_subtotal += values.sale_line_cents

    sale_total = max(sale_subtotal - discount, 0)
    tax = compute_tax_cents(sale_total, tax_rate)
    ttc = sale_total + tax
    rounded_candidate = apply_rounding(ttc, rounding_mode, rounding_step_cents)
    rounded_ttc = max(rounded_candidate, sale_total)

    return EstimateTotals(
        cost_subtotal_cents=cost_subtotal,
        sale_subtotal_cents=sale_subtotal,
        discount_cents=discount,
        sale_total_cents=sale_total,
        tax_cents=tax,
        ttc_cents=ttc,
        rounded_ttc_cents=rounded_ttc,
        rounding_adjustment_cents=rounded_ttc - ttc,
        adjusted_tax_cents=rounded_ttc - sale_total,
    )


# ── Discount conversion ───────────────────────────────────────────────────────

def discount_cents_to_bp(discount_cents: Any, sale_subtotal_cents: Any) -> int:
    """Discount stored on the version, relative to the sale subtotal."""
    subtotal = _safe_number(sale_subtotal_cents, 0)
    if subtotal <= 0:
        return 0
    return round_half_up(_safe_number(discount_cents, 0) / subtotal * BP_SCALE)


def discount_bp_to_cents(discount_bp: Any, sale_subtotal_cents: Any) -> int:
    subtotal = _safe_number(sale_subtotal_cents, 0)
    if not subtotal:
        return 0
    return round_half_up(subtotal * _safe_number(discount_bp, 0) / BP_SCALE)


def compute_initial_discount_cents(
    line_items: Iterable[EstimateLine],
    margin_multiplier: Any,
    tax_rate_bp: Any,
    discount_bp: Any,
) -> int:
    """Discount cents of a draft, rebuilt from discount_bp and live prices."""
    sale_subtotal = sum(
        compute_estimate_line_values(item, margin_multiplier, tax_rate_bp).sale_line_cents
        for item in line_items
        if item.item_type == "line"
    )
    return discount_bp_to_cents(discount_bp, sale_subtotal)


def stored_discount_cents(
    line_items: Iterable[EstimateLine],
    stored_total_ht_cents: Optional[int],
    discount_bp: Any,
) -> int:
    """Discount cents of a frozen version, read back from its stored totals."""
    sale_subtotal = sum(
        int(_safe_number(item.line_total_ht_cents, 0))
        for item in line_items
        if item.item_type == "line"
    )
    if stored_total_ht_cents is not None and math.isfinite(stored_total_ht_cents):
        return max(sale_subtotal - int(stored_total_ht_cents), 0)
    return discount_bp_to_cents(discount_bp, sale_subtotal)


def compute_read_only_totals(
    line_items: List[EstimateLine],
    discount_cents: int,
    stored_total_ht_cents: Optional[int],
    stored_total_tax_cents: Optional[int],
    stored_total_ttc_cents: Optional[int],
) -> EstimateTotals:
    """
    Totals of a non-draft version. Stored figures win over recomputation so a
    sent or accepted chiffrage keeps showing what the client received, even
    if labour rates changed since.
    """
    lines = [item for item in line_items if item.item_type == "line"]
    cost_subtotal = sum(
        compute_estimate_line_values(item, 1, 0).cost_line_cents for item in lines
    )
    sale_subtotal = sum(int(_safe_number(item.line_total_ht_cents, 0)) for item in lines)

    sale_total_fallback = max(sale_subtotal - discount_cents, 0)
    sale_total = (
        int(stored_total_ht_cents) if stored_total_ht_cents is not None else sale_total_fallback
    )
    rounded_ttc = (
        int(stored_total_ttc_cents)
        if stored_total_ttc_cents is not None
        else sale_total + (stored_total_tax_cents or 0)
    )
    adjusted_tax = rounded_ttc - sale_total
    tax = (
        int(stored_total_tax_cents)
        if stored_total_tax_cents is not None
        else max(adjusted_tax, 0)
    )
    ttc = sale_total + tax

    return EstimateTotals(
        cost_subtotal_cents=cost_subtotal,
        sale_subtotal_cents=sale_subtotal,
        discount_cents=discount_cents,
        sale_total_cents=sale_total,
        tax_cents=tax,
        ttc_cents=ttc,
        rounded_ttc_cents=rounded_ttc,
        rounding_adjustment_cents=rounded_ttc - ttc,
        adjusted_tax_cents=adjusted_tax,
    )


def build_section_path_resolver(items: List[Mapping[str, Any]]):
    """
    Returns a function giving, for a line, the chain of its ancestor section
    titles ("Gros oeuvre > Fondations"). Sections resolve to "".
    """
    by_id = {item["id"]: item for item in items}
    cache: Dict[str, str] = {}

    def resolve(item: Mapping[str, Any]) -> str:
        if item.get("item_type") != "line":
            return ""
        if item["id"] in cache:
            return cache[item["id"]]
        parts: List[str] = []
        seen = set()
        parent_id = item.get("parent_id")
        while parent_id and parent_id not in seen:
            seen.add(parent_id)
            parent = by_id.get(parent_id)
            if parent is None:
                break
            if parent.get("item_type") == "section":
                parts.append(resolve_item_title(parent.get("title"), "Sans titre"))
            parent_id = parent.get("parent_id")
        path = " > ".join(reversed(parts))
        cache[item["id"]] = path
        return path

    return resolve


def resolve_item_title(value: Optional[str], fallback: str) -> str:
    trimmed = (value or "").strip()
    return trimmed or fallback
