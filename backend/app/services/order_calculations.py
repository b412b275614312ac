"""
Order Calculations - per-line and order-level HT / tax / TTC totals.

A purchase-order line is (quantity, unit price HT, tax rate). Its derived
totals are always recomputed from those three inputs:

    line_total_ht  = quantity × unit_price_ht
    line_tax       = round(line_total_ht × tax_rate_bp / 10000)
    line_total_ttc = line_total_ht + line_tax

Order totals are the element-wise sum of the line totals.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from app.services.money import BP_SCALE, compute_tax_cents, round_half_up

logger = logging.getLogger("achats-orders")


@dataclass(frozen=True)
class OrderLineInput:
    quantity: int
    unit_price_ht_cents: int
    tax_rate_bp: int


@dataclass(frozen=True)
class LineTotals:
    line_total_ht_cents: int
    line_tax_cents: int
    line_total_ttc_cents: int


@dataclass(frozen=True)
class OrderTotals:
    total_ht_cents: int = 0
    total_tax_cents: int = 0
    total_ttc_cents: int = 0


@dataclass(frozen=True)
class CleanOrderLine:
    """A validated order line as it will be stored."""
    designation: str
    quantity: int
    unit_price_cents: int
    tax_rate_bp: int
    product_id: Optional[str] = None
    reference: Optional[str] = None

    def as_input(self) -> OrderLineInput:
        return OrderLineInput(
            quantity=self.quantity,
            unit_price_ht_cents=self.unit_price_cents,
            tax_rate_bp=self.tax_rate_bp,
        )


def compute_line_totals(line: OrderLineInput) -> LineTotals:
    """Derived totals of one line. Callers validate the inputs first."""
    line_total_ht = line.quantity * line.unit_price_ht_cents
    line_tax = compute_tax_cents(line_total_ht, line.tax_rate_bp)
    return LineTotals(
        line_total_ht_cents=line_total_ht,
        line_tax_cents=line_tax,
        line_total_ttc_cents=line_total_ht + line_tax,
    )


def compute_order_totals(lines: Iterable[LineTotals]) -> OrderTotals:
    total_ht = total_tax = total_ttc = 0
    for line in lines:
        total_ht += line.line_total_ht_cents
        total_tax += line.line_tax_cents
        total_ttc += line.line_total_ttc_cents
    return OrderTotals(
        total_ht_cents=total_ht,
        total_tax_cents=total_tax,
        total_ttc_cents=total_ttc,
    )


def compute_totals_from_inputs(
    inputs: Iterable[OrderLineInput],
) -> Tuple[List[LineTotals], OrderTotals]:
    """Per-line breakdown (to persist on each row) plus the order aggregate."""
    line_totals = [compute_line_totals(line) for line in inputs]
    return line_totals, compute_order_totals(line_totals)


# ── Boundary validation ──────────────────────────────────────────────────────

def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return math.nan


def _to_nullable_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def clean_order_lines(raw_items: Optional[Iterable[Mapping[str, Any]]]) -> List[CleanOrderLine]:
    """
    Keep only the lines that can be priced.

    A line survives when its designation is non-empty, every number is finite,
    the rounded quantity is > 0, the unit price is >= 0 and the tax rate lies
    within 0..10000 bp. Numbers are rounded to integers (cents / bp / units).
    """
    cleaned: List[CleanOrderLine] = []
    for item in raw_items or []:
        designation = item.get("designation")
        designation = designation.strip() if isinstance(designation, str) else ""
        quantity = _to_number(item.get("quantity"))
        unit_price = _to_number(item.get("unit_price_cents"))
        tax_rate = _to_number(item.get("tax_rate_bp"))

        if not designation:
            continue
        if not all(math.isfinite(v) for v in (quantity, unit_price, tax_rate)):
            continue
        if unit_price < 0 or tax_rate < 0 or tax_rate > BP_SCALE:
            continue
        rounded_quantity = round_half_up(quantity)
        if rounded_quantity <= 0:
            continue

        product_id = item.get("product_id")
        cleaned.append(CleanOrderLine(
            designation=designation,
            quantity=rounded_quantity,
            unit_price_cents=round_half_up(unit_price),
            tax_rate_bp=round_half_up(tax_rate),
            product_id=str(product_id) if product_id else None,
            reference=_to_nullable_string(item.get("reference")),
        ))
    return cleaned


def build_item_rows(
    order_id: str, lines: List[CleanOrderLine], line_totals: List[LineTotals]
) -> List[Dict[str, Any]]:
    """Rows for purchase_order_items, 1-based positions in payload order."""
    return [
        {
            "purchase_order_id": order_id,
            "position": index + 1,
            "product_id": line.product_id,
            "reference": line.reference,
            "designation": line.designation,
            "unit_price_ht_cents": line.unit_price_cents,
            "tax_rate_bp": line.tax_rate_bp,
            "quantity": line.quantity,
            "line_total_ht_cents": totals.line_total_ht_cents,
            "line_tax_cents": totals.line_tax_cents,
            "line_total_ttc_cents": totals.line_total_ttc_cents,
        }
        for index, (line, totals) in enumerate(zip(lines, line_totals))
    ]


async def recalculate_order_totals(session, order_id: str) -> OrderTotals:
    """Re-sum the stored item rows of an order into its header totals."""
    from sqlalchemy import select
    from app.models.orm_models import PurchaseOrder, PurchaseOrderItem

    result = await session.execute(
        select(
            PurchaseOrderItem.line_total_ht_cents,
            PurchaseOrderItem.line_tax_cents,
            PurchaseOrderItem.line_total_ttc_cents,
        ).where(PurchaseOrderItem.purchase_order_id == order_id)
    )
    totals = compute_order_totals(
        LineTotals(
            line_total_ht_cents=row.line_total_ht_cents,
            line_tax_cents=row.line_tax_cents,
            line_total_ttc_cents=row.line_total_ttc_cents,
        )
        for row in result.all()
    )

    order = await session.get(PurchaseOrder, order_id)
    if order is not None:
        order.total_ht_cents = totals.total_ht_cents
        order.total_tax_cents = totals.total_tax_cents
        order.total_ttc_cents = totals.total_ttc_cents
        logger.info(
            "Order totals recalculated",
            extra={"order_id": order_id, "total_ttc_cents": totals.total_ttc_cents},
        )
    return totals
