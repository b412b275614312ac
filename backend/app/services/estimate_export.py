"""
Estimate Export - chiffrage workbook and CSV.

Outputs:
  - XLSX workbook with two sheets: "Recap" (version settings + totals) and
    "Lignes" (one row per leaf line, with its chapter path)
  - CSV of the lines only, ';' separated, UTF-8 with BOM for Excel

Amounts are exported in euros (cents / 100), rates in percent (bp / 100).
All outputs saved to DOWNLOAD_DIR and path returned for FileResponse.
"""
import csv
import logging
import os
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from app.services.estimate_calculations import (
    EstimateTotals,
    build_section_path_resolver,
    discount_cents_to_bp,
    resolve_item_title,
)
from app.services.file_validation import sanitize_document_name

logger = logging.getLogger("achats-export")

DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "/tmp/downloads")

Column = Tuple[str, str, Optional[Callable[[Any], Any]]]


def _per_hundred(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return ""
    return value / 100


RECAP_COLUMNS: List[Column] = [
    ("project_name", "Projet", None),
    ("version_id", "Version ID", None),
    ("version_number", "Version", None),
    ("status", "Statut", None),
    ("date_devis", "Date devis", None),
    ("validite_jours", "Validite (jours)", None),
    ("margin_multiplier", "Marge (x)", None),
    ("discount_cents", "Remise (EUR)", _per_hundred),
    ("discount_bp", "Remise (bp)", None),
    ("tax_rate_bp", "TVA (%)", _per_hundred),
    ("rounding_mode", "Mode arrondi", None),
    ("rounding_step_cents", "Pas arrondi (EUR)", _per_hundred),
    ("sale_subtotal_cents", "Sous-total HT (EUR)", _per_hundred),
    ("sale_total_cents", "Total HT (EUR)", _per_hundred),
    ("tax_cents", "TVA (EUR)", _per_hundred),
    ("ttc_cents", "Total TTC (EUR)", _per_hundred),
]

LINE_COLUMNS: List[Column] = [
    ("section_path", "Chemin chapitre", None),
    ("designation", "Designation", None),
    ("unit", "Unite", None),
    ("quantity", "Quantite", None),
    ("unit_price_ht_cents", "Prix unitaire HT (EUR)", _per_hundred),
    ("category", "Categorie", None),
    ("k_fo", "K FO", None),
    ("h_mo", "h MO", None),
    ("labor_role", "Role MO", None),
    ("k_mo", "K MO", None),
    ("pu_ht_cents", "PU HT (EUR)", _per_hundred),
    ("line_total_ht_cents", "Total HT (EUR)", _per_hundred),
    ("tax_rate_bp", "TVA (%)", _per_hundred),
    ("line_total_ttc_cents", "Total TTC (EUR)", _per_hundred),
]

def build_export_filename(project_name: str, version_number: Optional[int], today: Optional[date] = None) -> str:
    """e.g. "Maison_Dupont_V2_2026-01-15"."""
    date_label = (today or date.today()).isoformat()
    name_part = (project_name or "").strip() or "chiffrage"
    version_label = f"V{version_number}" if version_number else ""
    raw = "_".join(part for part in (name_part, version_label, date_label) if part)
    return sanitize_document_name(raw, f"chiffrage_{date_label}")


def build_recap_row(
    project_name: str,
    version: Mapping[str, Any],
    discount_cents: int,
    totals: EstimateTotals,
) -> Dict[str, Any]:
    return {
        "project_name": project_name or "Chiffrage",
        "version_id": version.get("id"),
        "version_number": version.get("version_number"),
        "status": version.get("status"),
        "date_devis": version.get("date_devis"),
        "validite_jours": version.get("validite_jours"),
        "margin_multiplier": version.get("margin_multiplier"),
        "discount_cents": discount_cents,
        "discount_bp": discount_cents_to_bp(discount_cents, totals.sale_subtotal_cents),
        "tax_rate_bp": version.get("tax_rate_bp"),
        "rounding_mode": version.get("rounding_mode"),
        "rounding_step_cents": version.get("rounding_step_cents"),
        "sale_subtotal_cents": totals.sale_subtotal_cents,
        "sale_total_cents": totals.sale_total_cents,
        "tax_cents": totals.adjusted_tax_cents,
        "ttc_cents": totals.rounded_ttc_cents,
    }


def build_line_rows(
    items: List[Mapping[str, Any]],
    category_names: Mapping[str, str],
    labor_role_names: Mapping[str, str],
) -> List[Dict[str, Any]]:
    resolve_section_path = build_section_path_resolver(items)
    rows = []
    for item in items:
        if item.get("item_type") != "line":
            continue
        rows.append({
            "section_path": resolve_section_path(item),
            "designation": resolve_item_title(item.get("title"), "Sans titre"),
            "unit": (item.get("description") or "").strip(),
            "quantity": item.get("quantity"),
            "unit_price_ht_cents": item.get("unit_price_ht_cents"),
            "category": category_names.get(item.get("category_id"), "") if item.get("category_id") else "",
            "k_fo": item.get("k_fo"),
            "h_mo": item.get("h_mo"),
            "labor_role": labor_role_names.get(item.get("labor_role_id"), "") if item.get("labor_role_id") else "",
            "k_mo": item.get("k_mo"),
            "pu_ht_cents": item.get("pu_ht_cents"),
            "line_total_ht_cents": item.get("line_total_ht_cents"),
            "tax_rate_bp": item.get("tax_rate_bp"),
            "line_total_ttc_cents": item.get("line_total_ttc_cents"),
        })
    return rows


def prepare_rows(rows: Sequence[Mapping[str, Any]], columns: Sequence[Column]) -> List[List[Any]]:
    """Header row followed by the formatted cells of every row."""
    table: List[List[Any]] = [[header for _, header, _ in columns]]
    for row in rows:
        cells = []
        for key, _, formatter in columns:
            value = row.get(key)
            if formatter is not None:
                cells.append(formatter(value))
            elif value is None:
                cells.append("")
            else:
                cells.append(value)
        table.append(cells)
    return table


def _column_widths(table: List[List[Any]]) -> List[int]:
    widths = []
    for index in range(len(table[0])):
        longest = max(len(str(row[index])) for row in table)
        widths.append(min(max(longest, 10), 50))
    return widths


def write_estimate_workbook(
    filename: str,
    recap_row: Mapping[str, Any],
    line_rows: Sequence[Mapping[str, Any]],
    output_dir: Optional[str] = None,
) -> str:
    import xlsxwriter

    output_dir = output_dir or DOWNLOAD_DIR
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"{filename}.xlsx")
    wb = xlsxwriter.Workbook(path)
    try:
        hdr = wb.add_format({"bold": True, "bg_color": "#14141E", "font_color": "#FFFFFF",
                             "border": 1, "font_size": 10})
        normal = wb.add_format({"border": 1, "font_size": 9})

        for sheet_name, rows, columns in (
            ("Recap", [recap_row], RECAP_COLUMNS),
            ("Lignes", line_rows, LINE_COLUMNS),
        ):
            ws = wb.add_worksheet(sheet_name)
            table = prepare_rows(rows, columns)
            for index, width in enumerate(_column_widths(table)):
                ws.set_column(index, index, width)
            ws.write_row(0, 0, table[0], hdr)
            for row_index, cells in enumerate(table[1:], start=1):
                ws.write_row(row_index, 0, cells, normal)
    finally:
        wb.close()

    logger.info(f"Estimate workbook generated: {path}")
    return path


def write_lines_csv(
    filename: str,
    line_rows: Sequence[Mapping[str, Any]],
    output_dir: Optional[str] = None,
) -> str:
    output_dir = output_dir or DOWNLOAD_DIR
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"{filename}.csv")
    with open(path, "w", newline="", encoding="utf-8-sig") as f:
        writer = csv.writer(f, delimiter=";")
        writer.writerows(prepare_rows(line_rows, LINE_COLUMNS))
    logger.info(f"Estimate CSV generated: {path}")
    return path
