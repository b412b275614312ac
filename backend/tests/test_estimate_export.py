"""
test_estimate_export.py - Chiffrage workbook and CSV exports.

Tests cover:
  - build_export_filename
  - build_recap_row (discount in bp, adjusted tax)
  - build_line_rows: chapter paths, category / role names, sections skipped
  - prepare_rows formatting (euros, percents, blanks)
  - write_estimate_workbook / write_lines_csv files on disk

All tests write into pytest's tmp_path; no database or external services required.
"""

import csv
import zipfile
from datetime import date

import pytest

from app.services.estimate_calculations import EstimateLine, compute_estimate_totals
from app.services.estimate_export import (
    LINE_COLUMNS,
    build_export_filename,
    build_line_rows,
    build_recap_row,
    prepare_rows,
    write_estimate_workbook,
    write_lines_csv,
)


@pytest.fixture
def export_items(chiffrage_items):
    """Fixture tree with stored cents filled in, a category and a unit on l1."""
    stored = {"l1": 3000, "l3": 18600, "l2": 3600}
    items = []
    for item in chiffrage_items:
        item = dict(item)
        if item["id"] in stored:
            item["line_total_ht_cents"] = stored[item["id"]]
            item["line_total_ttc_cents"] = stored[item["id"]] * 12 // 10
        items.append(item)
    items[1].update(category_id="cat-mat", description=" u ")
    return items


@pytest.fixture
def line_rows(export_items):
    return build_line_rows(export_items, {"cat-mat": "Materiaux"}, {"role-macon": "Macon"})


# ===========================================================================
# Rows
# ===========================================================================

class TestFilename:

    def test_with_version(self):
        assert build_export_filename("Maison Dupont", 2, date(2026, 1, 15)) == "Maison_Dupont_V2_2026-01-15"

    def test_without_name(self):
        assert build_export_filename("  ", None, date(2026, 1, 15)) == "chiffrage_2026-01-15"


class TestRecapRow:

    def test_discount_and_totals(self, draft_version):
        """Discount 1260 on 25200 is 500 bp; TTC 28728 rounded up to 29000."""
        lines = [EstimateLine(quantity=1, unit_price_ht_cents=25200)]
        totals = compute_estimate_totals(lines, 1, 1260, 2000, "up", 1000)
        row = build_recap_row("Maison Dupont", draft_version, 1260, totals)
        assert row["discount_bp"] == 500
        assert row["sale_total_cents"] == 23940
        assert row["ttc_cents"] == 29000
        assert row["tax_cents"] == 29000 - 23940
        assert row["version_number"] == 1

    def test_default_project_name(self, draft_version):
        row = build_recap_row("", draft_version, 0, compute_estimate_totals([]))
        assert row["project_name"] == "Chiffrage"


class TestLineRows:

    def test_only_lines_with_paths(self, line_rows):
        assert [row["designation"] for row in line_rows] == ["Parpaings", "Coffrage", "Enduit"]
        assert [row["section_path"] for row in line_rows] == [
            "Gros oeuvre", "Gros oeuvre > Fondations", "Gros oeuvre",
        ]

    def test_names_are_resolved(self, line_rows):
        assert line_rows[0]["category"] == "Materiaux"
        assert line_rows[0]["unit"] == "u"
        assert line_rows[1]["labor_role"] == "Macon"
        assert line_rows[2]["category"] == ""

    def test_prepare_rows_formats_cells(self, line_rows):
        table = prepare_rows(line_rows, LINE_COLUMNS)
        header = table[0]
        first = dict(zip(header, table[1]))
        assert header[0] == "Chemin chapitre"
        assert first["Prix unitaire HT (EUR)"] == 2.5
        assert first["Total HT (EUR)"] == 30.0
        assert first["TVA (%)"] == 20.0
        assert first["PU HT (EUR)"] == ""
        assert first["K FO"] == ""


# ===========================================================================
# Files
# ===========================================================================

class TestFiles:

    def test_workbook_has_two_sheets(self, tmp_path, draft_version, line_rows):
        totals = compute_estimate_totals([EstimateLine(quantity=1, unit_price_ht_cents=25200)], 1, 0, 2000)
        path = write_estimate_workbook(
            "export", build_recap_row("Maison", draft_version, 0, totals), line_rows, output_dir=str(tmp_path)
        )
        assert path.endswith("export.xlsx")
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            workbook_xml = archive.read("xl/workbook.xml").decode("utf-8")
        assert "xl/worksheets/sheet1.xml" in names
        assert "xl/worksheets/sheet2.xml" in names
        assert 'name="Recap"' in workbook_xml
        assert 'name="Lignes"' in workbook_xml

    def test_csv_is_semicolon_separated_with_bom(self, tmp_path, line_rows):
        path = write_lines_csv("export", line_rows, output_dir=str(tmp_path))
        with open(path, "rb") as f:
            assert f.read(3) == b"\xef\xbb\xbf"
        with open(path, newline="", encoding="utf-8-sig") as f:
            table = list(csv.reader(f, delimiter=";"))
        assert len(table) == 4
        assert table[0][1] == "Designation"
        assert table[2][0] == "Gros oeuvre > Fondations"
