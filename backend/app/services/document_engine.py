"""
Document Engine - printable purchase orders.

Outputs:
  - Purchase order PDF (A4, company header, supplier / delivery boxes,
    line table, HT / TVA / TTC totals, notes)
  - ZIP bundle: the order PDF plus every attached devis under documents/

All outputs saved to DOWNLOAD_DIR and path returned for FileResponse.
"""
import logging
import os
import zipfile
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from app.services.file_validation import sanitize_document_name
from app.services.money import format_currency

logger = logging.getLogger("achats-documents")

DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "/tmp/downloads")
COMPANY_NAME = os.getenv("COMPANY_NAME", "ACHATS & CHIFFRAGE")
COMPANY_ADDRESS = os.getenv("COMPANY_ADDRESS", "")

STATUS_LABELS = {
    "draft": "Brouillon",
    "sent": "Envoye",
    "confirmed": "Confirme",
    "received": "Recu",
    "canceled": "Annule",
}

# Column x offsets (cm) of the line table
_COLUMNS = (("Designation", 1.5), ("Reference", 9.0), ("Qte", 13.0), ("P.U. HT", 16.0), ("Total HT", 19.5))


def _amount(cents: int) -> str:
    # Helvetica (WinAnsi) has no narrow no-break space
    return format_currency(cents).replace("\u202f", " ")


def _format_date(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    return ""


def _draw_header(c, page_w, page_h, company_name: str, company_sub: str):
    from reportlab.lib.units import cm
    c.setFillColorRGB(0.12, 0.23, 0.37)
    c.rect(0, page_h - 3*cm, page_w, 3*cm, fill=1, stroke=0)
    c.setFillColorRGB(1, 1, 1)
    c.setFont("Helvetica-Bold", 13)
    c.drawString(1.5*cm, page_h - 1.5*cm, company_name)
    if company_sub:
        c.setFont("Helvetica", 8)
        c.drawString(1.5*cm, page_h - 2.1*cm, company_sub)
    c.setStrokeColorRGB(0.93, 0.45, 0.13)
    c.setLineWidth(2)
    c.line(0, page_h - 3*cm, page_w, page_h - 3*cm)
    c.setLineWidth(1)
    c.setStrokeColorRGB(0, 0, 0)


def _draw_footer(c, page_w, page_num: int, reference: str):
    from reportlab.lib.units import cm
    c.setFillColorRGB(0.5, 0.5, 0.5)
    c.setFont("Helvetica", 7)
    c.drawString(1.5*cm, 0.8*cm, f"Bon de commande {reference}")
    c.drawRightString(page_w - 1.5*cm, 0.8*cm, f"Page {page_num}")
    c.setStrokeColorRGB(0.7, 0.7, 0.7)
    c.line(1.5*cm, 1.2*cm, page_w - 1.5*cm, 1.2*cm)


def _party_lines(party: Optional[Mapping[str, Any]], contact_phone_key: str) -> List[str]:
    if not party:
        return ["-"]
    lines = [party.get("name") or "-"]
    if party.get("address"):
        lines.append(party["address"])
    city = " ".join(p for p in (party.get("postal_code"), party.get("city")) if p)
    if city:
        lines.append(city)
    if party.get("contact_name"):
        lines.append(f"Contact: {party['contact_name']}")
    if party.get(contact_phone_key):
        lines.append(party[contact_phone_key])
    return lines


class PurchaseOrderDocument:
    """Renders one purchase order; inputs are plain mappings, not ORM rows."""

    def __init__(self, company_name: Optional[str] = None, company_address: Optional[str] = None,
                 output_dir: Optional[str] = None):
        self.company_name = company_name or COMPANY_NAME
        self.company_address = company_address if company_address is not None else COMPANY_ADDRESS
        self.output_dir = output_dir or DOWNLOAD_DIR

    def file_stem(self, order: Mapping[str, Any]) -> str:
        label = order.get("reference") or str(order.get("order_number") or "")
        return sanitize_document_name(f"bon_de_commande_{label}", "bon_de_commande")

    def render_pdf(
        self,
        order: Mapping[str, Any],
        items: List[Mapping[str, Any]],
        supplier: Optional[Mapping[str, Any]] = None,
        site: Optional[Mapping[str, Any]] = None,
        issuer: Optional[Mapping[str, Any]] = None,
    ) -> str:
        from reportlab.pdfgen import canvas as rl_canvas
        from reportlab.lib.pagesizes import A4
        from reportlab.lib.units import cm

        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, f"{self.file_stem(order)}.pdf")
        reference = order.get("reference") or "-"
        page_w, page_h = A4
        c = rl_canvas.Canvas(path, pagesize=A4)
        try:
            _draw_header(c, page_w, page_h, self.company_name, self.company_address)
            _draw_footer(c, page_w, 1, reference)

            y = page_h - 4.5*cm
            c.setFillColorRGB(0.12, 0.16, 0.23)
            c.setFont("Helvetica-Bold", 20)
            c.drawCentredString(page_w / 2, y, "BON DE COMMANDE")
            y -= 0.7*cm
            c.setFont("Helvetica", 10)
            c.drawCentredString(page_w / 2, y, f"REF : {reference}")

            y -= 1.0*cm
            c.setFont("Helvetica", 9)
            c.setFillColorRGB(0.4, 0.4, 0.4)
            meta = [
                f"Date : {_format_date(order.get('order_date'))}",
                f"Livraison prevue : {_format_date(order.get('expected_delivery_date')) or '-'}",
                f"Statut : {STATUS_LABELS.get(order.get('status'), order.get('status') or '-')}",
            ]
            if issuer and issuer.get("full_name"):
                meta.append(f"Emis par : {issuer['full_name']}")
            c.drawString(1.5*cm, y, "   |   ".join(meta))

            # Supplier / delivery boxes
            y -= 0.9*cm
            box_h = 3.2*cm
            box_w = (page_w - 3.5*cm) / 2
            for x, title, lines in (
                (1.5*cm, "FOURNISSEUR", _party_lines(supplier, "phone")),
                (2.0*cm + box_w, "LIVRAISON & PROJET", _party_lines(site, "contact_phone")),
            ):
                c.setStrokeColorRGB(0.8, 0.84, 0.88)
                c.rect(x, y - box_h, box_w, box_h, fill=0)
                c.setFillColorRGB(0.93, 0.45, 0.13)
                c.setFont("Helvetica-Bold", 8)
                c.drawString(x + 0.3*cm, y - 0.5*cm, title)
                c.setFillColorRGB(0.2, 0.2, 0.2)
                c.setFont("Helvetica", 9)
                line_y = y - 1.0*cm
                for text in lines[:5]:
                    c.drawString(x + 0.3*cm, line_y, str(text)[:60])
                    line_y -= 0.42*cm
            if site and site.get("project_code"):
                c.setFont("Helvetica", 8)
                c.drawRightString(page_w - 1.8*cm, y - 0.5*cm, f"Code projet : {site['project_code']}")
            y -= box_h + 0.8*cm

            y = self._draw_items(c, items, y, page_w, page_h, reference)

            # Totals
            y -= 0.6*cm
            if y < 4*cm:
                c.showPage()
                _draw_header(c, page_w, page_h, self.company_name, self.company_address)
                _draw_footer(c, page_w, c.getPageNumber(), reference)
                y = page_h - 4.5*cm
            for label, cents, bold in (
                ("Total HT", order.get("total_ht_cents") or 0, False),
                ("Total TVA", order.get("total_tax_cents") or 0, False),
                ("Total TTC", order.get("total_ttc_cents") or 0, True),
            ):
                c.setFont("Helvetica-Bold" if bold else "Helvetica", 10)
                c.setFillColorRGB(0.12, 0.16, 0.23)
                c.drawString(page_w - 8*cm, y, label)
                c.drawRightString(page_w - 1.5*cm, y, _amount(cents))
                y -= 0.55*cm

            notes = (order.get("notes") or "").strip()
            if notes:
                y -= 0.6*cm
                c.setFont("Helvetica-Bold", 9)
                c.drawString(1.5*cm, y, "Notes")
                c.setFont("Helvetica", 9)
                for line in notes.splitlines()[:10]:
                    y -= 0.45*cm
                    c.drawString(1.5*cm, y, line[:110])
        finally:
            c.save()

        logger.info(f"Purchase order PDF generated: {path}", extra={"order_id": order.get("id")})
        return path

    def _draw_items(self, c, items, y, page_w, page_h, reference):
        from reportlab.lib.units import cm

        def draw_table_header(y):
            c.setFillColorRGB(0.95, 0.96, 0.98)
            c.rect(1.3*cm, y - 0.2*cm, page_w - 2.6*cm, 0.6*cm, fill=1, stroke=0)
            c.setFillColorRGB(0.39, 0.45, 0.55)
            c.setFont("Helvetica-Bold", 8)
            for index, (title, x) in enumerate(_COLUMNS):
                if index < 2:
                    c.drawString(x*cm, y, title.upper())
                else:
                    c.drawRightString(x*cm, y, title.upper())
            return y - 0.6*cm

        y = draw_table_header(y)
        c.setFont("Helvetica", 9)
        if not items:
            c.setFillColorRGB(0.4, 0.4, 0.4)
            c.drawString(1.5*cm, y, "Aucun article")
            return y - 0.5*cm

        for item in items:
            if y < 3*cm:
                c.showPage()
                _draw_header(c, page_w, page_h, self.company_name, self.company_address)
                _draw_footer(c, page_w, c.getPageNumber(), reference)
                y = draw_table_header(page_h - 4.5*cm)
                c.setFont("Helvetica", 9)
            c.setFillColorRGB(0.12, 0.16, 0.23)
            c.drawString(_COLUMNS[0][1]*cm, y, (item.get("designation") or "-")[:45])
            c.drawString(_COLUMNS[1][1]*cm, y, (item.get("reference") or "")[:20])
            c.drawRightString(_COLUMNS[2][1]*cm, y, str(item.get("quantity") or 0))
            c.drawRightString(_COLUMNS[3][1]*cm, y, _amount(item.get("unit_price_ht_cents") or 0))
            c.drawRightString(_COLUMNS[4][1]*cm, y, _amount(item.get("line_total_ht_cents") or 0))
            y -= 0.5*cm
        return y

    def build_zip(self, order: Mapping[str, Any], pdf_path: str,
                  attachments: Iterable[Tuple[str, bytes]]) -> str:
        """
        Bundle the order PDF with its devis. Attachment names are sanitised
        and de-duplicated with a -1, -2 ... suffix.
        """
        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, f"{self.file_stem(order)}.zip")
        used_names = set()
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            archive.write(pdf_path, arcname="bon-de-commande.pdf")
            for index, (filename, content) in enumerate(attachments):
                base_name = sanitize_document_name(filename, f"document-{index + 1}")
                name = base_name
                counter = 1
                while name in used_names:
                    name = f"{base_name}-{counter}"
                    counter += 1
                used_names.add(name)
                archive.writestr(f"documents/{name}", content)
        logger.info(f"Purchase order bundle generated: {path}", extra={"order_id": order.get("id")})
        return path
