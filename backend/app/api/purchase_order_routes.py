"""
Purchase order routes - create, list, edit, status, PDF and ZIP bundle.

Every handler runs in the single transaction opened by get_db: a failed item
insert rolls the order header back with it.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.deps import get_current_user
from app.db import get_db, savepoint
from app.models.orm_models import (
    DeliverySite, PurchaseOrder, PurchaseOrderItem, Supplier, User, row_to_dict,
)
from app.models.schemas import (
    OrderStatusUpdate, PurchaseOrderCreate, PurchaseOrderDetail, PurchaseOrderOut, PurchaseOrderUpdate,
)
from app.services.devis_storage import DevisStorage, get_devis_storage
from app.services.document_engine import PurchaseOrderDocument
from app.services.errors import (
    READ_ONLY_ORDER_MESSAGE, NotFoundError, ReadOnlyError, ReferenceConflictError, ValidationError,
)
from app.services.order_calculations import (
    build_item_rows, clean_order_lines, compute_totals_from_inputs, recalculate_order_totals,
)
from app.services.reference import build_purchase_order_reference, create_with_unique_reference

router = APIRouter(prefix="/api/purchase-orders", tags=["Purchase Orders"])
logger = logging.getLogger("achats-orders")

ORDER_NOT_FOUND = "Bon de commande introuvable."


async def load_order(db: AsyncSession, order_id: str, with_children: bool = False) -> PurchaseOrder:
    stmt = select(PurchaseOrder).where(PurchaseOrder.id == order_id)
    if with_children:
        stmt = stmt.options(selectinload(PurchaseOrder.items), selectinload(PurchaseOrder.devis))
    order = (await db.execute(stmt)).scalar_one_or_none()
    if not order:
        raise NotFoundError(ORDER_NOT_FOUND)
    return order


def ensure_draft(order: PurchaseOrder, message: str = READ_ONLY_ORDER_MESSAGE) -> None:
    if order.status != "draft":
        raise ReadOnlyError(message)


def _clean_lines(items) -> list:
    lines = clean_order_lines([item.model_dump() for item in items or []])
    if not lines:
        raise ValidationError("Au moins une ligne valide est requise.")
    return lines


async def _replace_items(db: AsyncSession, order: PurchaseOrder, lines) -> None:
    line_totals, _ = compute_totals_from_inputs(line.as_input() for line in lines)
    await db.execute(delete(PurchaseOrderItem).where(PurchaseOrderItem.purchase_order_id == order.id))
    db.add_all(PurchaseOrderItem(**row) for row in build_item_rows(order.id, lines, line_totals))
    await db.flush()
    await recalculate_order_totals(db, order.id)
    await db.flush()


# ── CRUD ──────────────────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_purchase_order(
    req: PurchaseOrderCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not req.supplier_id or not req.delivery_site_id:
        raise ValidationError("Fournisseur et site de livraison obligatoires.")
    lines = _clean_lines(req.items)

    supplier = await db.get(Supplier, req.supplier_id)
    site = await db.get(DeliverySite, req.delivery_site_id)
    if not supplier or not site:
        raise NotFoundError("Fournisseur ou site de livraison introuvable.")

    line_totals, totals = compute_totals_from_inputs(line.as_input() for line in lines)

    def build() -> str:
        return build_purchase_order_reference(supplier.name, site.project_code, user.full_name or user.email)

    async def insert(reference: str) -> PurchaseOrder:
        order = PurchaseOrder(
            reference=reference,
            user_id=user.id,
            supplier_id=supplier.id,
            delivery_site_id=site.id,
            status="draft",
            expected_delivery_date=req.expected_delivery_date,
            notes=(req.notes or "").strip() or None,
            total_ht_cents=totals.total_ht_cents,
            total_tax_cents=totals.total_tax_cents,
            total_ttc_cents=totals.total_ttc_cents,
            currency="EUR",
        )
        try:
            async with savepoint(db, f"reference {reference}"):
                db.add(order)
                await db.flush()
        except IntegrityError as e:
            if "reference" in str(e.orig):
                raise ReferenceConflictError(str(e.orig))
            raise
        return order

    order = await create_with_unique_reference(build, insert)
    db.add_all(PurchaseOrderItem(**row) for row in build_item_rows(order.id, lines, line_totals))
    await db.flush()

    logger.info(f"Purchase order created: {order.reference}", extra={"order_id": order.id})
    return {"id": order.id, "reference": order.reference}


@router.get("", response_model=List[PurchaseOrderOut])
async def list_purchase_orders(
    status: Optional[str] = Query(None),
    supplier_id: Optional[str] = Query(None),
    delivery_site_id: Optional[str] = Query(None),
    q: str = Query("", description="Search on reference or notes"),
    limit: int = Query(100, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(PurchaseOrder).order_by(PurchaseOrder.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(PurchaseOrder.status == status)
    if supplier_id:
        stmt = stmt.where(PurchaseOrder.supplier_id == supplier_id)
    if delivery_site_id:
        stmt = stmt.where(PurchaseOrder.delivery_site_id == delivery_site_id)
    if q.strip():
        pattern = f"%{q.strip()}%"
        stmt = stmt.where(or_(PurchaseOrder.reference.ilike(pattern), PurchaseOrder.notes.ilike(pattern)))
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/{order_id}", response_model=PurchaseOrderDetail)
async def get_purchase_order(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await load_order(db, order_id, with_children=True)


@router.put("/{order_id}")
async def update_purchase_order(
    order_id: str,
    req: PurchaseOrderUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Header fields are updated only when present in the payload. When items
    are present they replace the stored lines and the totals are recomputed.
    """
    order = await load_order(db, order_id)
    ensure_draft(order)

    provided = req.model_fields_set
    lines = _clean_lines(req.items) if "items" in provided else None

    if "supplier_id" in provided:
        if not req.supplier_id or not await db.get(Supplier, req.supplier_id):
            raise ValidationError("Fournisseur introuvable.")
        order.supplier_id = req.supplier_id
    if "delivery_site_id" in provided:
        if not req.delivery_site_id or not await db.get(DeliverySite, req.delivery_site_id):
            raise ValidationError("Site de livraison introuvable.")
        order.delivery_site_id = req.delivery_site_id
    if "expected_delivery_date" in provided:
        order.expected_delivery_date = req.expected_delivery_date
    if "notes" in provided:
        order.notes = (req.notes or "").strip() or None

    if lines is not None:
        await _replace_items(db, order, lines)
    else:
        await db.flush()

    logger.info("Purchase order updated", extra={"order_id": order.id})
    return {"id": order.id, "reference": order.reference}


@router.delete("/{order_id}")
async def delete_purchase_order(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    order = await load_order(db, order_id, with_children=True)
    ensure_draft(order, "Seuls les bons de commande en brouillon peuvent etre supprimes.")
    storage_paths = [devis.storage_path for devis in order.devis]
    await db.delete(order)
    await db.flush()
    for path in storage_paths:
        storage.remove(path)
    logger.info(f"Purchase order deleted: {order.reference}", extra={"order_id": order_id})
    return {"status": "deleted", "id": order_id}


@router.patch("/{order_id}/status")
async def update_purchase_order_status(
    order_id: str,
    req: OrderStatusUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await load_order(db, order_id)
    previous = order.status
    order.status = req.status
    await db.flush()
    logger.info(f"Purchase order status {previous} -> {req.status}", extra={"order_id": order.id})
    return {"id": order.id, "status": order.status}


# ── Documents ─────────────────────────────────────────────────────────────────

async def _document_context(db: AsyncSession, order: PurchaseOrder) -> Dict[str, Any]:
    supplier = await db.get(Supplier, order.supplier_id)
    site = await db.get(DeliverySite, order.delivery_site_id)
    issuer = await db.get(User, order.user_id) if order.user_id else None
    return {
        "order": row_to_dict(order),
        "items": [row_to_dict(item) for item in order.items],
        "supplier": row_to_dict(supplier) if supplier else None,
        "site": row_to_dict(site) if site else None,
        "issuer": {"full_name": issuer.full_name, "email": issuer.email, "phone": issuer.phone} if issuer else None,
    }


@router.get("/{order_id}/pdf")
async def download_purchase_order_pdf(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await load_order(db, order_id, with_children=True)
    context = await _document_context(db, order)
    path = PurchaseOrderDocument().render_pdf(**context)
    return FileResponse(path, media_type="application/pdf", filename=path.rsplit("/", 1)[-1])


@router.get("/{order_id}/zip")
async def download_purchase_order_zip(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    order = await load_order(db, order_id, with_children=True)
    context = await _document_context(db, order)
    document = PurchaseOrderDocument()
    pdf_path = document.render_pdf(**context)

    attachments = []
    for devis in order.devis:
        try:
            attachments.append((devis.original_filename or devis.name, storage.read(devis.storage_path)))
        except NotFoundError:
            logger.warning(f"Devis file missing, skipped in bundle: {devis.storage_path}",
                           extra={"order_id": order.id})

    zip_path = document.build_zip(context["order"], pdf_path, attachments)
    return FileResponse(zip_path, media_type="application/zip", filename=zip_path.rsplit("/", 1)[-1])
