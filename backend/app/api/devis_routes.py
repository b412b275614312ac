"""
Devis routes - supplier quotes attached to a purchase order.

Files live in DevisStorage; rows in purchase_order_devis keep the display
name and a 1-based position unique per order. Only draft orders accept
uploads, renames, deletions and reorders.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.api.purchase_order_routes import ensure_draft, load_order
from app.db import get_db, savepoint
from app.models.orm_models import PurchaseOrderDevis, User
from app.models.schemas import DevisRename, DevisReorder
from app.services.devis_storage import DevisStorage, build_storage_path, get_devis_storage
from app.services.errors import NotFoundError, StoreError, ValidationError
from app.services.file_validation import (
    normalize_display_name, sanitize_filename, upload_content_type, validate_file_for_upload,
    validate_reorder_ids,
)

router = APIRouter(prefix="/api/purchase-orders/{order_id}/devis", tags=["Devis"])
download_router = APIRouter(prefix="/api/devis", tags=["Devis"])
logger = logging.getLogger("achats-devis")

DRAFT_ONLY_MESSAGE = "Seuls les bons de commande en brouillon acceptent des devis."


def to_response_item(devis: PurchaseOrderDevis, storage: DevisStorage) -> Dict[str, Any]:
    return {
        "id": devis.id,
        "name": devis.name,
        "original_filename": devis.original_filename,
        "file_size_bytes": devis.file_size_bytes,
        "mime_type": devis.mime_type,
        "created_at": devis.created_at,
        "position": devis.position,
        "download_url": storage.create_signed_url(devis.storage_path),
    }


async def _load_devis(db: AsyncSession, order_id: str, devis_id: str) -> PurchaseOrderDevis:
    result = await db.execute(
        select(PurchaseOrderDevis).where(
            PurchaseOrderDevis.id == devis_id,
            PurchaseOrderDevis.purchase_order_id == order_id,
        )
    )
    devis = result.scalar_one_or_none()
    if not devis:
        raise NotFoundError("Devis introuvable.")
    return devis


@router.get("")
async def list_devis(
    order_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    await load_order(db, order_id)
    result = await db.execute(
        select(PurchaseOrderDevis)
        .where(PurchaseOrderDevis.purchase_order_id == order_id)
        .order_by(PurchaseOrderDevis.position)
    )
    return {"items": [to_response_item(devis, storage) for devis in result.scalars().all()]}


@router.post("", status_code=201)
async def upload_devis(
    order_id: str,
    file: Optional[UploadFile] = File(None),
    name: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    content = await file.read() if file is not None else b""
    validate_file_for_upload(file.filename if file is not None else None, len(content))

    order = await load_order(db, order_id)
    ensure_draft(order, DRAFT_ONLY_MESSAGE)

    original_filename = file.filename or "fichier"
    storage_path = build_storage_path(order_id, original_filename)
    last_position = (await db.execute(
        select(func.max(PurchaseOrderDevis.position)).where(PurchaseOrderDevis.purchase_order_id == order_id)
    )).scalar()

    storage.save(storage_path, content)
    devis = PurchaseOrderDevis(
        purchase_order_id=order_id,
        user_id=user.id,
        name=normalize_display_name(name, original_filename),
        original_filename=original_filename,
        storage_path=storage_path,
        file_size_bytes=len(content),
        mime_type=upload_content_type(file.content_type),
        position=(last_position or 0) + 1,
    )
    try:
        async with savepoint(db, "devis insert"):
            db.add(devis)
            await db.flush()
        await db.refresh(devis)
    except SQLAlchemyError as e:
        storage.remove(storage_path)
        logger.warning(f"Devis insert failed, file removed: {e}", extra={"order_id": order_id})
        raise StoreError("Impossible d'enregistrer le devis.") from e

    logger.info(f"Devis uploaded: {devis.name} ({devis.file_size_bytes} bytes)", extra={"order_id": order_id})
    return {"item": to_response_item(devis, storage)}


@router.patch("/{devis_id}")
async def rename_devis(
    order_id: str,
    devis_id: str,
    req: DevisRename,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    name = req.name.strip()
    if not name:
        raise ValidationError("Le nom du devis est obligatoire.")
    order = await load_order(db, order_id)
    ensure_draft(order, DRAFT_ONLY_MESSAGE)
    devis = await _load_devis(db, order_id, devis_id)
    devis.name = name
    await db.flush()
    await db.refresh(devis)
    return {"item": to_response_item(devis, storage)}


@router.delete("/{devis_id}")
async def delete_devis(
    order_id: str,
    devis_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    order = await load_order(db, order_id)
    ensure_draft(order, DRAFT_ONLY_MESSAGE)
    devis = await _load_devis(db, order_id, devis_id)
    storage_path = devis.storage_path
    await db.delete(devis)
    await db.flush()
    storage.remove(storage_path)
    logger.info(f"Devis deleted: {devis_id}", extra={"order_id": order_id})
    return {"success": True}


@router.post("/reorder")
async def reorder_devis(
    order_id: str,
    req: DevisReorder,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Positions are rewritten in two passes (negative, then final) so the
    (order, position) unique constraint never sees a duplicate mid-way.
    """
    order = await load_order(db, order_id)
    ensure_draft(order, "Seuls les bons de commande en brouillon peuvent etre reordonnes.")

    result = await db.execute(
        select(PurchaseOrderDevis).where(PurchaseOrderDevis.purchase_order_id == order_id)
    )
    by_id = {devis.id: devis for devis in result.scalars().all()}
    ordered_ids = validate_reorder_ids(req.ordered_ids, by_id.keys())

    for index, devis_id in enumerate(ordered_ids):
        by_id[devis_id].position = -(index + 1)
    await db.flush()
    for index, devis_id in enumerate(ordered_ids):
        by_id[devis_id].position = index + 1
    await db.flush()

    logger.info(f"Devis reordered ({len(ordered_ids)})", extra={"order_id": order_id})
    return {"success": True}


@download_router.get("/download")
async def download_devis(
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    """Target of the signed URLs; the token alone authorises the download."""
    storage_path = storage.verify_download_token(token)
    result = await db.execute(
        select(PurchaseOrderDevis).where(PurchaseOrderDevis.storage_path == storage_path)
    )
    devis = result.scalar_one_or_none()
    if not devis:
        raise NotFoundError("Devis introuvable.")
    content = storage.read(storage_path)
    return Response(
        content=content,
        media_type=devis.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{sanitize_filename(devis.original_filename)}"'},
    )
