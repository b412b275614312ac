"""Catalog API routes - suppliers, delivery sites, products."""
import logging
from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, or_
from app.db import get_db
from app.api.deps import get_current_user, require_admin, require_role
from app.models.orm_models import (
    DeliverySite, Product, PurchaseOrder, PurchaseOrderDevis, Supplier, User, row_to_dict,
)
from app.services.devis_storage import DevisStorage, get_devis_storage

router = APIRouter(prefix="/api/catalog", tags=["Catalog"])
logger = logging.getLogger("achats-catalog")


class SupplierIn(BaseModel):
    name: str = Field(..., min_length=1)
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = "France"
    email: Optional[str] = None
    phone: Optional[str] = None
    contact_name: Optional[str] = None
    siret: Optional[str] = None
    vat_number: Optional[str] = None
    payment_terms: Optional[str] = None
    is_active: bool = True


class DeliverySiteIn(BaseModel):
    name: str = Field(..., min_length=1)
    project_code: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    is_active: bool = True


class ProductIn(BaseModel):
    reference: Optional[str] = None
    designation: str = Field(..., min_length=1)
    unit_price_cents: int = Field(0, ge=0)
    tax_rate_bp: int = Field(2000, ge=0, le=10000)
    is_active: bool = True


def _clean(payload: BaseModel) -> dict:
    """Trim strings; blank optional strings become NULL."""
    values = {}
    for key, value in payload.model_dump().items():
        if isinstance(value, str):
            value = value.strip() or None
        values[key] = value
    return values


async def _get_or_404(db: AsyncSession, model, obj_id: str, label: str):
    obj = await db.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} introuvable.")
    return obj


# ── SUPPLIERS ─────────────────────────────────────────────────────────────────

@router.get("/suppliers")
async def list_suppliers(
    q: str = Query("", description="Search on name, city or contact"),
    active_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Supplier).order_by(Supplier.name)
    if active_only:
        stmt = stmt.where(Supplier.is_active.is_(True))
    if q.strip():
        pattern = f"%{q.strip()}%"
        stmt = stmt.where(or_(
            Supplier.name.ilike(pattern),
            Supplier.city.ilike(pattern),
            Supplier.contact_name.ilike(pattern),
        ))
    result = await db.execute(stmt)
    return [row_to_dict(s) for s in result.scalars().all()]


@router.post("/suppliers", status_code=201)
async def create_supplier(
    req: SupplierIn,
    user: User = Depends(require_role("buyer")),
    db: AsyncSession = Depends(get_db),
):
    supplier = Supplier(**_clean(req))
    db.add(supplier)
    await db.flush()
    await db.refresh(supplier)
    logger.info(f"Supplier created: {supplier.name}")
    return row_to_dict(supplier)


@router.put("/suppliers/{supplier_id}")
async def update_supplier(
    supplier_id: str,
    req: SupplierIn,
    user: User = Depends(require_role("buyer")),
    db: AsyncSession = Depends(get_db),
):
    supplier = await _get_or_404(db, Supplier, supplier_id, "Fournisseur")
    for key, value in _clean(req).items():
        setattr(supplier, key, value)
    await db.flush()
    return row_to_dict(supplier)


@router.delete("/suppliers/{supplier_id}")
async def delete_supplier(
    supplier_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Suppliers referenced by orders are deactivated instead of deleted."""
    supplier = await _get_or_404(db, Supplier, supplier_id, "Fournisseur")
    linked = (await db.execute(
        select(func.count(PurchaseOrder.id)).where(PurchaseOrder.supplier_id == supplier_id)
    )).scalar() or 0
    if linked:
        supplier.is_active = False
        await db.flush()
        return {"status": "deactivated", "linked_orders": linked}
    await db.delete(supplier)
    return {"status": "deleted", "linked_orders": 0}


# ── DELIVERY SITES ────────────────────────────────────────────────────────────

@router.get("/sites")
async def list_sites(
    active_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(DeliverySite).order_by(DeliverySite.name)
    if active_only:
        stmt = stmt.where(DeliverySite.is_active.is_(True))
    result = await db.execute(stmt)
    return [row_to_dict(s) for s in result.scalars().all()]


@router.post("/sites", status_code=201)
async def create_site(
    req: DeliverySiteIn,
    user: User = Depends(require_role("site_manager")),
    db: AsyncSession = Depends(get_db),
):
    site = DeliverySite(**_clean(req))
    db.add(site)
    await db.flush()
    await db.refresh(site)
    logger.info(f"Delivery site created: {site.name}")
    return row_to_dict(site)


@router.put("/sites/{site_id}")
async def update_site(
    site_id: str,
    req: DeliverySiteIn,
    user: User = Depends(require_role("site_manager")),
    db: AsyncSession = Depends(get_db),
):
    site = await _get_or_404(db, DeliverySite, site_id, "Site")
    for key, value in _clean(req).items():
        setattr(site, key, value)
    await db.flush()
    return row_to_dict(site)


@router.get("/sites/{site_id}/linked-orders")
async def count_site_orders(
    site_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Number of purchase orders that deleting the site would remove."""
    await _get_or_404(db, DeliverySite, site_id, "Site")
    count = (await db.execute(
        select(func.count(PurchaseOrder.id)).where(PurchaseOrder.delivery_site_id == site_id)
    )).scalar() or 0
    return {"site_id": site_id, "linked_orders": count}


@router.delete("/sites/{site_id}")
async def delete_site(
    site_id: str,
    user: User = Depends(require_role("site_manager")),
    db: AsyncSession = Depends(get_db),
    storage: DevisStorage = Depends(get_devis_storage),
):
    """Removes the site, its purchase orders and their devis files."""
    site = await _get_or_404(db, DeliverySite, site_id, "Site")
    storage_paths = (await db.execute(
        select(PurchaseOrderDevis.storage_path)
        .join(PurchaseOrder, PurchaseOrder.id == PurchaseOrderDevis.purchase_order_id)
        .where(PurchaseOrder.delivery_site_id == site_id)
    )).scalars().all()
    result = await db.execute(select(PurchaseOrder).where(PurchaseOrder.delivery_site_id == site_id))
    orders = result.scalars().all()
    for order in orders:
        await db.delete(order)
    await db.delete(site)
    await db.flush()
    for path in storage_paths:
        storage.remove(path)
    logger.info(f"Delivery site deleted: {site.name} ({len(orders)} linked orders)")
    return {"status": "deleted", "deleted_orders": len(orders)}


# ── PRODUCTS ──────────────────────────────────────────────────────────────────

@router.get("/products")
async def search_products(
    q: str = Query("", description="Search on reference or designation"),
    active_only: bool = Query(True),
    limit: int = Query(50, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[dict]:
    stmt = select(Product).order_by(Product.designation).limit(limit)
    if active_only:
        stmt = stmt.where(Product.is_active.is_(True))
    if q.strip():
        pattern = f"%{q.strip()}%"
        stmt = stmt.where(or_(Product.reference.ilike(pattern), Product.designation.ilike(pattern)))
    result = await db.execute(stmt)
    return [row_to_dict(p) for p in result.scalars().all()]


@router.post("/products", status_code=201)
async def create_product(
    req: ProductIn,
    user: User = Depends(require_role("buyer")),
    db: AsyncSession = Depends(get_db),
):
    product = Product(**_clean(req))
    db.add(product)
    await db.flush()
    await db.refresh(product)
    return row_to_dict(product)


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    req: ProductIn,
    user: User = Depends(require_role("buyer")),
    db: AsyncSession = Depends(get_db),
):
    product = await _get_or_404(db, Product, product_id, "Produit")
    for key, value in _clean(req).items():
        setattr(product, key, value)
    await db.flush()
    return row_to_dict(product)


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    user: User = Depends(require_role("buyer")),
    db: AsyncSession = Depends(get_db),
):
    """Order lines keep their copy of the product fields (product_id is SET NULL)."""
    product = await _get_or_404(db, Product, product_id, "Produit")
    await db.delete(product)
    return {"status": "deleted"}
