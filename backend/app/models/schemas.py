"""
Request / response models shared by the purchase-order and estimate routers.

Money crosses the wire as integer cents and rates as integer basis points.
Line payloads are kept loose (dicts) on purpose where the calculators do the
validation: invalid lines are dropped by clean_order_lines, not rejected here.
"""
from datetime import date
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

OrderStatus = Literal["draft", "sent", "confirmed", "received", "canceled"]
VersionStatus = Literal["draft", "sent", "accepted", "archived"]
RoundingMode = Literal["none", "nearest", "up", "down"]

# Upper bounds of the estimate inputs; products of these stay well inside float range
MAX_AMOUNT_CENTS = 10**12
MAX_QUANTITY = 1e9
MAX_COEFFICIENT = 1000.0


# ── Purchase orders ──────────────────────────────────────────────────────────

class OrderLinePayload(BaseModel):
    designation: Optional[str] = None
    quantity: Optional[float] = None
    unit_price_cents: Optional[float] = None
    tax_rate_bp: Optional[float] = None
    product_id: Optional[str] = None
    reference: Optional[str] = None


class PurchaseOrderCreate(BaseModel):
    supplier_id: Optional[str] = None
    delivery_site_id: Optional[str] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[OrderLinePayload] = []


class PurchaseOrderUpdate(BaseModel):
    supplier_id: Optional[str] = None
    delivery_site_id: Optional[str] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    items: Optional[List[OrderLinePayload]] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemOut(BaseModel):
    id: str
    position: int
    product_id: Optional[str] = None
    reference: Optional[str] = None
    designation: str
    unit_price_ht_cents: int
    tax_rate_bp: int
    quantity: int
    line_total_ht_cents: int
    line_tax_cents: int
    line_total_ttc_cents: int

    model_config = {"from_attributes": True}


class PurchaseOrderOut(BaseModel):
    id: str
    order_number: Optional[int] = None
    reference: str
    status: str
    supplier_id: str
    delivery_site_id: str
    user_id: Optional[str] = None
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    total_ht_cents: int
    total_tax_cents: int
    total_ttc_cents: int
    currency: str = "EUR"

    model_config = {"from_attributes": True}


class PurchaseOrderDetail(PurchaseOrderOut):
    items: List[OrderItemOut] = []


# ── Devis ────────────────────────────────────────────────────────────────────

class DevisRename(BaseModel):
    name: str


class DevisReorder(BaseModel):
    ordered_ids: List[str] = Field(..., alias="orderedIds")

    model_config = {"populate_by_name": True}


# ── Estimates ────────────────────────────────────────────────────────────────

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    reference: Optional[str] = None
    client_name: Optional[str] = None
    notes: Optional[str] = None
    title: Optional[str] = None
    date_devis: date
    validite_jours: int = Field(30, gt=0)
    margin_multiplier: float = Field(1.0, ge=0, le=MAX_COEFFICIENT)
    tax_rate_bp: int = Field(2000, ge=0, le=10000)


class VersionSettingsUpdate(BaseModel):
    title: Optional[str] = None
    date_devis: Optional[date] = None
    validite_jours: Optional[int] = Field(None, ge=0)
    margin_multiplier: Optional[float] = Field(None, ge=0, le=MAX_COEFFICIENT)
    discount_cents: Optional[int] = Field(None, ge=0, le=MAX_AMOUNT_CENTS)
    tax_rate_bp: Optional[int] = Field(None, ge=0, le=10000)
    rounding_mode: Optional[RoundingMode] = None
    rounding_step_cents: Optional[int] = Field(None, ge=1, le=MAX_AMOUNT_CENTS)


class VersionStatusUpdate(BaseModel):
    status: VersionStatus


class ItemCreate(BaseModel):
    item_type: Literal["section", "line"]
    parent_id: Optional[str] = None
    title: Optional[str] = None


class ItemPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = Field(None, le=MAX_QUANTITY)
    unit_price_ht_cents: Optional[int] = Field(None, le=MAX_AMOUNT_CENTS)
    tax_rate_bp: Optional[int] = Field(None, ge=0, le=10000)
    k_fo: Optional[float] = Field(None, le=MAX_COEFFICIENT)
    h_mo: Optional[float] = Field(None, le=MAX_QUANTITY)
    k_mo: Optional[float] = Field(None, le=MAX_COEFFICIENT)
    labor_role_id: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None


class ItemReorder(BaseModel):
    parent_id: Optional[str] = None
    ordered_ids: List[str]


class LaborRoleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    hourly_rate_cents: int = Field(0, ge=0, le=MAX_AMOUNT_CENTS)
    is_active: bool = True
    position: Optional[int] = None


class LaborRoleUpdate(BaseModel):
    name: Optional[str] = None
    hourly_rate_cents: Optional[int] = Field(None, ge=0, le=MAX_AMOUNT_CENTS)
    is_active: Optional[bool] = None
    position: Optional[int] = None


class CategoryEnsure(BaseModel):
    name: str


class SuggestionRuleIn(BaseModel):
    name: str = Field(..., min_length=1)
    match_value: str
    unit: Optional[str] = None
    category_id: Optional[str] = None
    k_fo: Optional[float] = Field(None, le=MAX_COEFFICIENT)
    k_mo: Optional[float] = Field(None, le=MAX_COEFFICIENT)
    labor_role_id: Optional[str] = None
    position: Optional[int] = None
    is_active: bool = True


class EditorSnapshot(BaseModel):
    """Serialised EstimateEditor state returned by every estimate mutation."""
    version: Dict[str, Any]
    settings: Dict[str, Any]
    items: List[Dict[str, Any]]
    totals: Dict[str, Any]
    line_states: Dict[str, str]
    is_read_only: bool
    can_send: bool
    can_accept: bool
    can_archive: bool
    action_error: Optional[str] = None
