"""ORM Models for Achats & Chiffrage - SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, BigInteger, Float, DateTime, Date,
    ForeignKey, UniqueConstraint, Index, Identity
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


def row_to_dict(obj) -> dict:
    """Column values of a mapped row as a plain dict."""
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


# ── AUTH ──────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "profiles"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    # "buyer" | "site_manager" | "admin"
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="buyer")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── CATALOG ───────────────────────────────────────────────────────────────────
class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(String(255))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(100), default="France")
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    contact_name: Mapped[Optional[str]] = mapped_column(String(255))
    siret: Mapped[Optional[str]] = mapped_column(String(20))
    vat_number: Mapped[Optional[str]] = mapped_column(String(30))
    payment_terms: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeliverySite(Base):
    __tablename__ = "delivery_sites"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    project_code: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(String(255))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    contact_name: Mapped[Optional[str]] = mapped_column(String(255))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Product(Base):
    __tablename__ = "products"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    designation: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_rate_bp: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── PURCHASE ORDERS ───────────────────────────────────────────────────────────
class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    order_number: Mapped[int] = mapped_column(Integer, Identity(), unique=True)
    reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    supplier_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("suppliers.id"), nullable=False)
    delivery_site_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("delivery_sites.id", ondelete="CASCADE"), nullable=False
    )
    # draft | sent | confirmed | received | canceled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    order_date: Mapped[date] = mapped_column(Date, server_default=func.current_date())
    expected_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    total_ht_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_ttc_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    supplier: Mapped["Supplier"] = relationship("Supplier")
    delivery_site: Mapped["DeliverySite"] = relationship("DeliverySite")
    user: Mapped[Optional["User"]] = relationship("User")
    items: Mapped[list["PurchaseOrderItem"]] = relationship(
        "PurchaseOrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.position",
    )
    devis: Mapped[list["PurchaseOrderDevis"]] = relationship(
        "PurchaseOrderDevis", back_populates="order", cascade="all, delete-orphan",
        order_by="PurchaseOrderDevis.position",
    )


class PurchaseOrderItem(Base):
    __tablename__ = "purchase_order_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    purchase_order_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("products.id", ondelete="SET NULL")
    )
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    designation: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price_ht_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_rate_bp: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total_ht_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    line_tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    line_total_ttc_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder", back_populates="items")


class PurchaseOrderDevis(Base):
    __tablename__ = "purchase_order_devis"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    purchase_order_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder", back_populates="devis")
    __table_args__ = (
        UniqueConstraint("purchase_order_id", "position", name="uq_devis_order_position"),
    )


# ── ESTIMATES (CHIFFRAGE) ─────────────────────────────────────────────────────
class EstimateProject(Base):
    __tablename__ = "estimate_projects"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    client_name: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    versions: Mapped[list["EstimateVersion"]] = relationship(
        "EstimateVersion", back_populates="project", cascade="all, delete-orphan",
        order_by="EstimateVersion.version_number",
    )


class EstimateVersion(Base):
    __tablename__ = "estimate_versions"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("estimate_projects.id", ondelete="CASCADE"), nullable=False
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # draft | sent | accepted | archived
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    title: Mapped[Optional[str]] = mapped_column(String(255))
    date_devis: Mapped[Optional[date]] = mapped_column(Date)
    validite_jours: Mapped[Optional[int]] = mapped_column(Integer, default=30)
    margin_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    discount_bp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_rate_bp: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    # none | nearest | up | down
    rounding_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    rounding_step_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_ht_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    total_tax_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    total_ttc_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["EstimateProject"] = relationship("EstimateProject", back_populates="versions")
    __table_args__ = (
        UniqueConstraint("project_id", "version_number", name="uq_estimate_version_number"),
    )


class EstimateItem(Base):
    __tablename__ = "estimate_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    version_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("estimate_versions.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("estimate_items.id", ondelete="CASCADE")
    )
    # section | line
    item_type: Mapped[str] = mapped_column(String(20), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text)  # unit label ("m2", "u", ...)
    quantity: Mapped[Optional[float]] = mapped_column(Float)
    unit_price_ht_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    tax_rate_bp: Mapped[Optional[int]] = mapped_column(Integer)
    k_fo: Mapped[Optional[float]] = mapped_column(Float)
    h_mo: Mapped[Optional[float]] = mapped_column(Float)
    k_mo: Mapped[Optional[float]] = mapped_column(Float)
    pu_ht_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    labor_role_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("labor_roles.id", ondelete="SET NULL")
    )
    category_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("estimate_categories.id", ondelete="SET NULL")
    )
    line_total_ht_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    line_tax_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    line_total_ttc_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        Index("ix_estimate_items_version_parent", "version_id", "parent_id"),
    )


class LaborRole(Base):
    __tablename__ = "labor_roles"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hourly_rate_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EstimateCategory(Base):
    __tablename__ = "estimate_categories"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EstimateSuggestionRule(Base):
    __tablename__ = "estimate_suggestion_rules"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False, default="keyword")
    match_value: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    category_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("estimate_categories.id", ondelete="SET NULL")
    )
    k_fo: Mapped[Optional[float]] = mapped_column(Float)
    k_mo: Mapped[Optional[float]] = mapped_column(Float)
    labor_role_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("labor_roles.id", ondelete="SET NULL")
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
