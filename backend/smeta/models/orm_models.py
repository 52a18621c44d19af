"""ORM Models for Smeta — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Integer, Numeric, DateTime, Date,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from smeta.db import Base


def gen_uuid():
    return str(uuid.uuid4())


ID = String(36)
Money = Numeric(14, 2)
Quantity = Numeric(14, 2)
JSONDoc = JSON().with_variant(JSONB(), "postgresql")


# ── TENANTS & PROJECTS ────────────────────────────────────────────────────────
class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    object_name: Mapped[Optional[str]] = mapped_column(String(255))
    client: Mapped[Optional[str]] = mapped_column(String(255))
    contractor: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(Text)
    contract_number: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── CATALOG ───────────────────────────────────────────────────────────────────
class Work(Base):
    """Catalog work: the reference price list estimators pick from."""
    __tablename__ = "works"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    code: Mapped[Optional[str]] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    base_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    phase: Mapped[Optional[str]] = mapped_column(String(255))
    section: Mapped[Optional[str]] = mapped_column(String(255))
    subsection: Mapped[Optional[str]] = mapped_column(String(255))


class Material(Base):
    __tablename__ = "materials"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    price: Mapped[Optional[Decimal]] = mapped_column(Money)
    image_url: Mapped[Optional[str]] = mapped_column(Text)


class WorkMaterial(Base):
    """Consumption norm: how much of a material one unit of work consumes."""
    __tablename__ = "work_materials"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    work_id: Mapped[str] = mapped_column(ID, ForeignKey("works.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(ID, ForeignKey("materials.id"), nullable=False)
    consumption: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("1"))
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    __table_args__ = (UniqueConstraint("work_id", "material_id", name="uq_work_material"),)


# ── ESTIMATES ─────────────────────────────────────────────────────────────────
class Estimate(Base):
    __tablename__ = "estimates"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    project_id: Mapped[Optional[str]] = mapped_column(ID, ForeignKey("projects.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    estimate_type: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), default="draft")
    description: Mapped[Optional[str]] = mapped_column(Text)
    estimate_date: Mapped[Optional[date]] = mapped_column(Date)
    currency: Mapped[str] = mapped_column(String(10), default="RUB")
    # Pre-coefficient baseline prices keyed by work id or "code_name"
    original_prices_json: Mapped[Optional[dict]] = mapped_column(JSONDoc)
    current_coefficient: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    items: Mapped[list["EstimateItem"]] = relationship(
        "EstimateItem", back_populates="estimate", order_by="EstimateItem.position_number"
    )


class EstimateItem(Base):
    __tablename__ = "estimate_items"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    estimate_id: Mapped[str] = mapped_column(ID, ForeignKey("estimates.id"), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    work_id: Mapped[Optional[str]] = mapped_column(ID, ForeignKey("works.id"))
    item_type: Mapped[str] = mapped_column(String(20), default="work")
    code: Mapped[Optional[str]] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    final_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    phase: Mapped[Optional[str]] = mapped_column(String(255))
    section: Mapped[Optional[str]] = mapped_column(String(255))
    subsection: Mapped[Optional[str]] = mapped_column(String(255))
    position_number: Mapped[int] = mapped_column(Integer, default=0)
    estimate: Mapped["Estimate"] = relationship("Estimate", back_populates="items")
    materials: Mapped[list["EstimateItemMaterial"]] = relationship(
        "EstimateItemMaterial", back_populates="item", order_by="EstimateItemMaterial.position_number"
    )


class EstimateItemMaterial(Base):
    __tablename__ = "estimate_item_materials"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    estimate_item_id: Mapped[str] = mapped_column(
        ID, ForeignKey("estimate_items.id"), nullable=False, index=True
    )
    material_id: Mapped[str] = mapped_column(ID, ForeignKey("materials.id"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    consumption: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("1"))
    auto_calculate: Mapped[bool] = mapped_column(Boolean, default=True)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    position_number: Mapped[int] = mapped_column(Integer, default=0)
    item: Mapped["EstimateItem"] = relationship("EstimateItem", back_populates="materials")


# ── WORK COMPLETION ───────────────────────────────────────────────────────────
class WorkCompletion(Base):
    """
    Operator's record that an estimate line was (partly) done.

    The ``last_*_act_id`` columns are back-references, not ownership: each act
    type keeps its own pointer so a record consumed by a client act is still
    available to a specialist act and vice versa. The act ids carry no FK:
    deleting an act leaves its records consumed.
    """
    __tablename__ = "work_completions"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(ID, ForeignKey("tenants.id"), index=True)
    estimate_id: Mapped[str] = mapped_column(ID, ForeignKey("estimates.id"), nullable=False)
    estimate_item_id: Mapped[str] = mapped_column(ID, ForeignKey("estimate_items.id"), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    actual_quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    actual_total: Mapped[Optional[Decimal]] = mapped_column(Money)
    completion_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    last_act_id: Mapped[Optional[str]] = mapped_column(ID)
    last_client_act_id: Mapped[Optional[str]] = mapped_column(ID, index=True)
    last_specialist_act_id: Mapped[Optional[str]] = mapped_column(ID, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(ID)
    updated_by: Mapped[Optional[str]] = mapped_column(ID)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    __table_args__ = (
        UniqueConstraint("estimate_id", "estimate_item_id", name="uq_completion_item"),
    )


# ── COMPLETION ACTS ───────────────────────────────────────────────────────────
class CompletionAct(Base):
    """
    Frozen certificate of completed work (client billing or specialist payout).

    Totals and items are snapshots taken at generation time.
    """
    __tablename__ = "work_completion_acts"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(ID, ForeignKey("tenants.id"), nullable=False)
    estimate_id: Mapped[str] = mapped_column(ID, ForeignKey("estimates.id"), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(ID, ForeignKey("projects.id"))
    act_type: Mapped[str] = mapped_column(String(20), nullable=False)  # client | specialist
    act_number: Mapped[str] = mapped_column(String(50), nullable=False)
    act_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_from: Mapped[Optional[date]] = mapped_column(Date)
    period_to: Mapped[Optional[date]] = mapped_column(Date)
    total_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    work_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="draft")
    # KS-2/KS-3 header blocks; project fields are the fallback when empty
    contractor_name: Mapped[Optional[str]] = mapped_column(String(255))
    contractor_inn: Mapped[Optional[str]] = mapped_column(String(20))
    contractor_kpp: Mapped[Optional[str]] = mapped_column(String(20))
    contractor_address: Mapped[Optional[str]] = mapped_column(Text)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_inn: Mapped[Optional[str]] = mapped_column(String(20))
    customer_kpp: Mapped[Optional[str]] = mapped_column(String(20))
    customer_address: Mapped[Optional[str]] = mapped_column(Text)
    contract_number: Mapped[Optional[str]] = mapped_column(String(100))
    contract_date: Mapped[Optional[date]] = mapped_column(Date)
    contract_subject: Mapped[Optional[str]] = mapped_column(Text)
    construction_object: Mapped[Optional[str]] = mapped_column(Text)
    construction_address: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(ID)
    updated_by: Mapped[Optional[str]] = mapped_column(ID)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    items: Mapped[list["ActItem"]] = relationship(
        "ActItem", back_populates="act", order_by="ActItem.position_number"
    )
    signatories: Mapped[list["ActSignatory"]] = relationship("ActSignatory", back_populates="act")
    __table_args__ = (
        UniqueConstraint("tenant_id", "act_type", "act_number", name="uq_act_number"),
        Index("ix_acts_estimate_type_date", "estimate_id", "act_type", "act_date"),
    )


class ActItem(Base):
    __tablename__ = "work_completion_act_items"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    act_id: Mapped[str] = mapped_column(
        ID, ForeignKey("work_completion_acts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(ID, nullable=False)
    # Audit trail only; the snapshot never re-reads the live estimate line
    estimate_item_id: Mapped[str] = mapped_column(ID, nullable=False, index=True)
    work_id: Mapped[Optional[str]] = mapped_column(ID)
    work_code: Mapped[Optional[str]] = mapped_column(String(50))
    work_name: Mapped[str] = mapped_column(Text, nullable=False)
    section: Mapped[Optional[str]] = mapped_column(String(255))
    subsection: Mapped[Optional[str]] = mapped_column(String(255))
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    planned_quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    actual_quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    position_number: Mapped[int] = mapped_column(Integer, nullable=False)
    act: Mapped["CompletionAct"] = relationship("CompletionAct", back_populates="items")


class ActSignatory(Base):
    __tablename__ = "act_signatories"
    id: Mapped[str] = mapped_column(ID, primary_key=True, default=gen_uuid)
    act_id: Mapped[str] = mapped_column(
        ID, ForeignKey("work_completion_acts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(ID, nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[Optional[str]] = mapped_column(String(255))
    signed_at: Mapped[Optional[date]] = mapped_column(Date)
    act: Mapped["CompletionAct"] = relationship("CompletionAct", back_populates="signatories")


class ActNumberSequence(Base):
    """
    Last issued act number per (tenant, type, year).

    Advanced inside the generation transaction, so a rollback leaves it
    untouched; never decremented, so deleted acts never free their number.
    """
    __tablename__ = "act_number_sequences"
    tenant_id: Mapped[str] = mapped_column(ID, primary_key=True)
    act_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
