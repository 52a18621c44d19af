"""Request / response models for the Smeta HTTP API."""
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Estimates ─────────────────────────────────────────────────────────────────

class MaterialPayload(BaseModel):
    # Legacy clients may still send autoCalculate; it is resolved in estimate_payload
    model_config = ConfigDict(extra="allow")

    material_id: Optional[str] = None
    quantity: float = 0
    unit_price: float = 0
    consumption: float = Field(1, ge=0)
    auto_calculate: Optional[bool] = None
    is_required: bool = True
    notes: Optional[str] = None


class WorkItemPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    workId: Optional[str] = None
    item_type: str = "work"
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    quantity: float = Field(0, ge=0)
    unit_price: float = Field(0, ge=0)
    phase: Optional[str] = None
    section: Optional[str] = None
    subsection: Optional[str] = None
    materials: List[MaterialPayload] = []


class EstimateSavePayload(BaseModel):
    """Wire shape of a saved estimate (camelCase metadata, snake_case lines)."""
    name: Optional[str] = None
    projectId: Optional[str] = None
    estimateType: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    estimateDate: Optional[date] = None
    currency: Optional[str] = None
    items: List[WorkItemPayload] = []


class CoefficientRequest(BaseModel):
    percent: float = Field(..., gt=-100, description="Mark-up (+) or discount (-) in percent")


class InsertWorksRequest(BaseModel):
    work_ids: List[str] = Field(..., min_length=1)


# ── Completion records ────────────────────────────────────────────────────────

class CompletionUpsert(BaseModel):
    estimate_item_id: str
    completed: bool = False
    actual_quantity: float = Field(0, ge=0)
    actual_total: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class CompletionBatchRequest(BaseModel):
    completions: List[CompletionUpsert]


# ── Acts ──────────────────────────────────────────────────────────────────────

class GenerateActRequest(BaseModel):
    estimate_id: str
    act_type: Literal["client", "specialist", "both"]
    project_id: Optional[str] = None
    act_date: Optional[date] = None
    period_from: Optional[date] = None
    period_to: Optional[date] = None
    status: str = "draft"
    notes: Optional[str] = None


class ActStatusUpdate(BaseModel):
    status: str


class ActDetailsUpdate(BaseModel):
    contractor_name: Optional[str] = None
    contractor_inn: Optional[str] = None
    contractor_kpp: Optional[str] = None
    contractor_address: Optional[str] = None
    customer_name: Optional[str] = None
    customer_inn: Optional[str] = None
    customer_kpp: Optional[str] = None
    customer_address: Optional[str] = None
    contract_number: Optional[str] = None
    contract_date: Optional[date] = None
    contract_subject: Optional[str] = None
    construction_object: Optional[str] = None
    construction_address: Optional[str] = None
    notes: Optional[str] = None


class SignatoryIn(BaseModel):
    role: str
    full_name: str
    position: Optional[str] = None
    signed_at: Optional[date] = None


class SignatoriesUpdate(BaseModel):
    signatories: List[SignatoryIn]


class ActItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    estimate_item_id: str
    work_id: Optional[str] = None
    work_code: Optional[str] = None
    work_name: str
    section: Optional[str] = None
    subsection: Optional[str] = None
    unit: Optional[str] = None
    planned_quantity: float
    actual_quantity: float
    unit_price: float
    total_price: float
    position_number: int


class SignatoryOut(SignatoryIn):
    model_config = ConfigDict(from_attributes=True)

    id: str


class ActOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    estimate_id: str
    project_id: Optional[str] = None
    act_type: str
    act_number: str
    act_date: date
    period_from: Optional[date] = None
    period_to: Optional[date] = None
    total_amount: float
    total_quantity: float
    work_count: int
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ActDetailOut(ActOut, ActDetailsUpdate):
    items: List[ActItemOut] = []
    signatories: List[SignatoryOut] = []
