"""Pydantic schemas for dispatch manifests and delivery outcomes."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
import uuid

from opsledger.core.enum_utils import normalize_to_uppercase, enum_values
from opsledger.models.manifest import DeliveryOutcome
from opsledger.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== MANIFEST ITEM SCHEMAS ====================

class ManifestOrderBrief(BaseResponseSchema):
    id: uuid.UUID
    order_number: str
    status: str
    payment_method: str
    payment_status: str
    total_amount: Decimal
    customer_name: Optional[str] = None
    customer_city: Optional[str] = None


class ManifestItemResponse(BaseResponseSchema):
    """Manifest item response schema."""
    id: uuid.UUID
    manifest_id: uuid.UUID
    order_id: uuid.UUID
    sequence_number: int
    outcome: str
    outcome_notes: Optional[str] = None
    outcome_at: Optional[datetime] = None
    cod_amount: Decimal
    cod_collected: Decimal
    order: Optional[ManifestOrderBrief] = None


# ==================== MANIFEST SCHEMAS ====================

class ManifestCreate(BaseCreateSchema):
    """Manifest creation schema."""
    rider_id: uuid.UUID
    order_ids: List[uuid.UUID] = Field(..., min_length=1)
    zone_name: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class ManifestResponse(BaseResponseSchema):
    """Manifest response schema."""
    id: uuid.UUID
    manifest_number: str
    rider_id: uuid.UUID
    zone_name: Optional[str] = None
    status: str
    total_orders: int
    delivered_count: int
    returned_count: int
    rescheduled_count: int
    pending_count: int
    total_cod_expected: Decimal
    total_cod_collected: Decimal
    cash_received: Decimal
    settlement_variance: Decimal
    notes: Optional[str] = None
    settlement_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    dispatched_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    items: List[ManifestItemResponse] = []


class ManifestListResponse(BaseModel):
    items: List[ManifestResponse]
    total: int
    skip: int
    limit: int


# ==================== SORTING FLOOR SCHEMAS ====================

class DispatchReadyOrder(ManifestOrderBrief):
    item_count: int = 0
    delivery_attempt_count: int = 0
    packed_at: Optional[datetime] = None


class DispatchQueueResponse(BaseModel):
    items: List[DispatchReadyOrder]
    total: int
    skip: int
    limit: int


class ZoneSummary(BaseModel):
    """Dispatch-ready orders for one city."""
    city: str
    order_count: int
    total_cod: Decimal


# ==================== DELIVERY OUTCOME SCHEMAS ====================

RECORDABLE_OUTCOMES = set(enum_values(DeliveryOutcome)) - {DeliveryOutcome.PENDING.value}


class DeliveryOutcomeCreate(BaseCreateSchema):
    order_id: uuid.UUID
    outcome: DeliveryOutcome
    cod_collected: Optional[Decimal] = None
    notes: Optional[str] = None

    @field_validator('outcome', mode='before')
    @classmethod
    def normalize_outcome(cls, v):
        return normalize_to_uppercase(v, RECORDABLE_OUTCOMES)


class RescheduleRequest(BaseCreateSchema):
    order_id: uuid.UUID
    reschedule_date: Optional[date] = None
    notes: Optional[str] = None


class ManifestSettleRequest(BaseCreateSchema):
    """Cash handed in by the rider for this run."""
    cash_received: Decimal
    notes: Optional[str] = None


class ManifestCancelRequest(BaseCreateSchema):
    reason: str = Field(..., min_length=1, max_length=500)
