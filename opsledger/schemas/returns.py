"""Pydantic schemas for return intake."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from opsledger.core.enum_utils import normalize_to_uppercase, enum_values
from opsledger.models.return_order import ReturnCondition
from opsledger.schemas.base import BaseResponseSchema, BaseCreateSchema


class ReturnItemCreate(BaseCreateSchema):
    variant_id: uuid.UUID
    quantity: int
    condition: ReturnCondition = ReturnCondition.GOOD

    @field_validator('condition', mode='before')
    @classmethod
    def normalize_condition(cls, v):
        return normalize_to_uppercase(v, set(enum_values(ReturnCondition)))


class ReturnCreate(BaseCreateSchema):
    items: List[ReturnItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = None


class BulkReturnRequest(BaseCreateSchema):
    """Rider hands back every unit of the listed orders in good condition."""
    rider_id: uuid.UUID
    order_ids: List[uuid.UUID] = Field(..., min_length=1)


class ReturnItemResponse(BaseResponseSchema):
    id: uuid.UUID
    variant_id: uuid.UUID
    quantity: int
    condition: str
    movement_id: Optional[uuid.UUID] = None


class ReturnResponse(BaseResponseSchema):
    id: uuid.UUID
    return_number: str
    order_id: uuid.UUID
    rider_id: Optional[uuid.UUID] = None
    manifest_id: Optional[uuid.UUID] = None
    status: str
    notes: Optional[str] = None
    received_by: Optional[uuid.UUID] = None
    received_at: datetime
    items: List[ReturnItemResponse] = []


class ReturnListResponse(BaseModel):
    items: List[ReturnResponse]
    total: int
    skip: int
    limit: int


class ReturnInitiateRequest(BaseCreateSchema):
    reason: Optional[str] = Field(None, max_length=500)


class ReturnInitiatedResponse(BaseResponseSchema):
    id: uuid.UUID
    order_number: str
    status: str
    updated_at: datetime


class ReturnStats(BaseModel):
    pending_with_riders: int
    awaiting_customer_goods: int
    received_today: int
    good_units_today: int
    damaged_units_today: int


class PendingReturnOrder(BaseModel):
    order_id: uuid.UUID
    order_number: str
    total_amount: Decimal
    manifest_id: Optional[uuid.UUID] = None
    last_delivery_outcome: Optional[str] = None


class PendingReturnsByRider(BaseModel):
    rider_id: uuid.UUID
    rider_name: str
    order_count: int
    orders: List[PendingReturnOrder]
