"""Pydantic schemas for rider cash settlements."""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from opsledger.schemas.base import BaseResponseSchema, BaseCreateSchema


class SettlementCreate(BaseCreateSchema):
    """
    Rider cash deposit. Amount checks (> 0, <= held balance) are done by
    SettlementService against the balance at call time.
    """
    rider_id: uuid.UUID
    amount: Decimal
    payment_method: str = Field("CASH", max_length=50)
    payment_reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class BulkSettlementEntry(BaseCreateSchema):
    rider_id: uuid.UUID
    amount: Decimal
    payment_reference: Optional[str] = Field(None, max_length=100)


class BulkSettlementRequest(BaseCreateSchema):
    entries: List[BulkSettlementEntry] = Field(..., min_length=1)
    payment_method: str = Field("CASH", max_length=50)
    notes: Optional[str] = None


class SettlementResponse(BaseResponseSchema):
    id: uuid.UUID
    settlement_number: str
    rider_id: uuid.UUID
    manifest_id: Optional[uuid.UUID] = None
    settlement_date: datetime
    total_cod_collected: Decimal
    amount_deposited: Decimal
    balance_before: Decimal
    balance_after: Decimal
    payment_method: str
    deposit_reference: Optional[str] = None
    status: str
    notes: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    verified_by: Optional[uuid.UUID] = None
    verified_at: Optional[datetime] = None


class SettlementListResponse(BaseModel):
    items: List[SettlementResponse]
    total: int
    skip: int
    limit: int


class RiderForSettlement(BaseModel):
    rider_id: uuid.UUID
    rider_code: str
    full_name: str
    phone: Optional[str] = None
    current_cash_balance: Decimal
    last_settlement_at: Optional[datetime] = None
    last_settlement_amount: Optional[Decimal] = None


class RiderBalanceLogResponse(BaseResponseSchema):
    id: uuid.UUID
    rider_id: uuid.UUID
    change_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: Optional[str] = None
    reference_id: Optional[uuid.UUID] = None
    reference_number: Optional[str] = None
    performed_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_at: datetime


class RiderBalanceLogListResponse(BaseModel):
    items: List[RiderBalanceLogResponse]
    total: int
    skip: int
    limit: int


class SettlementStats(BaseModel):
    total_unsettled: Decimal
    riders_holding_cash: int
    today_settlement_count: int
    today_settlement_amount: Decimal
    pending_verifications: int
