"""Pydantic schemas for purchase intake and vendor payments."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
import uuid

from opsledger.core.enum_utils import normalize_to_uppercase
from opsledger.schemas.base import BaseResponseSchema, BaseCreateSchema


PAYMENT_MODES = {"CASH", "BANK", "UPI", "CHEQUE"}


# ==================== PURCHASE ITEM SCHEMAS ====================

class PurchaseItemCreate(BaseCreateSchema):
    """
    Purchase line. Range checks (quantity > 0, unit_cost >= 0) are done by
    PurchaseService so every violation across all lines is reported together.
    """
    variant_id: uuid.UUID
    quantity: int
    unit_cost: Decimal


class PurchaseItemResponse(BaseResponseSchema):
    id: uuid.UUID
    line_number: int
    variant_id: uuid.UUID
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    stock_applied: bool
    stock_error: Optional[str] = None


# ==================== PURCHASE SCHEMAS ====================

class PurchaseCreate(BaseCreateSchema):
    vendor_id: uuid.UUID
    items: List[PurchaseItemCreate]
    invoice_number: Optional[str] = Field(None, max_length=100)
    invoice_date: Optional[date] = None
    notes: Optional[str] = None


class VendorPaymentResponse(BaseResponseSchema):
    id: uuid.UUID
    supply_id: uuid.UUID
    vendor_id: uuid.UUID
    amount: Decimal
    payment_mode: str
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime


class PurchaseResponse(BaseResponseSchema):
    id: uuid.UUID
    supply_number: str
    vendor_id: uuid.UUID
    status: str
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    notes: Optional[str] = None
    received_at: datetime
    created_by: Optional[uuid.UUID] = None
    created_at: datetime
    items: List[PurchaseItemResponse] = []
    payments: List[VendorPaymentResponse] = []


class PurchaseLineResult(BaseModel):
    """Stock outcome for one purchase line."""
    line_number: int
    variant_id: uuid.UUID
    quantity: int
    success: bool
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class PurchaseResultResponse(BaseModel):
    """Purchase bill plus per-line stock outcomes."""
    purchase: PurchaseResponse
    stock_applied: int
    stock_failed: int
    lines: List[PurchaseLineResult]


class PurchaseListResponse(BaseModel):
    items: List[PurchaseResponse]
    total: int
    skip: int
    limit: int


class PurchaseStats(BaseModel):
    total_purchases: int
    total_amount: Decimal
    total_paid: Decimal
    total_outstanding: Decimal
    received_count: int
    partial_count: int
    paid_count: int


# ==================== PAYMENT SCHEMAS ====================

class VendorPaymentCreate(BaseCreateSchema):
    amount: Decimal
    payment_mode: str = "CASH"
    reference_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None

    @field_validator('payment_mode', mode='before')
    @classmethod
    def normalize_payment_mode(cls, v):
        v = normalize_to_uppercase(v, PAYMENT_MODES)
        if v not in PAYMENT_MODES:
            raise ValueError(f"payment_mode must be one of {', '.join(sorted(PAYMENT_MODES))}")
        return v
