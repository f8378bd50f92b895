"""Pydantic schemas for the stock ledger."""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from opsledger.schemas.base import BaseResponseSchema, BaseCreateSchema


class VariantBrief(BaseResponseSchema):
    id: uuid.UUID
    sku: str
    name: Optional[str] = None
    current_stock: int
    cost_price: Decimal


class StockMovementResponse(BaseResponseSchema):
    """Ledger entry."""
    id: uuid.UUID
    movement_number: str
    movement_type: str
    variant_id: uuid.UUID
    quantity: int
    stock_delta: int
    stock_before: int
    stock_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[uuid.UUID] = None
    reference_number: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    reason: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime


class StockMovementListResponse(BaseModel):
    items: List[StockMovementResponse]
    total: int
    skip: int
    limit: int


class StockAdjustmentCreate(BaseCreateSchema):
    """Manual stock correction. quantity_delta is signed."""
    variant_id: uuid.UUID
    quantity_delta: int = Field(..., description="Signed change, e.g. -3 or 5")
    reason: str = Field(..., min_length=1, max_length=500)


class MovementResultResponse(BaseModel):
    stock_before: int
    stock_after: int
    movement: StockMovementResponse


class StockReconciliationResponse(BaseResponseSchema):
    variant_id: uuid.UUID
    sku: str
    cached_stock: int
    ledger_stock: int
    difference: int
    in_sync: bool
    repaired: bool = False


class StockReconciliationSummary(BaseModel):
    checked: int
    drifted: int
    repaired: int
    variants: List[StockReconciliationResponse]


class InventoryValuationResponse(BaseModel):
    variant_count: int
    total_units: int
    total_value: Decimal


class LowStockResponse(BaseModel):
    threshold: int
    items: List[VariantBrief]
