"""Pydantic schemas for the pack/deduct gate."""
from pydantic import BaseModel, Field
from typing import List
import uuid

from opsledger.schemas.base import BaseCreateSchema


class PackedLine(BaseModel):
    variant_id: uuid.UUID
    quantity: int
    stock_before: int
    stock_after: int


class PackResultResponse(BaseModel):
    order_id: uuid.UUID
    order_number: str
    order_status: str
    lines: List[PackedLine]


class BulkPackRequest(BaseCreateSchema):
    order_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=500)
