"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models MUST inherit from
BaseResponseSchema.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class VariantBrief(BaseResponseSchema):
            id: UUID
            sku: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored (forward compatibility).
    """
    model_config = ConfigDict(
        extra='ignore',
    )


# ==================== PER-UNIT RESULTS ====================

class UnitResult(BaseModel):
    """Outcome of one unit (order, rider) inside a bulk operation."""
    id: UUID
    success: bool
    error_code: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class BulkResult(BaseModel):
    """Per-unit tally for bulk operations. Failed units are not retried."""
    total: int
    succeeded: int
    failed: int
    results: List[UnitResult]
