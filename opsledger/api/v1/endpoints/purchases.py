"""Purchase intake API endpoints."""
from typing import Optional
import uuid
from datetime import datetime

from fastapi import APIRouter, Query, status

from opsledger.api.deps import DB, CurrentUserId
from opsledger.models.purchase import SupplyStatus
from opsledger.schemas.purchase import (
    PurchaseCreate,
    PurchaseResponse,
    PurchaseResultResponse,
    PurchaseLineResult,
    PurchaseListResponse,
    PurchaseStats,
    VendorPaymentCreate,
)
from opsledger.services.purchase_service import PurchaseService


router = APIRouter()


# ==================== PURCHASE BILLS ====================

@router.post("", response_model=PurchaseResultResponse, status_code=status.HTTP_201_CREATED)
async def create_purchase(
    data: PurchaseCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """
    Record a vendor purchase and bring its goods into stock.

    Response lists the stock outcome of every line; in lenient mode some
    lines may have failed while the bill itself was saved.
    """
    result = await PurchaseService(db).create_purchase(data, created_by=user_id)
    return PurchaseResultResponse(
        purchase=PurchaseResponse.model_validate(result.supply),
        stock_applied=result.stock_applied,
        stock_failed=result.stock_failed,
        lines=[PurchaseLineResult.model_validate(line, from_attributes=True) for line in result.lines],
    )


@router.get("", response_model=PurchaseListResponse)
async def list_purchases(
    db: DB,
    vendor_id: Optional[uuid.UUID] = Query(None),
    status: Optional[SupplyStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await PurchaseService(db).list_purchases(
        vendor_id=vendor_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    return PurchaseListResponse(
        items=[PurchaseResponse.model_validate(p) for p in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/stats", response_model=PurchaseStats)
async def get_purchase_stats(
    db: DB,
    vendor_id: Optional[uuid.UUID] = Query(None),
):
    return PurchaseStats(**await PurchaseService(db).get_stats(vendor_id))


@router.get("/{purchase_id}", response_model=PurchaseResponse)
async def get_purchase(purchase_id: uuid.UUID, db: DB):
    return PurchaseResponse.model_validate(await PurchaseService(db).get_purchase(purchase_id))


# ==================== PAYMENTS ====================

@router.post("/{purchase_id}/payments", response_model=PurchaseResponse)
async def record_payment(
    purchase_id: uuid.UUID,
    data: VendorPaymentCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Record a payment against a purchase bill."""
    supply = await PurchaseService(db).record_payment(purchase_id, data, created_by=user_id)
    return PurchaseResponse.model_validate(supply)
