"""Return intake API endpoints."""
from datetime import datetime
from typing import List, Optional
import uuid

from fastapi import APIRouter, Query, status

from opsledger.api.deps import DB, CurrentUserId
from opsledger.schemas.base import BulkResult
from opsledger.schemas.returns import (
    ReturnCreate,
    ReturnResponse,
    ReturnListResponse,
    ReturnInitiateRequest,
    ReturnInitiatedResponse,
    ReturnStats,
    BulkReturnRequest,
    PendingReturnsByRider,
)
from opsledger.services.returns_service import ReturnsService


router = APIRouter()


# ==================== RETURN INTAKE ====================

@router.post("/orders/{order_id}/initiate", response_model=ReturnInitiatedResponse)
async def initiate_return(
    order_id: uuid.UUID,
    db: DB,
    user_id: CurrentUserId,
    data: Optional[ReturnInitiateRequest] = None,
):
    """Open a customer return on a delivered order. Stock moves when the goods arrive."""
    order = await ReturnsService(db).initiate_return(
        order_id,
        performed_by=user_id,
        reason=data.reason if data else None,
    )
    return ReturnInitiatedResponse.model_validate(order)


@router.post("/orders/{order_id}", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def receive_return(
    order_id: uuid.UUID,
    data: ReturnCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """
    Receive returned units for an order.

    GOOD units go back into sellable stock; DAMAGED units are logged only.
    """
    order_return = await ReturnsService(db).process_return(order_id, data, received_by=user_id)
    return ReturnResponse.model_validate(order_return)


@router.post("/bulk", response_model=BulkResult)
async def receive_returns_bulk(data: BulkReturnRequest, db: DB, user_id: CurrentUserId):
    return await ReturnsService(db).process_returns_bulk(data, received_by=user_id)


# ==================== QUERIES ====================

@router.get("", response_model=ReturnListResponse)
async def list_returns(
    db: DB,
    rider_id: Optional[uuid.UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """Get paginated return receipts."""
    items, total = await ReturnsService(db).list_returns(
        rider_id=rider_id,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    return ReturnListResponse(
        items=[ReturnResponse.model_validate(r) for r in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/pending", response_model=List[PendingReturnsByRider])
async def get_pending_returns(
    db: DB,
    rider_id: Optional[uuid.UUID] = Query(None),
):
    """Rejected orders whose goods are still with a rider."""
    return await ReturnsService(db).get_pending_returns(rider_id)


@router.get("/stats", response_model=ReturnStats)
async def get_returns_stats(db: DB):
    return ReturnStats(**await ReturnsService(db).get_returns_stats())


@router.get("/orders/{order_id}", response_model=List[ReturnResponse])
async def get_order_returns(order_id: uuid.UUID, db: DB):
    """Every receipt booked against one order."""
    returns = await ReturnsService(db).get_order_returns(order_id)
    return [ReturnResponse.model_validate(r) for r in returns]


@router.get("/{return_id}", response_model=ReturnResponse)
async def get_return(return_id: uuid.UUID, db: DB):
    return ReturnResponse.model_validate(await ReturnsService(db).get_return(return_id))
