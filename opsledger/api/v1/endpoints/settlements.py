"""Rider cash settlement API endpoints."""
from datetime import datetime
from typing import List, Optional
import uuid

from fastapi import APIRouter, Query, status

from opsledger.api.deps import DB, CurrentUserId
from opsledger.models.rider import SettlementStatus
from opsledger.schemas.base import BulkResult
from opsledger.schemas.settlement import (
    SettlementCreate,
    BulkSettlementRequest,
    SettlementResponse,
    SettlementListResponse,
    RiderForSettlement,
    RiderBalanceLogResponse,
    RiderBalanceLogListResponse,
    SettlementStats,
)
from opsledger.services.settlement_service import SettlementService


router = APIRouter()


# ==================== SETTLEMENTS ====================

@router.post("", response_model=SettlementResponse, status_code=status.HTTP_201_CREATED)
async def create_settlement(data: SettlementCreate, db: DB, user_id: CurrentUserId):
    """
    Record cash deposited by a rider.

    The amount must be positive and no more than the rider currently holds.
    """
    settlement = await SettlementService(db).create_settlement(data, created_by=user_id)
    return SettlementResponse.model_validate(settlement)


@router.post("/bulk", response_model=BulkResult)
async def create_settlements_bulk(data: BulkSettlementRequest, db: DB, user_id: CurrentUserId):
    return await SettlementService(db).create_settlements_bulk(data, created_by=user_id)


@router.post("/{settlement_id}/verify", response_model=SettlementResponse)
async def verify_settlement(settlement_id: uuid.UUID, db: DB, user_id: CurrentUserId):
    """Finance confirms the deposit reached the bank."""
    settlement = await SettlementService(db).verify_settlement(settlement_id, verified_by=user_id)
    return SettlementResponse.model_validate(settlement)


# ==================== RIDER VIEWS ====================

@router.get("/riders", response_model=List[RiderForSettlement])
async def get_riders_for_settlement(db: DB):
    """Active riders currently holding COD cash."""
    return await SettlementService(db).get_riders_for_settlement()


@router.get("/stats", response_model=SettlementStats)
async def get_settlement_stats(db: DB):
    return SettlementStats(**await SettlementService(db).get_settlement_stats())


@router.get("/riders/{rider_id}", response_model=SettlementListResponse)
async def get_rider_settlements(
    rider_id: uuid.UUID,
    db: DB,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await SettlementService(db).get_rider_settlements(rider_id, skip=skip, limit=limit)
    return SettlementListResponse(
        items=[SettlementResponse.model_validate(s) for s in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/riders/{rider_id}/balance-log", response_model=RiderBalanceLogListResponse)
async def get_rider_balance_log(
    rider_id: uuid.UUID,
    db: DB,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """Audit trail of every change to a rider's cash balance."""
    items, total = await SettlementService(db).get_rider_balance_log(rider_id, skip=skip, limit=limit)
    return RiderBalanceLogListResponse(
        items=[RiderBalanceLogResponse.model_validate(entry) for entry in items],
        total=total,
        skip=skip,
        limit=limit,
    )


# ==================== SETTLEMENT QUERIES ====================

@router.get("", response_model=SettlementListResponse)
async def list_settlements(
    db: DB,
    status: Optional[SettlementStatus] = Query(None),
    rider_id: Optional[uuid.UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """Get paginated settlements across all riders."""
    items, total = await SettlementService(db).list_settlements(
        status=status,
        rider_id=rider_id,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    return SettlementListResponse(
        items=[SettlementResponse.model_validate(s) for s in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{settlement_id}", response_model=SettlementResponse)
async def get_settlement(settlement_id: uuid.UUID, db: DB):
    return SettlementResponse.model_validate(await SettlementService(db).get_settlement(settlement_id))
