"""Stock ledger API endpoints."""
from typing import Optional
import uuid

from fastapi import APIRouter, Query, status

from opsledger.api.deps import DB, CurrentUserId
from opsledger.models.inventory import StockMovementType
from opsledger.schemas.inventory import (
    StockAdjustmentCreate,
    MovementResultResponse,
    StockMovementResponse,
    StockMovementListResponse,
    StockReconciliationResponse,
    StockReconciliationSummary,
    InventoryValuationResponse,
    LowStockResponse,
    VariantBrief,
)
from opsledger.config import settings
from opsledger.services.stock_ledger_service import StockLedgerService


router = APIRouter()


# ==================== LEDGER ====================

@router.get("/movements", response_model=StockMovementListResponse)
async def list_movements(
    db: DB,
    variant_id: Optional[uuid.UUID] = Query(None),
    movement_type: Optional[StockMovementType] = Query(None),
    reference_type: Optional[str] = Query(None),
    reference_id: Optional[uuid.UUID] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List stock ledger entries, newest first."""
    service = StockLedgerService(db)
    items, total = await service.get_movements(
        variant_id=variant_id,
        movement_type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        skip=skip,
        limit=limit,
    )
    return StockMovementListResponse(
        items=[StockMovementResponse.model_validate(m) for m in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("/adjustments", response_model=MovementResultResponse, status_code=status.HTTP_201_CREATED)
async def create_adjustment(
    data: StockAdjustmentCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Apply a manual signed stock correction."""
    service = StockLedgerService(db)
    result = await service.adjust_stock(
        variant_id=data.variant_id,
        quantity_delta=data.quantity_delta,
        reason=data.reason,
        created_by=user_id,
    )
    return MovementResultResponse(
        stock_before=result.stock_before,
        stock_after=result.stock_after,
        movement=StockMovementResponse.model_validate(result.movement),
    )


# ==================== RECONCILIATION ====================

@router.get("/variants/{variant_id}/reconcile", response_model=StockReconciliationResponse)
async def reconcile_variant(variant_id: uuid.UUID, db: DB):
    """Compare one variant's cached stock against its ledger sum."""
    report = await StockLedgerService(db).recompute_stock(variant_id)
    return StockReconciliationResponse.model_validate(report)


@router.post("/reconcile", response_model=StockReconciliationSummary)
async def reconcile_all(
    db: DB,
    user_id: CurrentUserId,
    repair: bool = Query(False, description="Rewrite drifted cached stock from the ledger"),
):
    """Check every variant; optionally repair drift."""
    reports = await StockLedgerService(db).reconcile_all(repair=repair)
    drifted = [r for r in reports if not r.in_sync]
    return StockReconciliationSummary(
        checked=len(reports),
        drifted=len(drifted),
        repaired=sum(1 for r in drifted if r.repaired),
        variants=[StockReconciliationResponse.model_validate(r) for r in drifted],
    )


# ==================== REPORTS ====================

@router.get("/valuation", response_model=InventoryValuationResponse)
async def get_valuation(db: DB):
    return InventoryValuationResponse(**await StockLedgerService(db).get_inventory_valuation())


@router.get("/low-stock", response_model=LowStockResponse)
async def get_low_stock(
    db: DB,
    threshold: Optional[int] = Query(None, ge=0),
):
    """Active variants at or below the low-stock threshold."""
    if threshold is None:
        threshold = settings.LOW_STOCK_THRESHOLD
    variants = await StockLedgerService(db).get_low_stock_alerts(threshold)
    return LowStockResponse(
        threshold=threshold,
        items=[VariantBrief.model_validate(v) for v in variants],
    )
