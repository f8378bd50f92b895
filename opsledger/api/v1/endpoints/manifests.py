"""Rider manifest API endpoints: dispatch, delivery outcomes and run settlement."""
from typing import List, Optional
import uuid

from fastapi import APIRouter, Query, status

from opsledger.api.deps import DB, CurrentUserId
from opsledger.models.manifest import ManifestStatus
from opsledger.schemas.manifest import (
    ManifestCreate,
    ManifestResponse,
    ManifestListResponse,
    DispatchQueueResponse,
    DispatchReadyOrder,
    ZoneSummary,
    DeliveryOutcomeCreate,
    RescheduleRequest,
    ManifestSettleRequest,
    ManifestCancelRequest,
)
from opsledger.services.manifest_service import ManifestService


router = APIRouter()


# ==================== MANIFEST CRUD ====================

@router.post("", response_model=ManifestResponse, status_code=status.HTTP_201_CREATED)
async def create_manifest(data: ManifestCreate, db: DB, user_id: CurrentUserId):
    """Create an OPEN manifest for one rider from packed orders."""
    manifest = await ManifestService(db).create_manifest(data, created_by=user_id)
    return ManifestResponse.model_validate(manifest)


@router.get("", response_model=ManifestListResponse)
async def list_manifests(
    db: DB,
    status: Optional[ManifestStatus] = Query(None),
    rider_id: Optional[uuid.UUID] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    """Get paginated list of manifests."""
    items, total = await ManifestService(db).list_manifests(
        status=status,
        rider_id=rider_id,
        skip=skip,
        limit=limit,
    )
    return ManifestListResponse(
        items=[ManifestResponse.model_validate(m) for m in items],
        total=total,
        skip=skip,
        limit=limit,
    )


# ==================== SORTING FLOOR ====================

@router.get("/dispatch-queue", response_model=DispatchQueueResponse)
async def get_orders_for_dispatch(
    db: DB,
    city: Optional[str] = Query(None, description="Case-insensitive partial city match"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """Packed orders waiting for a manifest, oldest first."""
    items, total = await ManifestService(db).get_orders_for_dispatch(city=city, skip=skip, limit=limit)
    return DispatchQueueResponse(
        items=[DispatchReadyOrder.model_validate(o) for o in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/zones", response_model=List[ZoneSummary])
async def get_zone_summary(db: DB):
    """Dispatch-ready orders grouped by city with COD totals."""
    return await ManifestService(db).get_zone_summary()


@router.get("/{manifest_id}", response_model=ManifestResponse)
async def get_manifest(manifest_id: uuid.UUID, db: DB):
    return ManifestResponse.model_validate(await ManifestService(db).get_manifest(manifest_id))


# ==================== RUN LIFECYCLE ====================

@router.post("/{manifest_id}/dispatch", response_model=ManifestResponse)
async def dispatch_manifest(manifest_id: uuid.UUID, db: DB, user_id: CurrentUserId):
    manifest = await ManifestService(db).dispatch_manifest(manifest_id, dispatched_by=user_id)
    return ManifestResponse.model_validate(manifest)


@router.post("/{manifest_id}/outcomes", response_model=ManifestResponse)
async def record_outcome(
    manifest_id: uuid.UUID,
    data: DeliveryOutcomeCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Record the delivery outcome of one order on the run."""
    manifest = await ManifestService(db).record_delivery_outcome(manifest_id, data, recorded_by=user_id)
    return ManifestResponse.model_validate(manifest)


@router.post("/{manifest_id}/reschedule", response_model=ManifestResponse)
async def reschedule_order(
    manifest_id: uuid.UUID,
    data: RescheduleRequest,
    db: DB,
    user_id: CurrentUserId,
):
    manifest = await ManifestService(db).reschedule_order(manifest_id, data, performed_by=user_id)
    return ManifestResponse.model_validate(manifest)


@router.post("/{manifest_id}/settle", response_model=ManifestResponse)
async def settle_manifest(
    manifest_id: uuid.UUID,
    data: ManifestSettleRequest,
    db: DB,
    user_id: CurrentUserId,
):
    """Record cash handed in by the rider for this run."""
    manifest = await ManifestService(db).settle_manifest(manifest_id, data, settled_by=user_id)
    return ManifestResponse.model_validate(manifest)


@router.post("/{manifest_id}/cancel", response_model=ManifestResponse)
async def cancel_manifest(
    manifest_id: uuid.UUID,
    data: ManifestCancelRequest,
    db: DB,
    user_id: CurrentUserId,
):
    manifest = await ManifestService(db).cancel_manifest(manifest_id, data, cancelled_by=user_id)
    return ManifestResponse.model_validate(manifest)
