"""Pack/deduct API endpoints."""
import uuid

from fastapi import APIRouter

from opsledger.api.deps import DB, CurrentUserId
from opsledger.schemas.base import BulkResult
from opsledger.schemas.packing import BulkPackRequest, PackResultResponse
from opsledger.services.packing_service import PackingService


router = APIRouter()


@router.post("/orders/{order_id}/pack", response_model=PackResultResponse)
async def pack_order(order_id: uuid.UUID, db: DB, user_id: CurrentUserId):
    """Pack an order and deduct its stock."""
    result = await PackingService(db).pack_order(order_id, packed_by=user_id)
    return PackResultResponse.model_validate(result, from_attributes=True)


@router.post("/orders/pack-bulk", response_model=BulkResult)
async def pack_orders(data: BulkPackRequest, db: DB, user_id: CurrentUserId):
    """Pack several orders; each one succeeds or fails on its own."""
    return await PackingService(db).pack_orders(data.order_ids, packed_by=user_id)
