"""
Return and damage re-injection.

Receiving a return books GOOD units back into sellable stock with INWARD
movements and records DAMAGED units as zero-delta DAMAGE movements. One
OrderReturn row is written per receipt; stock movements, the return record
and the order status change commit together.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsledger.core.enum_utils import get_enum_value
from opsledger.core.exceptions import (
    AppError,
    ConflictError,
    DatabaseError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from opsledger.models.inventory import StockMovementType
from opsledger.models.manifest import DispatchManifest, ManifestItem
from opsledger.models.order import Order, OrderStatus
from opsledger.models.return_order import OrderReturn, OrderReturnItem, ReturnCondition
from opsledger.models.rider import Rider
from opsledger.schemas.base import BulkResult, UnitResult
from opsledger.schemas.returns import ReturnCreate, ReturnItemCreate, BulkReturnRequest
from opsledger.services.order_state_machine import can_receive_return, validate_transition
from opsledger.services.stock_ledger_service import StockLedgerService

logger = logging.getLogger(__name__)


class ReturnsService:
    """Receives returned goods and re-injects sellable units into stock."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

    async def _generate_return_number(self) -> str:
        """Generate return number: RET-YYYYMMDD-XXXX"""
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        prefix = f"RET-{today}"

        query = select(func.count(OrderReturn.id)).where(
            OrderReturn.return_number.like(f"{prefix}%")
        )
        count = await self.db.scalar(query) or 0
        return f"{prefix}-{count + 1:04d}"

    async def _get_order_for_update(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Order")
        return order

    async def _returned_quantities(self, order_id: uuid.UUID) -> Dict[uuid.UUID, int]:
        """Units already received back for this order, per variant."""
        result = await self.db.execute(
            select(OrderReturnItem.variant_id, func.sum(OrderReturnItem.quantity))
            .join(OrderReturn, OrderReturn.id == OrderReturnItem.return_id)
            .where(OrderReturn.order_id == order_id)
            .group_by(OrderReturnItem.variant_id)
        )
        return {variant_id: int(qty or 0) for variant_id, qty in result.all()}

    async def _last_run(self, order_id: uuid.UUID) -> Tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        """(manifest_id, rider_id) of the latest manifest the order was on."""
        result = await self.db.execute(
            select(ManifestItem.manifest_id, DispatchManifest.rider_id)
            .join(DispatchManifest, DispatchManifest.id == ManifestItem.manifest_id)
            .where(ManifestItem.order_id == order_id)
            .order_by(ManifestItem.created_at.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else (None, None)

    def _validate_items(
        self,
        order: Order,
        items: List[ReturnItemCreate],
        already_returned: Dict[uuid.UUID, int],
    ) -> None:
        ordered: Dict[uuid.UUID, int] = defaultdict(int)
        for line in order.items:
            ordered[line.variant_id] += line.quantity

        requested: Dict[uuid.UUID, int] = defaultdict(int)
        errors = []
        for index, item in enumerate(items):
            if item.quantity <= 0:
                errors.append({"field": f"items[{index}].quantity", "message": "Must be greater than 0"})
                continue
            if item.variant_id not in ordered:
                errors.append({
                    "field": f"items[{index}].variant_id",
                    "message": f"Variant {item.variant_id} is not on order {order.order_number}",
                })
                continue
            requested[item.variant_id] += item.quantity

        for variant_id, qty in requested.items():
            returnable = ordered[variant_id] - already_returned.get(variant_id, 0)
            if qty > returnable:
                errors.append({
                    "field": "items",
                    "message": (
                        f"Return of {qty} unit(s) of variant {variant_id} exceeds "
                        f"the {returnable} unit(s) still returnable"
                    ),
                })

        if errors:
            raise ValidationError(f"Return validation failed with {len(errors)} error(s)", errors)

    # ==================== CUSTOMER RETURNS ====================

    async def initiate_return(
        self,
        order_id: uuid.UUID,
        performed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Open a customer return on a delivered order (DELIVERED -> RETURN_INITIATED).

        No stock moves here; units are booked when the goods arrive through
        process_return().
        """
        order = await self._get_order_for_update(order_id)
        current_status = order.status
        validate_transition(current_status, OrderStatus.RETURN_INITIATED.value)

        try:
            moved = await self.db.execute(
                update(Order)
                .where(and_(Order.id == order.id, Order.status == current_status))
                .values(status=OrderStatus.RETURN_INITIATED.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise ConflictError(f"Order {order.order_number} was modified concurrently")
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Initiating return for order {order_id} failed: {e}")
            raise DatabaseError("Failed to initiate return", original=e)

        logger.info(
            f"Return initiated for order {order.order_number}"
            + (f" by user {performed_by}" if performed_by else "")
            + (f": {reason}" if reason else "")
        )
        return await self.db.get(Order, order_id, populate_existing=True)

    # ==================== RETURN INTAKE ====================

    async def process_return(
        self,
        order_id: uuid.UUID,
        data: ReturnCreate,
        received_by: Optional[uuid.UUID] = None
    ) -> OrderReturn:
        """
        Receive returned units for an order.

        Partial and repeated receipts are allowed while the cumulative
        returned quantity per variant stays within the ordered quantity.

        Raises:
            NotFoundError: unknown order
            InvalidStateTransitionError: order is not in a returnable status
            ValidationError: quantity/variant problems (all reported at once)
        """
        order = await self._get_order_for_update(order_id)
        if not can_receive_return(order.status):
            raise InvalidStateTransitionError(
                order.status,
                OrderStatus.RETURNED.value,
                f"Order {order.order_number} in '{order.status}' status cannot receive returns",
            )

        already_returned = await self._returned_quantities(order_id)
        self._validate_items(order, data.items, already_returned)

        current_status = order.status
        if current_status != OrderStatus.RETURNED.value:
            validate_transition(current_status, OrderStatus.RETURNED.value)

        last_manifest_id, last_rider_id = await self._last_run(order_id)
        manifest_id = last_manifest_id or order.current_manifest_id
        rider_id = order.rider_id or last_rider_id

        now = datetime.now(timezone.utc)
        try:
            order_return = OrderReturn(
                return_number=await self._generate_return_number(),
                order_id=order.id,
                rider_id=rider_id,
                manifest_id=manifest_id,
                notes=data.notes,
                received_by=received_by,
                received_at=now,
            )

            for item in data.items:
                condition = get_enum_value(item.condition)
                if condition == ReturnCondition.GOOD.value:
                    movement = await self.ledger.apply_movement(
                        variant_id=item.variant_id,
                        quantity_delta=item.quantity,
                        movement_type=StockMovementType.INWARD,
                        reference_type="return",
                        reference_id=order.id,
                        reference_number=order.order_number,
                        created_by=received_by,
                        reason="Customer return",
                    )
                else:
                    movement = await self.ledger.log_damage(
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        reference_type="return",
                        reference_id=order.id,
                        reference_number=order.order_number,
                        created_by=received_by,
                        reason="Returned damaged",
                    )
                order_return.items.append(
                    OrderReturnItem(
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        condition=condition,
                        movement_id=movement.movement.id,
                    )
                )

            self.db.add(order_return)

            moved = await self.db.execute(
                update(Order)
                .where(and_(Order.id == order.id, Order.status == current_status))
                .values(
                    status=OrderStatus.RETURNED.value,
                    rider_id=None,
                    current_manifest_id=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise ConflictError(f"Order {order.order_number} was modified concurrently")

            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Return intake for order {order_id} failed: {e}")
            raise DatabaseError("Failed to process return", original=e)

        good = sum(i.quantity for i in data.items if get_enum_value(i.condition) == ReturnCondition.GOOD.value)
        damaged = sum(i.quantity for i in data.items) - good
        logger.info(
            f"Return {order_return.return_number} for order {order.order_number}: "
            f"{good} good unit(s) restocked, {damaged} damaged unit(s) logged"
        )

        return await self.get_return(order_return.id)

    async def process_returns_bulk(
        self,
        data: BulkReturnRequest,
        received_by: Optional[uuid.UUID] = None
    ) -> BulkResult:
        """
        Rider hands back whole orders in good condition.

        Each order is received independently; a failing order is reported and
        the rest continue.
        """
        results: List[UnitResult] = []

        for order_id in data.order_ids:
            try:
                order = await self.db.get(Order, order_id, populate_existing=True)
                if not order:
                    raise NotFoundError("Order")
                if order.rider_id != data.rider_id:
                    raise ValidationError(
                        f"Order {order.order_number} is not held by this rider",
                        [{"field": "rider_id", "message": "Order is assigned to a different rider"}],
                    )

                already_returned = await self._returned_quantities(order_id)
                remaining: Dict[uuid.UUID, int] = defaultdict(int)
                for line in order.items:
                    remaining[line.variant_id] += line.quantity
                items = [
                    ReturnItemCreate(variant_id=variant_id, quantity=qty - already_returned.get(variant_id, 0))
                    for variant_id, qty in remaining.items()
                    if qty - already_returned.get(variant_id, 0) > 0
                ]
                if not items:
                    raise ValidationError(
                        f"Order {order.order_number} has nothing left to return",
                        [{"field": "order_ids", "message": "All units already returned"}],
                    )

                order_return = await self.process_return(
                    order_id, ReturnCreate(items=items, notes="Bulk rider return"), received_by
                )
                results.append(
                    UnitResult(
                        id=order_id,
                        success=True,
                        data={"return_number": order_return.return_number},
                    )
                )
            except AppError as e:
                logger.warning(f"Bulk return: order {order_id} failed: {e.code} {e.message}")
                results.append(UnitResult(id=order_id, success=False, error_code=e.code, error=e.message))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk return for rider {data.rider_id}: {succeeded}/{len(results)} order(s) received")

        return BulkResult(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )

    # ==================== QUERIES ====================

    async def get_return(self, return_id: uuid.UUID) -> OrderReturn:
        result = await self.db.execute(
            select(OrderReturn)
            .where(OrderReturn.id == return_id)
            .execution_options(populate_existing=True)
        )
        order_return = result.scalar_one_or_none()
        if not order_return:
            raise NotFoundError("Return")
        return order_return

    async def list_returns(
        self,
        rider_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[OrderReturn], int]:
        """Get paginated return receipts, newest first."""
        filters = []
        if rider_id:
            filters.append(OrderReturn.rider_id == rider_id)
        if date_from:
            filters.append(OrderReturn.received_at >= date_from)
        if date_to:
            filters.append(OrderReturn.received_at <= date_to)

        stmt = select(OrderReturn).order_by(OrderReturn.received_at.desc())
        count_stmt = select(func.count(OrderReturn.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = await self.db.scalar(count_stmt) or 0
        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_returns_stats(self) -> Dict:
        today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        pending = await self.db.scalar(
            select(func.count(Order.id)).where(
                and_(
                    Order.status == OrderStatus.REJECTED.value,
                    Order.rider_id.is_not(None),
                )
            )
        )
        awaiting_goods = await self.db.scalar(
            select(func.count(Order.id)).where(Order.status == OrderStatus.RETURN_INITIATED.value)
        )
        received_today = await self.db.scalar(
            select(func.count(OrderReturn.id)).where(OrderReturn.received_at >= today_start)
        )

        units = await self.db.execute(
            select(OrderReturnItem.condition, func.coalesce(func.sum(OrderReturnItem.quantity), 0))
            .join(OrderReturn, OrderReturn.id == OrderReturnItem.return_id)
            .where(OrderReturn.received_at >= today_start)
            .group_by(OrderReturnItem.condition)
        )
        by_condition = {condition: int(qty) for condition, qty in units.all()}

        return {
            "pending_with_riders": pending or 0,
            "awaiting_customer_goods": awaiting_goods or 0,
            "received_today": received_today or 0,
            "good_units_today": by_condition.get(ReturnCondition.GOOD.value, 0),
            "damaged_units_today": by_condition.get(ReturnCondition.DAMAGED.value, 0),
        }

    async def get_order_returns(self, order_id: uuid.UUID) -> List[OrderReturn]:
        if not await self.db.get(Order, order_id):
            raise NotFoundError("Order")
        result = await self.db.execute(
            select(OrderReturn)
            .where(OrderReturn.order_id == order_id)
            .order_by(OrderReturn.received_at)
        )
        return list(result.scalars().all())

    async def get_pending_returns(self, rider_id: Optional[uuid.UUID] = None) -> List[Dict]:
        """Rejected orders still held by a rider, grouped by rider."""
        stmt = (
            select(Order, Rider)
            .join(Rider, Rider.id == Order.rider_id)
            .where(Order.status == OrderStatus.REJECTED.value)
            .order_by(Rider.full_name, Order.order_number)
        )
        if rider_id:
            stmt = stmt.where(Order.rider_id == rider_id)

        result = await self.db.execute(stmt)

        grouped: Dict[uuid.UUID, Dict] = {}
        for order, rider in result.all():
            entry = grouped.setdefault(
                rider.id,
                {"rider_id": rider.id, "rider_name": rider.full_name, "order_count": 0, "orders": []},
            )
            entry["orders"].append({
                "order_id": order.id,
                "order_number": order.order_number,
                "total_amount": order.total_amount,
                "manifest_id": order.current_manifest_id,
                "last_delivery_outcome": order.last_delivery_outcome,
            })
            entry["order_count"] += 1

        return list(grouped.values())
