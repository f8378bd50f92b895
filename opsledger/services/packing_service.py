"""
Pack/Deduct Gate.

Packing turns a pack-eligible order into PACKED and deducts ledger stock for
every line. Each order is all-or-nothing: the status claim and every line's
OUTWARD movement commit together, or nothing does. The bulk variant packs
orders one at a time and reports a per-order tally; one bad order never
blocks the rest and failures are not retried.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsledger.core.exceptions import (
    AppError,
    ConflictError,
    DatabaseError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from opsledger.models.inventory import StockMovementType
from opsledger.models.order import Order, OrderStatus
from opsledger.schemas.base import BulkResult, UnitResult
from opsledger.services.order_state_machine import can_pack, validate_transition
from opsledger.services.stock_ledger_service import StockLedgerService


logger = logging.getLogger(__name__)


@dataclass
class PackedLine:
    variant_id: uuid.UUID
    quantity: int
    stock_before: int
    stock_after: int


@dataclass
class PackResult:
    order_id: uuid.UUID
    order_number: str
    order_status: str
    lines: List[PackedLine] = field(default_factory=list)


class PackingService:
    """Deducts stock for orders as they are packed."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

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

    async def pack_order(
        self,
        order_id: uuid.UUID,
        packed_by: Optional[uuid.UUID] = None,
    ) -> PackResult:
        """
        Pack one order.

        Raises:
            NotFoundError: unknown order
            InvalidStateTransitionError: order is not pack-eligible (including
                already PACKED, so stock is never deducted twice)
            ConflictError: another request changed the order's status first
            InsufficientStockError: any line would drive stock negative
        """
        order = await self._get_order_for_update(order_id)
        current_status = order.status
        packed = OrderStatus.PACKED.value

        if not can_pack(current_status):
            raise InvalidStateTransitionError(current_status, packed)
        validate_transition(current_status, packed)

        if not order.items:
            raise ValidationError(
                f"Order {order.order_number} has no items to pack",
                [{"field": "items", "message": "Order has no items"}],
            )

        now = datetime.now(timezone.utc)
        lines: List[PackedLine] = []
        try:
            # Claim the order: only one packer can move it out of current_status
            claim = await self.db.execute(
                update(Order)
                .where(and_(Order.id == order_id, Order.status == current_status))
                .values(status=packed, packed_at=now, packed_by=packed_by, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                raise ConflictError(f"Order {order.order_number} was modified concurrently")

            for item in order.items:
                movement = await self.ledger.apply_movement(
                    variant_id=item.variant_id,
                    quantity_delta=-item.quantity,
                    movement_type=StockMovementType.OUTWARD,
                    reference_type="order",
                    reference_id=order.id,
                    reference_number=order.order_number,
                    created_by=packed_by,
                )
                lines.append(
                    PackedLine(
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        stock_before=movement.stock_before,
                        stock_after=movement.stock_after,
                    )
                )

            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Packing order {order_id} failed: {e}")
            raise DatabaseError("Failed to pack order", original=e)

        order = await self.db.get(Order, order_id, populate_existing=True)
        logger.info(f"Order {order.order_number} packed: {len(lines)} line(s) deducted")

        return PackResult(
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            lines=lines,
        )

    async def pack_orders(
        self,
        order_ids: List[uuid.UUID],
        packed_by: Optional[uuid.UUID] = None,
    ) -> BulkResult:
        """Pack each order independently and tally the outcomes."""
        results: List[UnitResult] = []

        for order_id in order_ids:
            try:
                packed = await self.pack_order(order_id, packed_by)
                results.append(
                    UnitResult(
                        id=order_id,
                        success=True,
                        data={"order_number": packed.order_number, "order_status": packed.order_status},
                    )
                )
            except AppError as e:
                logger.warning(f"Bulk pack: order {order_id} failed: {e.code} {e.message}")
                results.append(UnitResult(id=order_id, success=False, error_code=e.code, error=e.message))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk pack finished: {succeeded}/{len(results)} order(s) packed")

        return BulkResult(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )
