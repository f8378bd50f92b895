"""Tests for the pack/deduct gate."""
import uuid

import pytest
from sqlalchemy import func, select

from opsledger.core.exceptions import InsufficientStockError, InvalidStateTransitionError, NotFoundError
from opsledger.models import OrderStatus, StockMovement, StockMovementType
from opsledger.services.packing_service import PackingService


async def _outward_count(db, order_id):
    return await db.scalar(
        select(func.count(StockMovement.id)).where(
            StockMovement.reference_id == order_id,
            StockMovement.movement_type == StockMovementType.OUTWARD.value,
        )
    )


class TestPackOrder:

    async def test_pack_deducts_every_line(self, db, make_variant, make_order, user_id):
        shirt = await make_variant(stock=10)
        cap = await make_variant(stock=3)
        order = await make_order([(shirt, 2), (cap, 3)])

        result = await PackingService(db).pack_order(order.id, packed_by=user_id)

        assert result.order_status == OrderStatus.PACKED.value
        assert {(line.variant_id, line.stock_before, line.stock_after) for line in result.lines} == {
            (shirt.id, 10, 8),
            (cap.id, 3, 0),
        }
        await db.refresh(order)
        assert order.status == OrderStatus.PACKED.value
        assert order.packed_by == user_id
        assert order.packed_at is not None
        assert await _outward_count(db, order.id) == 2

    async def test_ready_orders_are_packable(self, db, make_variant, make_order):
        variant = await make_variant(stock=1)
        order = await make_order([(variant, 1)], status=OrderStatus.READY.value)

        result = await PackingService(db).pack_order(order.id)

        assert result.order_status == OrderStatus.PACKED.value

    async def test_second_pack_never_deducts_twice(self, db, make_variant, make_order):
        variant = await make_variant(stock=10)
        order = await make_order([(variant, 4)])
        service = PackingService(db)
        await service.pack_order(order.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.pack_order(order.id)

        await db.refresh(variant)
        assert variant.current_stock == 6
        assert await _outward_count(db, order.id) == 1

    async def test_insufficient_stock_rolls_back_whole_order(self, db, make_variant, make_order):
        plenty = await make_variant(stock=10)
        scarce = await make_variant(stock=1)
        order = await make_order([(plenty, 5), (scarce, 2)])

        with pytest.raises(InsufficientStockError):
            await PackingService(db).pack_order(order.id)

        await db.refresh(order)
        await db.refresh(plenty)
        await db.refresh(scarce)
        assert order.status == OrderStatus.CONVERTED.value
        assert plenty.current_stock == 10
        assert scarce.current_stock == 1
        assert await _outward_count(db, order.id) == 0

    @pytest.mark.parametrize("status", [
        OrderStatus.INTAKE.value,
        OrderStatus.DELIVERED.value,
        OrderStatus.CANCELLED.value,
    ])
    async def test_ineligible_status(self, db, make_variant, make_order, status):
        variant = await make_variant(stock=5)
        order = await make_order([(variant, 1)], status=status)

        with pytest.raises(InvalidStateTransitionError):
            await PackingService(db).pack_order(order.id)

    async def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await PackingService(db).pack_order(uuid.uuid4())


class TestBulkPack:

    async def test_tally_reports_each_order(self, db, make_variant, make_order):
        variant = await make_variant(stock=5)
        first = await make_order([(variant, 3)])
        starved = await make_order([(variant, 3)])
        third = await make_order([(variant, 2)])
        first_id, starved_id, third_id, missing = first.id, starved.id, third.id, uuid.uuid4()

        result = await PackingService(db).pack_orders([first_id, starved_id, third_id, missing])

        assert (result.total, result.succeeded, result.failed) == (4, 2, 2)
        by_id = {r.id: r for r in result.results}
        assert by_id[first_id].success
        assert by_id[starved_id].error_code == "INSUFFICIENT_STOCK"
        assert by_id[third_id].success
        assert by_id[missing].error_code == "NOT_FOUND"
        await db.refresh(variant)
        assert variant.current_stock == 0
