"""Tests for return intake and damage logging."""
import uuid

import pytest
from sqlalchemy import select

from opsledger.core.exceptions import InvalidStateTransitionError, NotFoundError, ValidationError
from opsledger.models import OrderStatus, StockMovement, StockMovementType
from opsledger.schemas.manifest import DeliveryOutcomeCreate, ManifestCreate
from opsledger.schemas.returns import BulkReturnRequest, ReturnCreate, ReturnItemCreate
from opsledger.services.manifest_service import ManifestService
from opsledger.services.returns_service import ReturnsService


@pytest.fixture
def make_refused_order(db, make_packed_order):
    """Pack an order, send it out with a rider and have the customer refuse it."""
    async def _make(rider, lines):
        order = await make_packed_order(lines)
        service = ManifestService(db)
        manifest = await service.create_manifest(ManifestCreate(rider_id=rider.id, order_ids=[order.id]))
        await service.dispatch_manifest(manifest.id)
        await service.record_delivery_outcome(
            manifest.id, DeliveryOutcomeCreate(order_id=order.id, outcome="CUSTOMER_REFUSED")
        )
        await db.refresh(order)
        return order, manifest

    return _make


def _items(*lines):
    return ReturnCreate(
        items=[ReturnItemCreate(variant_id=v.id, quantity=q, condition=c) for v, q, c in lines]
    )


async def _movements(db, order_id, movement_type):
    result = await db.execute(
        select(StockMovement).where(
            StockMovement.reference_id == order_id,
            StockMovement.movement_type == movement_type.value,
        )
    )
    return list(result.scalars().all())


class TestProcessReturn:

    async def test_good_units_restocked(self, db, make_variant, make_rider, make_refused_order, user_id):
        variant = await make_variant(stock=10)
        rider = await make_rider()
        order, manifest = await make_refused_order(rider, [(variant, 3)])

        order_return = await ReturnsService(db).process_return(
            order.id, _items((variant, 3, "good")), received_by=user_id
        )

        assert order_return.return_number.startswith("RET-")
        assert order_return.rider_id == rider.id
        assert order_return.manifest_id == manifest.id
        assert order_return.received_by == user_id
        assert [(i.quantity, i.condition) for i in order_return.items] == [(3, "GOOD")]
        assert order_return.items[0].movement_id is not None

        await db.refresh(variant)
        await db.refresh(order)
        assert variant.current_stock == 10
        assert order.status == OrderStatus.RETURNED.value
        assert order.rider_id is None
        assert order.current_manifest_id is None

        inward = await _movements(db, order.id, StockMovementType.INWARD)
        assert [(m.stock_before, m.stock_after, m.reference_type) for m in inward] == [(7, 10, "return")]

    async def test_damaged_units_never_restocked(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=10)
        rider = await make_rider()
        order, _ = await make_refused_order(rider, [(variant, 2)])

        await ReturnsService(db).process_return(order.id, _items((variant, 2, "DAMAGED")))

        await db.refresh(variant)
        assert variant.current_stock == 8
        damage = await _movements(db, order.id, StockMovementType.DAMAGE)
        assert [(m.quantity, m.stock_delta, m.stock_before, m.stock_after) for m in damage] == [(2, 0, 8, 8)]

    async def test_repeat_receipts_up_to_ordered_quantity(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=100)
        rider = await make_rider()
        order, _ = await make_refused_order(rider, [(variant, 15)])
        service = ReturnsService(db)

        await service.process_return(order.id, _items((variant, 10, "GOOD")))
        await service.process_return(order.id, _items((variant, 5, "DAMAGED")))

        with pytest.raises(ValidationError):
            await service.process_return(order.id, _items((variant, 1, "GOOD")))

        await db.refresh(variant)
        assert variant.current_stock == 95
        assert len(await service.get_order_returns(order.id)) == 2

    async def test_over_return_rejected_before_writing(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=10)
        stranger = await make_variant(stock=10)
        rider = await make_rider()
        order, _ = await make_refused_order(rider, [(variant, 2)])

        with pytest.raises(ValidationError) as exc_info:
            await ReturnsService(db).process_return(
                order.id, _items((variant, 3, "GOOD"), (stranger, 1, "GOOD"))
            )

        assert len(exc_info.value.details) == 2
        await db.refresh(order)
        assert order.status == OrderStatus.REJECTED.value
        assert await _movements(db, order.id, StockMovementType.INWARD) == []

    async def test_packed_order_not_returnable(self, db, make_variant, make_packed_order):
        variant = await make_variant(stock=5)
        order = await make_packed_order([(variant, 1)])

        with pytest.raises(InvalidStateTransitionError):
            await ReturnsService(db).process_return(order.id, _items((variant, 1, "GOOD")))

    async def test_return_initiated_order(self, db, make_variant, make_order):
        variant = await make_variant(stock=5)
        order = await make_order([(variant, 2)], status=OrderStatus.RETURN_INITIATED.value)

        order_return = await ReturnsService(db).process_return(order.id, _items((variant, 2, "GOOD")))

        assert order_return.rider_id is None
        assert order_return.manifest_id is None
        await db.refresh(variant)
        assert variant.current_stock == 7

    async def test_unknown_order(self, db, make_variant):
        variant = await make_variant()

        with pytest.raises(NotFoundError):
            await ReturnsService(db).process_return(uuid.uuid4(), _items((variant, 1, "GOOD")))


class TestPendingAndBulk:

    async def test_pending_returns_grouped_by_rider(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=20)
        first = await make_rider()
        second = await make_rider()
        a, _ = await make_refused_order(first, [(variant, 1)])
        b, _ = await make_refused_order(first, [(variant, 1)])
        c, _ = await make_refused_order(second, [(variant, 1)])
        service = ReturnsService(db)

        grouped = {g["rider_id"]: g for g in await service.get_pending_returns()}
        assert grouped[first.id]["order_count"] == 2
        assert {o["order_id"] for o in grouped[first.id]["orders"]} == {a.id, b.id}
        assert [o["order_id"] for o in grouped[second.id]["orders"]] == [c.id]

        only_second = await service.get_pending_returns(rider_id=second.id)
        assert [g["rider_id"] for g in only_second] == [second.id]

    async def test_bulk_return_checks_rider(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=20)
        rider = await make_rider()
        other = await make_rider()
        mine, _ = await make_refused_order(rider, [(variant, 2)])
        theirs, _ = await make_refused_order(other, [(variant, 3)])
        mine_id, theirs_id, rider_id = mine.id, theirs.id, rider.id

        result = await ReturnsService(db).process_returns_bulk(
            BulkReturnRequest(rider_id=rider_id, order_ids=[mine_id, theirs_id])
        )

        assert (result.succeeded, result.failed) == (1, 1)
        by_id = {r.id: r for r in result.results}
        assert by_id[mine_id].data["return_number"].startswith("RET-")
        assert by_id[theirs_id].error_code == "VALIDATION_ERROR"

        await db.refresh(variant)
        assert variant.current_stock == 17
        assert await ReturnsService(db).get_pending_returns(rider_id=rider_id) == []


@pytest.fixture
def make_delivered_order(db, make_packed_order):
    async def _make(rider, lines):
        order = await make_packed_order(lines)
        service = ManifestService(db)
        manifest = await service.create_manifest(ManifestCreate(rider_id=rider.id, order_ids=[order.id]))
        await service.dispatch_manifest(manifest.id)
        await service.record_delivery_outcome(
            manifest.id, DeliveryOutcomeCreate(order_id=order.id, outcome="DELIVERED")
        )
        await db.refresh(order)
        return order

    return _make


class TestCustomerReturn:

    async def test_delivered_order_can_be_returned(
        self, db, make_variant, make_rider, make_delivered_order, user_id
    ):
        variant = await make_variant(stock=10)
        rider = await make_rider()
        order = await make_delivered_order(rider, [(variant, 2)])
        assert order.status == OrderStatus.DELIVERED.value
        service = ReturnsService(db)

        initiated = await service.initiate_return(order.id, performed_by=user_id, reason="Wrong size")
        assert initiated.status == OrderStatus.RETURN_INITIATED.value

        await db.refresh(variant)
        assert variant.current_stock == 8

        order_return = await service.process_return(order.id, _items((variant, 1, "GOOD")))
        assert order_return.rider_id == rider.id

        await db.refresh(variant)
        await db.refresh(order)
        assert variant.current_stock == 9
        assert order.status == OrderStatus.RETURNED.value

    async def test_only_delivered_orders_can_start_a_return(self, db, make_variant, make_packed_order):
        variant = await make_variant(stock=5)
        order = await make_packed_order([(variant, 1)])

        with pytest.raises(InvalidStateTransitionError):
            await ReturnsService(db).initiate_return(order.id)

    async def test_return_cannot_be_initiated_twice(self, db, make_variant, make_rider, make_delivered_order):
        variant = await make_variant(stock=5)
        order = await make_delivered_order(await make_rider(), [(variant, 1)])
        order_id = order.id
        service = ReturnsService(db)
        await service.initiate_return(order_id)

        with pytest.raises(InvalidStateTransitionError):
            await service.initiate_return(order_id)

    async def test_initiate_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await ReturnsService(db).initiate_return(uuid.uuid4())


class TestReturnQueries:

    async def test_list_filters_by_rider(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=20)
        first = await make_rider()
        second = await make_rider()
        a, _ = await make_refused_order(first, [(variant, 1)])
        b, _ = await make_refused_order(second, [(variant, 1)])
        service = ReturnsService(db)
        await service.process_return(a.id, _items((variant, 1, "GOOD")))
        await service.process_return(b.id, _items((variant, 1, "DAMAGED")))

        everything, total = await service.list_returns()
        assert total == 2
        assert {r.order_id for r in everything} == {a.id, b.id}

        mine, mine_total = await service.list_returns(rider_id=first.id)
        assert mine_total == 1
        assert [r.order_id for r in mine] == [a.id]

        page, paged_total = await service.list_returns(skip=1, limit=1)
        assert paged_total == 2
        assert len(page) == 1

    async def test_order_returns_and_lookup(self, db, make_variant, make_rider, make_refused_order):
        variant = await make_variant(stock=20)
        order, _ = await make_refused_order(await make_rider(), [(variant, 4)])
        service = ReturnsService(db)
        first = await service.process_return(order.id, _items((variant, 1, "GOOD")))
        second = await service.process_return(order.id, _items((variant, 2, "DAMAGED")))

        receipts = await service.get_order_returns(order.id)
        assert [r.id for r in receipts] == [first.id, second.id]

        fetched = await service.get_return(second.id)
        assert [(i.quantity, i.condition) for i in fetched.items] == [(2, "DAMAGED")]

    async def test_unknown_return_and_order(self, db):
        service = ReturnsService(db)
        with pytest.raises(NotFoundError):
            await service.get_return(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await service.get_order_returns(uuid.uuid4())

    async def test_stats(self, db, make_variant, make_rider, make_refused_order, make_delivered_order):
        variant = await make_variant(stock=30)
        rider = await make_rider()
        received, _ = await make_refused_order(rider, [(variant, 3)])
        await make_refused_order(rider, [(variant, 1)])
        delivered = await make_delivered_order(rider, [(variant, 1)])
        service = ReturnsService(db)
        await service.process_return(received.id, _items((variant, 2, "GOOD"), (variant, 1, "DAMAGED")))
        await service.initiate_return(delivered.id)

        stats = await service.get_returns_stats()

        assert stats == {
            "pending_with_riders": 1,
            "awaiting_customer_goods": 1,
            "received_today": 1,
            "good_units_today": 2,
            "damaged_units_today": 1,
        }
