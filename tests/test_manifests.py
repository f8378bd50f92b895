"""Tests for manifests: creation, dispatch, delivery outcomes and run settlement."""
import uuid
from decimal import Decimal

import pytest

from opsledger.core.exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from opsledger.models import ManifestStatus, OrderStatus, PaymentMethod
from opsledger.models.order import PaymentStatus
from opsledger.models.rider import BalanceChangeType, RiderStatus, SettlementStatus
from opsledger.schemas.manifest import (
    DeliveryOutcomeCreate,
    ManifestCancelRequest,
    ManifestCreate,
    ManifestSettleRequest,
    RescheduleRequest,
)
from opsledger.services.manifest_service import ManifestService
from opsledger.services.settlement_service import SettlementService


async def _run(db, rider, orders, dispatch=True):
    service = ManifestService(db)
    manifest = await service.create_manifest(
        ManifestCreate(rider_id=rider.id, order_ids=[o.id for o in orders], zone_name="North")
    )
    if dispatch:
        manifest = await service.dispatch_manifest(manifest.id)
    return manifest


def _outcome(order, outcome, cod_collected=None):
    return DeliveryOutcomeCreate(order_id=order.id, outcome=outcome, cod_collected=cod_collected)


@pytest.fixture
async def stocked(make_variant):
    return await make_variant(stock=50)


class TestCreateManifest:

    async def test_claims_packed_orders(self, db, stocked, make_rider, make_packed_order, user_id):
        rider = await make_rider()
        cod = await make_packed_order([(stocked, 1)], total_amount=Decimal("500"))
        prepaid = await make_packed_order(
            [(stocked, 1)], total_amount=Decimal("800"), payment_method=PaymentMethod.PREPAID.value
        )

        manifest = await ManifestService(db).create_manifest(
            ManifestCreate(rider_id=rider.id, order_ids=[cod.id, prepaid.id]), created_by=user_id
        )

        assert manifest.manifest_number.startswith("RUN-")
        assert manifest.status == ManifestStatus.OPEN.value
        assert manifest.total_orders == 2
        assert manifest.total_cod_expected == Decimal("500")
        assert [item.sequence_number for item in manifest.items] == [1, 2]
        assert [item.cod_amount for item in manifest.items] == [Decimal("500"), Decimal("0")]

        await db.refresh(cod)
        assert cod.status == OrderStatus.ASSIGNED.value
        assert cod.rider_id == rider.id
        assert cod.current_manifest_id == manifest.id
        assert cod.delivery_attempt_count == 1

    async def test_rejects_unpacked_and_unknown_orders(self, db, stocked, make_rider, make_order):
        rider = await make_rider()
        unpacked = await make_order([(stocked, 1)])

        with pytest.raises(ValidationError) as exc_info:
            await ManifestService(db).create_manifest(
                ManifestCreate(rider_id=rider.id, order_ids=[unpacked.id, uuid.uuid4()])
            )

        assert set(exc_info.value.fields) == {"order_ids[0]", "order_ids[1]"}

    async def test_order_cannot_join_two_manifests(self, db, stocked, make_rider, make_packed_order):
        first_rider = await make_rider()
        second_rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        await _run(db, first_rider, [order], dispatch=False)

        with pytest.raises(ValidationError):
            await _run(db, second_rider, [order], dispatch=False)

    async def test_inactive_or_unknown_rider(self, db, stocked, make_rider, make_packed_order):
        order = await make_packed_order([(stocked, 1)])
        inactive = await make_rider(is_active=False)
        service = ManifestService(db)

        with pytest.raises(ValidationError):
            await service.create_manifest(ManifestCreate(rider_id=inactive.id, order_ids=[order.id]))
        with pytest.raises(NotFoundError):
            await service.create_manifest(ManifestCreate(rider_id=uuid.uuid4(), order_ids=[order.id]))


class TestDispatch:

    async def test_dispatch_moves_orders_and_rider(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 2)])

        manifest = await _run(db, rider, [order])

        assert manifest.status == ManifestStatus.OUT_FOR_DELIVERY.value
        assert manifest.dispatched_at is not None
        await db.refresh(order)
        await db.refresh(rider)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY.value
        assert rider.status == RiderStatus.ON_DELIVERY.value

    async def test_dispatch_twice_rejected(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])

        with pytest.raises(InvalidStateTransitionError):
            await ManifestService(db).dispatch_manifest(manifest.id)


class TestDeliveryOutcomes:

    async def test_delivered_cod_credits_rider(self, db, stocked, make_rider, make_packed_order, user_id):
        rider = await make_rider(balance=Decimal("1500"))
        order = await make_packed_order([(stocked, 1)], total_amount=Decimal("500"))
        manifest = await _run(db, rider, [order])

        manifest = await ManifestService(db).record_delivery_outcome(
            manifest.id, _outcome(order, "delivered"), recorded_by=user_id
        )

        assert manifest.delivered_count == 1
        assert manifest.total_cod_collected == Decimal("500")
        assert manifest.items[0].cod_collected == Decimal("500")
        assert manifest.pending_count == 0

        await db.refresh(order)
        await db.refresh(rider)
        assert order.status == OrderStatus.DELIVERED.value
        assert order.payment_status == PaymentStatus.PAID.value
        assert order.delivered_at is not None
        assert rider.current_cash_balance == Decimal("2000")
        assert (rider.total_deliveries, rider.successful_deliveries) == (1, 1)

        logs, total = await SettlementService(db).get_rider_balance_log(rider.id)
        assert total == 1
        assert logs[0].change_type == BalanceChangeType.COD_COLLECTION.value
        assert (logs[0].balance_before, logs[0].balance_after) == (Decimal("1500"), Decimal("2000"))

    async def test_outcome_recorded_once(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])
        service = ManifestService(db)
        await service.record_delivery_outcome(manifest.id, _outcome(order, "DELIVERED"))

        with pytest.raises(ConflictError):
            await service.record_delivery_outcome(manifest.id, _outcome(order, "DELIVERED"))

        await db.refresh(rider)
        assert rider.current_cash_balance == Decimal("500.00")

    @pytest.mark.parametrize("outcome,order_status,counter", [
        ("CUSTOMER_REFUSED", OrderStatus.REJECTED.value, "returned_count"),
        ("DAMAGED", OrderStatus.REJECTED.value, "returned_count"),
        ("CUSTOMER_UNAVAILABLE", OrderStatus.FOLLOW_UP.value, "rescheduled_count"),
        ("WRONG_ADDRESS", OrderStatus.FOLLOW_UP.value, "rescheduled_count"),
    ])
    async def test_failed_delivery_outcomes(
        self, db, stocked, make_rider, make_packed_order, outcome, order_status, counter
    ):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])

        manifest = await ManifestService(db).record_delivery_outcome(manifest.id, _outcome(order, outcome))

        assert getattr(manifest, counter) == 1
        assert manifest.total_cod_collected == Decimal("0")
        await db.refresh(order)
        await db.refresh(rider)
        assert order.status == order_status
        assert order.payment_status == PaymentStatus.PENDING.value
        assert rider.current_cash_balance == Decimal("0")

    async def test_cash_on_undelivered_order_rejected(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])

        with pytest.raises(ValidationError):
            await ManifestService(db).record_delivery_outcome(
                manifest.id, _outcome(order, "CUSTOMER_REFUSED", Decimal("100"))
            )

    async def test_outcome_before_dispatch_rejected(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order], dispatch=False)

        with pytest.raises(InvalidStateTransitionError):
            await ManifestService(db).record_delivery_outcome(manifest.id, _outcome(order, "DELIVERED"))

    def test_pending_is_not_a_recordable_outcome(self):
        with pytest.raises(ValueError):
            DeliveryOutcomeCreate(order_id=uuid.uuid4(), outcome="SOMETHING_ELSE")


class TestReschedule:

    async def test_order_returns_to_packed(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        keep = await make_packed_order([(stocked, 1)], total_amount=Decimal("300"))
        move = await make_packed_order([(stocked, 1)], total_amount=Decimal("200"))
        manifest = await _run(db, rider, [keep, move])

        manifest = await ManifestService(db).reschedule_order(manifest.id, RescheduleRequest(order_id=move.id))

        assert manifest.total_orders == 1
        assert manifest.rescheduled_count == 1
        assert manifest.total_cod_expected == Decimal("300")
        assert [item.order_id for item in manifest.items] == [keep.id]

        await db.refresh(move)
        assert move.status == OrderStatus.PACKED.value
        assert move.current_manifest_id is None
        assert move.rider_id is None
        assert move.last_delivery_outcome == "RESCHEDULED"

        await db.refresh(stocked)
        # Stock was deducted at pack time and stays deducted
        assert stocked.current_stock == 48

    async def test_attempted_order_cannot_be_rescheduled(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])
        service = ManifestService(db)
        await service.record_delivery_outcome(manifest.id, _outcome(order, "DELIVERED"))

        with pytest.raises(InvalidStateTransitionError):
            await service.reschedule_order(manifest.id, RescheduleRequest(order_id=order.id))


class TestSettleManifest:

    async def test_settle_with_variance_releases_run(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        delivered = await make_packed_order([(stocked, 1)], total_amount=Decimal("500"))
        refused = await make_packed_order([(stocked, 1)], total_amount=Decimal("250"))
        absent = await make_packed_order([(stocked, 1)], total_amount=Decimal("100"))
        manifest = await _run(db, rider, [delivered, refused, absent])
        service = ManifestService(db)
        await service.record_delivery_outcome(manifest.id, _outcome(delivered, "DELIVERED"))
        await service.record_delivery_outcome(manifest.id, _outcome(refused, "CUSTOMER_REFUSED"))
        await service.record_delivery_outcome(manifest.id, _outcome(absent, "CUSTOMER_UNAVAILABLE"))

        manifest = await service.settle_manifest(manifest.id, ManifestSettleRequest(cash_received=Decimal("450")))

        assert manifest.status == ManifestStatus.SETTLED.value
        assert manifest.cash_received == Decimal("450")
        assert manifest.settlement_variance == Decimal("-50")

        for order in (delivered, refused, absent):
            await db.refresh(order)
        await db.refresh(rider)
        assert rider.current_cash_balance == Decimal("50")
        assert rider.status == RiderStatus.AVAILABLE.value
        assert delivered.current_manifest_id is None
        assert absent.status == OrderStatus.PACKED.value
        assert absent.rider_id is None
        # Refused goods are still with the rider until the return is received
        assert refused.status == OrderStatus.REJECTED.value
        assert refused.rider_id == rider.id

        settlements, _ = await SettlementService(db).get_rider_settlements(rider.id)
        assert settlements[0].manifest_id == manifest.id
        assert settlements[0].status == SettlementStatus.SETTLED.value

    async def test_partial_settlement_then_final(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        first = await make_packed_order([(stocked, 1)], total_amount=Decimal("400"))
        second = await make_packed_order([(stocked, 1)], total_amount=Decimal("600"))
        manifest = await _run(db, rider, [first, second])
        service = ManifestService(db)
        await service.record_delivery_outcome(manifest.id, _outcome(first, "DELIVERED"))

        manifest = await service.settle_manifest(manifest.id, ManifestSettleRequest(cash_received=Decimal("400")))
        assert manifest.status == ManifestStatus.PARTIALLY_SETTLED.value
        assert manifest.settlement_variance == Decimal("0")

        await service.record_delivery_outcome(manifest.id, _outcome(second, "DELIVERED"))
        manifest = await service.settle_manifest(manifest.id, ManifestSettleRequest(cash_received=Decimal("600")))

        assert manifest.status == ManifestStatus.SETTLED.value
        assert manifest.cash_received == Decimal("1000")
        assert manifest.settlement_variance == Decimal("0")
        await db.refresh(rider)
        assert rider.current_cash_balance == Decimal("0")

    async def test_cash_above_balance_rejected(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)], total_amount=Decimal("500"))
        manifest = await _run(db, rider, [order])
        service = ManifestService(db)
        await service.record_delivery_outcome(manifest.id, _outcome(order, "DELIVERED"))
        manifest_id = manifest.id

        with pytest.raises(ValidationError):
            await service.settle_manifest(manifest_id, ManifestSettleRequest(cash_received=Decimal("501")))

        manifest = await service.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.OUT_FOR_DELIVERY.value

    async def test_open_manifest_cannot_be_settled(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order], dispatch=False)

        with pytest.raises(InvalidStateTransitionError):
            await ManifestService(db).settle_manifest(manifest.id, ManifestSettleRequest(cash_received=Decimal("0")))


class TestCancelManifest:

    async def test_cancel_open_manifest(self, db, stocked, make_rider, make_packed_order, user_id):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order], dispatch=False)

        manifest = await ManifestService(db).cancel_manifest(
            manifest.id, ManifestCancelRequest(reason="Vehicle breakdown"), cancelled_by=user_id
        )

        assert manifest.status == ManifestStatus.CANCELLED.value
        assert manifest.cancellation_reason == "Vehicle breakdown"
        await db.refresh(order)
        assert order.status == OrderStatus.PACKED.value
        assert order.current_manifest_id is None

        # The order is free for another run
        again = await _run(db, rider, [order], dispatch=False)
        assert again.total_orders == 1

    async def test_dispatched_manifest_cannot_be_cancelled(self, db, stocked, make_rider, make_packed_order):
        rider = await make_rider()
        order = await make_packed_order([(stocked, 1)])
        manifest = await _run(db, rider, [order])

        with pytest.raises(InvalidStateTransitionError):
            await ManifestService(db).cancel_manifest(manifest.id, ManifestCancelRequest(reason="Too late"))


class TestListManifests:

    async def test_filter_by_rider_and_status(self, db, stocked, make_rider, make_packed_order):
        first_rider = await make_rider()
        second_rider = await make_rider()
        await _run(db, first_rider, [await make_packed_order([(stocked, 1)])])
        await _run(db, second_rider, [await make_packed_order([(stocked, 1)])], dispatch=False)
        service = ManifestService(db)

        items, total = await service.list_manifests(rider_id=first_rider.id)
        assert total == 1
        assert items[0].rider_id == first_rider.id

        items, total = await service.list_manifests(status=ManifestStatus.OPEN)
        assert total == 1
        assert items[0].rider_id == second_rider.id


class TestSortingFloor:

    async def test_dispatch_queue_lists_unassigned_packed_orders(
        self, db, stocked, make_rider, make_order, make_packed_order
    ):
        waiting = await make_packed_order([(stocked, 1)])
        mumbai = await make_packed_order([(stocked, 2)])
        mumbai.customer_city = "Navi Mumbai"
        await db.commit()
        on_run = await make_packed_order([(stocked, 1)])
        await _run(db, await make_rider(), [on_run], dispatch=False)
        await make_order([(stocked, 1)])
        service = ManifestService(db)

        items, total = await service.get_orders_for_dispatch()
        assert total == 2
        assert [o.id for o in items] == [waiting.id, mumbai.id]
        assert items[1].item_count == 1

        items, total = await service.get_orders_for_dispatch(city="mumbai")
        assert total == 1
        assert [o.id for o in items] == [mumbai.id]

    async def test_zone_summary_totals_cod_per_city(self, db, stocked, make_packed_order):
        await make_packed_order([(stocked, 1)], total_amount=Decimal("500"))
        await make_packed_order([(stocked, 1)], total_amount=Decimal("300"))
        await make_packed_order(
            [(stocked, 1)], total_amount=Decimal("900"), payment_method=PaymentMethod.PREPAID.value
        )
        paid = await make_packed_order([(stocked, 1)], total_amount=Decimal("250"))
        paid.customer_city = "Nashik"
        paid.payment_status = PaymentStatus.PAID.value
        await db.commit()

        zones = {z["city"]: z for z in await ManifestService(db).get_zone_summary()}

        assert set(zones) == {"Pune", "Nashik"}
        assert zones["Pune"]["order_count"] == 3
        assert zones["Pune"]["total_cod"] == Decimal("800")
        assert zones["Nashik"]["order_count"] == 1
        assert zones["Nashik"]["total_cod"] == Decimal("0")
