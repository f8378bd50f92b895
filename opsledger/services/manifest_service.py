"""Service for rider dispatch manifests and delivery outcomes.

Manifest lifecycle:
    OPEN -> OUT_FOR_DELIVERY -> PARTIALLY_SETTLED -> SETTLED
    OPEN -> CANCELLED

Order claims, outcome recording and rider balance changes are all
compare-and-swap updates; losing a race raises ConflictError and rolls the
whole operation back.
"""
import logging
from typing import Dict, List, Optional, Tuple
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from sqlalchemy import select, update, func, and_, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
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
from opsledger.models.manifest import DispatchManifest, ManifestItem, ManifestStatus, DeliveryOutcome
from opsledger.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from opsledger.models.rider import Rider, RiderStatus, BalanceChangeType, SettlementStatus
from opsledger.schemas.manifest import (
    ManifestCreate,
    DeliveryOutcomeCreate,
    RescheduleRequest,
    ManifestSettleRequest,
    ManifestCancelRequest,
)
from opsledger.services.order_state_machine import (
    DELIVERED_OUTCOMES,
    RETURNED_OUTCOMES,
    RESCHEDULED_OUTCOMES,
    order_status_for_outcome,
    validate_transition,
)
from opsledger.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

# Manifest states in which delivery outcomes can still be recorded
OUTCOME_RECORDING_STATUSES = {
    ManifestStatus.OUT_FOR_DELIVERY.value,
    ManifestStatus.PARTIALLY_SETTLED.value,
}


class ManifestService:
    """Service for rider manifests: creation, dispatch, outcomes and cash settlement."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settlements = SettlementService(db)

    # ==================== MANIFEST NUMBER GENERATION ====================

    async def generate_manifest_number(self) -> str:
        """Generate readable run id: RUN-YYMMDD-NNN"""
        today = datetime.now(timezone.utc).strftime("%y%m%d")
        prefix = f"RUN-{today}-"

        stmt = select(func.count(DispatchManifest.id)).where(
            DispatchManifest.manifest_number.like(f"{prefix}%")
        )
        count = (await self.db.execute(stmt)).scalar() or 0

        return f"{prefix}{(count + 1):03d}"

    # ==================== QUERIES ====================

    async def get_manifest(self, manifest_id: uuid.UUID) -> DispatchManifest:
        """Get manifest by ID with items and their orders."""
        result = await self.db.execute(
            select(DispatchManifest)
            .where(DispatchManifest.id == manifest_id)
            .execution_options(populate_existing=True)
        )
        manifest = result.scalar_one_or_none()
        if not manifest:
            raise NotFoundError("Manifest")
        return manifest

    async def list_manifests(
        self,
        status: Optional[str] = None,
        rider_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20
    ) -> Tuple[List[DispatchManifest], int]:
        """Get paginated manifests with filters."""
        stmt = select(DispatchManifest).order_by(DispatchManifest.created_at.desc())

        filters = []
        if status:
            filters.append(DispatchManifest.status == get_enum_value(status))
        if rider_id:
            filters.append(DispatchManifest.rider_id == rider_id)
        if date_from:
            filters.append(DispatchManifest.created_at >= date_from)
        if date_to:
            filters.append(DispatchManifest.created_at <= date_to)

        if filters:
            stmt = stmt.where(and_(*filters))

        count_stmt = select(func.count(DispatchManifest.id))
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    # ==================== SORTING FLOOR ====================

    def _dispatch_ready_filter(self):
        return and_(
            Order.status == OrderStatus.PACKED.value,
            Order.current_manifest_id.is_(None),
        )

    async def get_orders_for_dispatch(
        self,
        city: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> Tuple[List[Order], int]:
        """Packed orders not yet on a manifest, oldest first."""
        filters = [self._dispatch_ready_filter()]
        if city:
            filters.append(Order.customer_city.ilike(f"%{city}%"))

        total = await self.db.scalar(select(func.count(Order.id)).where(and_(*filters))) or 0
        result = await self.db.execute(
            select(Order)
            .where(and_(*filters))
            .order_by(Order.created_at.asc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_zone_summary(self) -> List[Dict]:
        """Dispatch-ready orders grouped by city with the COD still to collect."""
        city = func.coalesce(Order.customer_city, "Unknown")
        cod_due = case(
            (
                and_(
                    Order.payment_method == PaymentMethod.COD.value,
                    Order.payment_status != PaymentStatus.PAID.value,
                ),
                Order.total_amount,
            ),
            else_=0,
        )
        result = await self.db.execute(
            select(
                city.label("city"),
                func.count(Order.id).label("order_count"),
                func.coalesce(func.sum(cod_due), 0).label("total_cod"),
            )
            .where(self._dispatch_ready_filter())
            .group_by(city)
            .order_by(func.count(Order.id).desc(), city)
        )
        return [
            {
                "city": row.city,
                "order_count": row.order_count,
                "total_cod": Decimal(str(row.total_cod)),
            }
            for row in result.all()
        ]

    async def _get_manifest_for_update(self, manifest_id: uuid.UUID) -> DispatchManifest:
        result = await self.db.execute(
            select(DispatchManifest)
            .where(DispatchManifest.id == manifest_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        manifest = result.scalar_one_or_none()
        if not manifest:
            raise NotFoundError("Manifest")
        return manifest

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

    def _find_item(self, manifest: DispatchManifest, order_id: uuid.UUID) -> ManifestItem:
        for item in manifest.items:
            if item.order_id == order_id:
                return item
        raise NotFoundError(f"Order {order_id} on manifest {manifest.manifest_number}")

    async def _set_manifest_status(
        self,
        manifest: DispatchManifest,
        expected_status: str,
        **values,
    ) -> None:
        """Guarded manifest update: only applies if the status hasn't moved since read."""
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(DispatchManifest)
            .where(
                and_(
                    DispatchManifest.id == manifest.id,
                    DispatchManifest.status == expected_status,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Manifest {manifest.manifest_number} was modified concurrently")

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Manifest {action} failed: {e}")
            raise DatabaseError(f"Failed to {action}", original=e)

    # ==================== MANIFEST CREATION ====================

    async def create_manifest(
        self,
        data: ManifestCreate,
        created_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """
        Create an OPEN manifest for one rider from packed orders.

        Every order is claimed with a conditional update on
        current_manifest_id IS NULL; if any claim loses, nothing is created.
        """
        rider = await self.db.get(Rider, data.rider_id)
        if not rider:
            raise NotFoundError("Rider")

        errors = []
        if not rider.is_active:
            errors.append({"field": "rider_id", "message": "Rider is inactive"})

        if len(set(data.order_ids)) != len(data.order_ids):
            errors.append({"field": "order_ids", "message": "Duplicate order ids"})

        result = await self.db.execute(
            select(Order)
            .where(Order.id.in_(data.order_ids))
            .execution_options(populate_existing=True)
        )
        orders = {o.id: o for o in result.scalars().all()}

        for index, order_id in enumerate(data.order_ids):
            order = orders.get(order_id)
            if not order:
                errors.append({"field": f"order_ids[{index}]", "message": f"Order {order_id} not found"})
                continue
            if order.status != OrderStatus.PACKED.value:
                errors.append({
                    "field": f"order_ids[{index}]",
                    "message": f"Order {order.order_number} is {order.status}, expected {OrderStatus.PACKED.value}",
                })
            if order.current_manifest_id is not None:
                errors.append({
                    "field": f"order_ids[{index}]",
                    "message": f"Order {order.order_number} is already on a manifest",
                })

        if errors:
            raise ValidationError(f"Manifest validation failed with {len(errors)} error(s)", errors)

        try:
            manifest = DispatchManifest(
                manifest_number=await self.generate_manifest_number(),
                rider_id=rider.id,
                zone_name=data.zone_name,
                status=ManifestStatus.OPEN.value,
                total_orders=len(data.order_ids),
                notes=data.notes,
                created_by=created_by,
            )

            total_cod_expected = Decimal("0")
            for sequence, order_id in enumerate(data.order_ids, start=1):
                order = orders[order_id]
                cod_amount = order.total_amount if order.is_cod_due else Decimal("0")
                total_cod_expected += cod_amount
                manifest.items.append(
                    ManifestItem(
                        order_id=order_id,
                        sequence_number=sequence,
                        outcome=DeliveryOutcome.PENDING.value,
                        cod_amount=cod_amount,
                        cod_collected=Decimal("0"),
                    )
                )
            manifest.total_cod_expected = total_cod_expected

            self.db.add(manifest)
            await self.db.flush()

            # Claim every order; any lost claim aborts the whole manifest
            for order_id in data.order_ids:
                claim = await self.db.execute(
                    update(Order)
                    .where(
                        and_(
                            Order.id == order_id,
                            Order.current_manifest_id.is_(None),
                            Order.status == OrderStatus.PACKED.value,
                        )
                    )
                    .values(
                        status=OrderStatus.ASSIGNED.value,
                        rider_id=rider.id,
                        current_manifest_id=manifest.id,
                        delivery_attempt_count=Order.delivery_attempt_count + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount != 1:
                    raise ConflictError(
                        f"Order {orders[order_id].order_number} was claimed by another manifest"
                    )

            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(f"Manifest creation for rider {data.rider_id} collided with a concurrent manifest: {e}")
            raise ConflictError("Another manifest was created for these orders at the same time; retry")
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Manifest creation for rider {data.rider_id} failed: {e}")
            raise DatabaseError("Failed to create manifest", original=e)

        manifest_id = manifest.id
        logger.info(
            f"Manifest {manifest.manifest_number} created for rider {rider.rider_code}: "
            f"{manifest.total_orders} order(s), COD expected {total_cod_expected}"
        )
        return await self.get_manifest(manifest_id)

    # ==================== DISPATCH ====================

    async def dispatch_manifest(
        self,
        manifest_id: uuid.UUID,
        dispatched_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """OPEN -> OUT_FOR_DELIVERY; every order on it goes OUT_FOR_DELIVERY."""
        manifest = await self._get_manifest_for_update(manifest_id)
        if manifest.status != ManifestStatus.OPEN.value:
            raise InvalidStateTransitionError(manifest.status, ManifestStatus.OUT_FOR_DELIVERY.value)
        if not manifest.items:
            raise ValidationError(
                f"Manifest {manifest.manifest_number} has no orders",
                [{"field": "order_ids", "message": "Manifest has no orders to dispatch"}],
            )

        now = datetime.now(timezone.utc)
        try:
            await self._set_manifest_status(
                manifest,
                ManifestStatus.OPEN.value,
                status=ManifestStatus.OUT_FOR_DELIVERY.value,
                dispatched_at=now,
                dispatched_by=dispatched_by,
            )

            for item in manifest.items:
                validate_transition(item.order.status, OrderStatus.OUT_FOR_DELIVERY.value)
                result = await self.db.execute(
                    update(Order)
                    .where(
                        and_(
                            Order.id == item.order_id,
                            Order.current_manifest_id == manifest.id,
                            Order.status == OrderStatus.ASSIGNED.value,
                        )
                    )
                    .values(status=OrderStatus.OUT_FOR_DELIVERY.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(f"Order {item.order.order_number} changed before dispatch")

            await self.db.execute(
                update(Rider)
                .where(Rider.id == manifest.rider_id)
                .values(status=RiderStatus.ON_DELIVERY.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Dispatch of manifest {manifest_id} failed: {e}")
            raise DatabaseError("Failed to dispatch manifest", original=e)

        logger.info(f"Manifest {manifest.manifest_number} dispatched with {len(manifest.items)} order(s)")
        return await self.get_manifest(manifest_id)

    # ==================== DELIVERY OUTCOMES ====================

    async def record_delivery_outcome(
        self,
        manifest_id: uuid.UUID,
        data: DeliveryOutcomeCreate,
        recorded_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """
        Record the delivery outcome for one order on a dispatched manifest.

        Each order's outcome is recorded exactly once; re-recording raises
        ConflictError. Delivered COD cash is added to the rider's balance in the
        same transaction.
        """
        outcome = get_enum_value(data.outcome)
        if outcome == DeliveryOutcome.PENDING.value:
            raise ValidationError(
                "Outcome cannot be PENDING",
                [{"field": "outcome", "message": "Choose a delivery outcome"}],
            )

        manifest = await self._get_manifest_for_update(manifest_id)
        if manifest.status not in OUTCOME_RECORDING_STATUSES:
            raise InvalidStateTransitionError(
                manifest.status,
                outcome,
                f"Outcomes can only be recorded on a dispatched manifest "
                f"(manifest {manifest.manifest_number} is {manifest.status})",
            )

        item = self._find_item(manifest, data.order_id)
        if item.outcome != DeliveryOutcome.PENDING.value:
            raise ConflictError(
                f"Outcome already recorded for order {item.order.order_number} ({item.outcome})"
            )

        is_delivered = outcome in DELIVERED_OUTCOMES
        cod_collected = data.cod_collected
        if cod_collected is None:
            cod_collected = item.cod_amount if is_delivered else Decimal("0")
        if cod_collected < 0:
            raise ValidationError(
                "COD collected cannot be negative",
                [{"field": "cod_collected", "message": "Cannot be negative"}],
            )
        if cod_collected > 0 and not is_delivered:
            raise ValidationError(
                "COD can only be collected on delivered orders",
                [{"field": "cod_collected", "message": f"Must be 0 for outcome {outcome}"}],
            )

        order = await self._get_order_for_update(data.order_id)
        new_order_status = order_status_for_outcome(outcome)
        validate_transition(order.status, new_order_status)

        now = datetime.now(timezone.utc)
        balance_change = None
        try:
            claimed = await self.db.execute(
                update(ManifestItem)
                .where(
                    and_(
                        ManifestItem.id == item.id,
                        ManifestItem.outcome == DeliveryOutcome.PENDING.value,
                    )
                )
                .values(
                    outcome=outcome,
                    cod_collected=cod_collected,
                    outcome_notes=data.notes,
                    outcome_at=now,
                    recorded_by=recorded_by,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError(f"Outcome already recorded for order {order.order_number}")

            order_values = {
                "status": new_order_status,
                "last_delivery_outcome": outcome,
                "updated_at": now,
            }
            if is_delivered:
                order_values["delivered_at"] = now
                if order.payment_method == PaymentMethod.COD.value:
                    order_values["payment_status"] = PaymentStatus.PAID.value
            await self.db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(**order_values)
                .execution_options(synchronize_session=False)
            )

            manifest_values = {
                "total_cod_collected": DispatchManifest.total_cod_collected + cod_collected,
                "updated_at": now,
            }
            if is_delivered:
                manifest_values["delivered_count"] = DispatchManifest.delivered_count + 1
            elif outcome in RETURNED_OUTCOMES:
                manifest_values["returned_count"] = DispatchManifest.returned_count + 1
            elif outcome in RESCHEDULED_OUTCOMES:
                manifest_values["rescheduled_count"] = DispatchManifest.rescheduled_count + 1
            await self.db.execute(
                update(DispatchManifest)
                .where(DispatchManifest.id == manifest.id)
                .values(**manifest_values)
                .execution_options(synchronize_session=False)
            )

            rider = await self.settlements._get_rider_for_update(manifest.rider_id)
            if cod_collected > 0:
                balance_change = await self.settlements.change_rider_balance(rider, cod_collected)

            rider_values = {"total_deliveries": Rider.total_deliveries + 1}
            if is_delivered:
                rider_values["successful_deliveries"] = Rider.successful_deliveries + 1
            elif outcome in RETURNED_OUTCOMES:
                rider_values["returned_deliveries"] = Rider.returned_deliveries + 1
            await self.db.execute(
                update(Rider)
                .where(Rider.id == rider.id)
                .values(**rider_values)
                .execution_options(synchronize_session=False)
            )

            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Recording outcome for order {data.order_id} failed: {e}")
            raise DatabaseError("Failed to record delivery outcome", original=e)

        logger.info(
            f"Manifest {manifest.manifest_number}: order {order.order_number} -> {outcome}"
            + (f", COD {cod_collected} collected" if cod_collected > 0 else "")
        )

        if balance_change:
            balance_before, balance_after = balance_change
            await self.settlements.log_balance_change(
                rider_id=manifest.rider_id,
                change_type=BalanceChangeType.COD_COLLECTION,
                amount=cod_collected,
                balance_before=balance_before,
                balance_after=balance_after,
                reference_type="order",
                reference_id=order.id,
                reference_number=order.order_number,
                performed_by=recorded_by,
            )

        return await self.get_manifest(manifest_id)

    async def reschedule_order(
        self,
        manifest_id: uuid.UUID,
        data: RescheduleRequest,
        performed_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """
        Take a not-yet-attempted order off the manifest.

        The order goes back to PACKED (stock was already deducted when it was
        packed) with no rider or manifest, ready for a new run.
        """
        manifest = await self._get_manifest_for_update(manifest_id)
        if manifest.status not in (ManifestStatus.OPEN.value, ManifestStatus.OUT_FOR_DELIVERY.value):
            raise InvalidStateTransitionError(
                manifest.status,
                DeliveryOutcome.RESCHEDULED.value,
                f"Cannot reschedule orders on a {manifest.status} manifest",
            )

        item = self._find_item(manifest, data.order_id)
        if item.outcome != DeliveryOutcome.PENDING.value:
            raise InvalidStateTransitionError(
                item.outcome,
                DeliveryOutcome.RESCHEDULED.value,
                f"Order already has outcome {item.outcome}",
            )

        order = await self._get_order_for_update(data.order_id)
        validate_transition(order.status, OrderStatus.PACKED.value)

        now = datetime.now(timezone.utc)
        cod_amount = item.cod_amount
        try:
            released = await self.db.execute(
                update(Order)
                .where(
                    and_(
                        Order.id == order.id,
                        Order.current_manifest_id == manifest.id,
                        Order.status == order.status,
                    )
                )
                .values(
                    status=OrderStatus.PACKED.value,
                    current_manifest_id=None,
                    rider_id=None,
                    last_delivery_outcome=DeliveryOutcome.RESCHEDULED.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if released.rowcount != 1:
                raise ConflictError(f"Order {order.order_number} changed concurrently")

            await self.db.delete(item)
            await self.db.execute(
                update(DispatchManifest)
                .where(DispatchManifest.id == manifest.id)
                .values(
                    total_orders=DispatchManifest.total_orders - 1,
                    rescheduled_count=DispatchManifest.rescheduled_count + 1,
                    total_cod_expected=DispatchManifest.total_cod_expected - cod_amount,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Rescheduling order {data.order_id} failed: {e}")
            raise DatabaseError("Failed to reschedule order", original=e)

        logger.info(
            f"Order {order.order_number} rescheduled off manifest {manifest.manifest_number}"
            + (f" to {data.reschedule_date.isoformat()}" if data.reschedule_date else "")
        )
        return await self.get_manifest(manifest_id)

    # ==================== SETTLEMENT ====================

    async def settle_manifest(
        self,
        manifest_id: uuid.UUID,
        data: ManifestSettleRequest,
        settled_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """
        Record the cash the rider handed in for this run.

        The deposit goes through the settlement path (rider balance decrement
        with a settlement record). The manifest becomes SETTLED once no order
        is still pending, otherwise PARTIALLY_SETTLED. Variance is total cash
        received minus COD collected.
        """
        manifest = await self._get_manifest_for_update(manifest_id)
        current_status = manifest.status
        if current_status not in OUTCOME_RECORDING_STATUSES:
            raise InvalidStateTransitionError(current_status, ManifestStatus.SETTLED.value)

        cash_received = data.cash_received
        if cash_received is None or cash_received < 0:
            raise ValidationError(
                "Cash received cannot be negative",
                [{"field": "cash_received", "message": "Cannot be negative"}],
            )

        total_cash = manifest.cash_received + cash_received
        variance = total_cash - manifest.total_cod_collected
        pending = manifest.pending_count
        new_status = ManifestStatus.SETTLED.value if pending == 0 else ManifestStatus.PARTIALLY_SETTLED.value

        now = datetime.now(timezone.utc)
        settlement = None
        try:
            if cash_received > 0:
                settlement = await self.settlements.apply_settlement(
                    rider_id=manifest.rider_id,
                    amount=cash_received,
                    notes=data.notes or f"Run {manifest.manifest_number}",
                    created_by=settled_by,
                    manifest_id=manifest.id,
                    status=SettlementStatus.SETTLED,
                )

            await self._set_manifest_status(
                manifest,
                current_status,
                status=new_status,
                cash_received=total_cash,
                settlement_variance=variance,
                settlement_notes=data.notes,
                settled_by=settled_by,
                settled_at=now,
            )

            if new_status == ManifestStatus.SETTLED.value:
                await self._release_orders(manifest, now)

            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Settling manifest {manifest_id} failed: {e}")
            raise DatabaseError("Failed to settle manifest", original=e)

        if variance != 0:
            logger.warning(
                f"Manifest {manifest.manifest_number} settlement variance {variance} "
                f"(cash {total_cash}, COD collected {manifest.total_cod_collected})"
            )
        logger.info(f"Manifest {manifest.manifest_number} -> {new_status}, cash received {cash_received}")

        if settlement is not None:
            await self.settlements.log_balance_change(
                rider_id=settlement.rider_id,
                change_type=BalanceChangeType.SETTLEMENT,
                amount=-settlement.amount_deposited,
                balance_before=settlement.balance_before,
                balance_after=settlement.balance_after,
                reference_type="settlement",
                reference_id=settlement.id,
                reference_number=settlement.settlement_number,
                performed_by=settled_by,
                notes=f"Run {manifest.manifest_number}",
            )

        return await self.get_manifest(manifest_id)

    async def _release_orders(self, manifest: DispatchManifest, now: datetime) -> None:
        """Detach orders from a finished run. Follow-up orders go back to PACKED for a new run."""
        await self.db.execute(
            update(Order)
            .where(
                and_(
                    Order.current_manifest_id == manifest.id,
                    Order.status == OrderStatus.FOLLOW_UP.value,
                )
            )
            .values(status=OrderStatus.PACKED.value, rider_id=None, current_manifest_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        # Rejected orders keep rider_id until the rider hands the goods back
        await self.db.execute(
            update(Order)
            .where(Order.current_manifest_id == manifest.id)
            .values(current_manifest_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Rider)
            .where(Rider.id == manifest.rider_id)
            .values(status=RiderStatus.AVAILABLE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    # ==================== CANCELLATION ====================

    async def cancel_manifest(
        self,
        manifest_id: uuid.UUID,
        data: ManifestCancelRequest,
        cancelled_by: Optional[uuid.UUID] = None
    ) -> DispatchManifest:
        """Cancel an OPEN manifest. Its orders go back to PACKED, unassigned."""
        manifest = await self._get_manifest_for_update(manifest_id)
        if manifest.status != ManifestStatus.OPEN.value:
            raise InvalidStateTransitionError(manifest.status, ManifestStatus.CANCELLED.value)

        now = datetime.now(timezone.utc)
        try:
            released = await self.db.execute(
                update(Order)
                .where(
                    and_(
                        Order.current_manifest_id == manifest.id,
                        Order.status == OrderStatus.ASSIGNED.value,
                    )
                )
                .values(status=OrderStatus.PACKED.value, rider_id=None, current_manifest_id=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if released.rowcount != len(manifest.items):
                raise ConflictError(f"Orders on manifest {manifest.manifest_number} changed concurrently")

            await self._set_manifest_status(
                manifest,
                ManifestStatus.OPEN.value,
                status=ManifestStatus.CANCELLED.value,
                cancellation_reason=data.reason,
                cancelled_by=cancelled_by,
                cancelled_at=now,
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Cancelling manifest {manifest_id} failed: {e}")
            raise DatabaseError("Failed to cancel manifest", original=e)

        logger.info(f"Manifest {manifest.manifest_number} cancelled: {data.reason}")
        return await self.get_manifest(manifest_id)
