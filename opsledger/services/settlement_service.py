"""
Settlement Reconciliation Service.

Converts cash handed in by a rider into a settlement record and a matching
decrease of the rider's current_cash_balance. The settlement row and the
balance decrement commit together; the balance can never go negative and a
rider can never deposit more than they hold.

The rider_balance_logs table is a secondary audit trail: it is written after
the primary commit and a failure there is logged, never raised.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Tuple, Union

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from opsledger.core.enum_utils import get_enum_value
from opsledger.core.exceptions import (
    AppError,
    BadRequestError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    ValidationError,
)
from opsledger.models.rider import (
    Rider,
    RiderBalanceLog,
    RiderSettlement,
    SettlementStatus,
    BalanceChangeType,
)
from opsledger.schemas.base import BulkResult, UnitResult
from opsledger.schemas.settlement import SettlementCreate, BulkSettlementRequest


logger = logging.getLogger(__name__)


class SettlementService:
    """Rider cash settlements and the rider balance audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== NUMBER GENERATION ====================

    async def generate_settlement_number(self) -> str:
        """Generate settlement number: STL-YYYYMMDD-XXXX"""
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        prefix = f"STL-{today}-"

        stmt = select(func.count(RiderSettlement.id)).where(
            RiderSettlement.settlement_number.like(f"{prefix}%")
        )
        count = (await self.db.execute(stmt)).scalar() or 0

        return f"{prefix}{(count + 1):04d}"

    # ==================== BALANCE ====================

    async def _get_rider_for_update(self, rider_id: uuid.UUID) -> Rider:
        result = await self.db.execute(
            select(Rider)
            .where(Rider.id == rider_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rider = result.scalar_one_or_none()
        if not rider:
            raise NotFoundError("Rider")
        return rider

    async def change_rider_balance(self, rider: Rider, delta: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Compare-and-swap change of a locked rider's cash balance. Does not commit.

        Returns (balance_before, balance_after).
        """
        balance_before = rider.current_cash_balance
        balance_after = balance_before + delta
        if balance_after < 0:
            raise ValidationError(
                f"Rider balance cannot go negative (held {balance_before}, change {delta})",
                [{"field": "amount", "message": f"Cannot exceed current balance {balance_before}"}],
            )

        result = await self.db.execute(
            update(Rider)
            .where(
                and_(
                    Rider.id == rider.id,
                    Rider.current_cash_balance == balance_before,
                )
            )
            .values(current_cash_balance=balance_after, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Cash balance for rider {rider.rider_code} changed concurrently")

        set_committed_value(rider, "current_cash_balance", balance_after)
        return balance_before, balance_after

    async def log_balance_change(
        self,
        rider_id: uuid.UUID,
        change_type: Union[BalanceChangeType, str],
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        reference_number: Optional[str] = None,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> bool:
        """Append a rider_balance_logs row in its own commit. Returns False on failure."""
        try:
            self.db.add(
                RiderBalanceLog(
                    rider_id=rider_id,
                    change_type=get_enum_value(change_type),
                    amount=amount,
                    balance_before=balance_before,
                    balance_after=balance_after,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    reference_number=reference_number,
                    performed_by=performed_by,
                    notes=notes,
                )
            )
            await self.db.commit()
            return True
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(
                f"Rider balance log not written for rider {rider_id} "
                f"({get_enum_value(change_type)} {amount}, ref {reference_number}): {e}"
            )
            return False

    # ==================== SETTLEMENTS ====================

    async def apply_settlement(
        self,
        rider_id: uuid.UUID,
        amount: Decimal,
        payment_method: str = "CASH",
        payment_reference: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
        manifest_id: Optional[uuid.UUID] = None,
        status: Union[SettlementStatus, str] = SettlementStatus.PENDING,
    ) -> RiderSettlement:
        """
        Create the settlement row and decrement the rider balance. Does not commit.

        Raises:
            ValidationError: amount <= 0 or amount > current_cash_balance
            NotFoundError: unknown rider
            ConflictError: balance changed between read and write
        """
        if amount is None or amount <= 0:
            raise ValidationError(
                "Settlement amount must be greater than 0",
                [{"field": "amount", "message": "Must be greater than 0"}],
            )

        rider = await self._get_rider_for_update(rider_id)
        if amount > rider.current_cash_balance:
            raise ValidationError(
                f"Settlement amount {amount} exceeds rider balance {rider.current_cash_balance}",
                [{
                    "field": "amount",
                    "message": f"Cannot exceed current balance {rider.current_cash_balance}",
                }],
            )

        balance_before, balance_after = await self.change_rider_balance(rider, -amount)

        settlement = RiderSettlement(
            settlement_number=await self.generate_settlement_number(),
            rider_id=rider_id,
            manifest_id=manifest_id,
            total_cod_collected=balance_before,
            amount_deposited=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            payment_method=payment_method,
            deposit_reference=payment_reference,
            status=get_enum_value(status),
            notes=notes,
            created_by=created_by,
        )
        self.db.add(settlement)
        await self.db.flush()
        return settlement

    async def create_settlement(
        self,
        data: SettlementCreate,
        created_by: Optional[uuid.UUID] = None,
    ) -> RiderSettlement:
        """Record a rider cash deposit (status PENDING until verified)."""
        try:
            settlement = await self.apply_settlement(
                rider_id=data.rider_id,
                amount=data.amount,
                payment_method=data.payment_method,
                payment_reference=data.payment_reference,
                notes=data.notes,
                created_by=created_by,
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Settlement for rider {data.rider_id} failed: {e}")
            raise DatabaseError("Failed to create settlement", original=e)

        settlement_id = settlement.id
        logger.info(
            f"Settlement {settlement.settlement_number} for rider {data.rider_id}: "
            f"{settlement.amount_deposited} deposited, balance "
            f"{settlement.balance_before} -> {settlement.balance_after}"
        )

        await self.log_balance_change(
            rider_id=settlement.rider_id,
            change_type=BalanceChangeType.SETTLEMENT,
            amount=-settlement.amount_deposited,
            balance_before=settlement.balance_before,
            balance_after=settlement.balance_after,
            reference_type="settlement",
            reference_id=settlement.id,
            reference_number=settlement.settlement_number,
            performed_by=created_by,
            notes=data.notes,
        )
        return await self.get_settlement(settlement_id)

    async def create_settlements_bulk(
        self,
        data: BulkSettlementRequest,
        created_by: Optional[uuid.UUID] = None,
    ) -> BulkResult:
        """Settle several riders; each rider is its own atomic unit."""
        results: List[UnitResult] = []

        for entry in data.entries:
            try:
                settlement = await self.create_settlement(
                    SettlementCreate(
                        rider_id=entry.rider_id,
                        amount=entry.amount,
                        payment_method=data.payment_method,
                        payment_reference=entry.payment_reference,
                        notes=data.notes,
                    ),
                    created_by=created_by,
                )
                results.append(
                    UnitResult(
                        id=entry.rider_id,
                        success=True,
                        data={
                            "settlement_id": str(settlement.id),
                            "settlement_number": settlement.settlement_number,
                            "balance_after": str(settlement.balance_after),
                        },
                    )
                )
            except AppError as e:
                logger.warning(f"Bulk settlement: rider {entry.rider_id} failed: {e.code} {e.message}")
                results.append(UnitResult(id=entry.rider_id, success=False, error_code=e.code, error=e.message))

        succeeded = sum(1 for r in results if r.success)
        return BulkResult(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )

    async def verify_settlement(
        self,
        settlement_id: uuid.UUID,
        verified_by: Optional[uuid.UUID] = None,
    ) -> RiderSettlement:
        """One-way transition to VERIFIED. Re-verifying is rejected."""
        result = await self.db.execute(
            select(RiderSettlement)
            .where(RiderSettlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        settlement = result.scalar_one_or_none()
        if not settlement:
            raise NotFoundError("Settlement")

        current_status = settlement.status
        if current_status == SettlementStatus.VERIFIED.value:
            raise BadRequestError(f"Settlement {settlement.settlement_number} is already verified")

        now = datetime.now(timezone.utc)
        try:
            updated = await self.db.execute(
                update(RiderSettlement)
                .where(
                    and_(
                        RiderSettlement.id == settlement_id,
                        RiderSettlement.status == current_status,
                    )
                )
                .values(status=SettlementStatus.VERIFIED.value, verified_by=verified_by, verified_at=now)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise ConflictError(f"Settlement {settlement.settlement_number} was modified concurrently")
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError("Failed to verify settlement", original=e)

        logger.info(f"Settlement {settlement.settlement_number} verified")
        return await self.get_settlement(settlement_id)

    # ==================== QUERIES ====================

    async def get_settlement(self, settlement_id: uuid.UUID) -> RiderSettlement:
        result = await self.db.execute(
            select(RiderSettlement)
            .where(RiderSettlement.id == settlement_id)
            .execution_options(populate_existing=True)
        )
        settlement = result.scalar_one_or_none()
        if not settlement:
            raise NotFoundError("Settlement")
        return settlement

    async def list_settlements(
        self,
        status: Optional[str] = None,
        rider_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[RiderSettlement], int]:
        """Get paginated settlements across riders, newest first."""
        filters = []
        if status:
            filters.append(RiderSettlement.status == get_enum_value(status))
        if rider_id:
            filters.append(RiderSettlement.rider_id == rider_id)
        if date_from:
            filters.append(RiderSettlement.settlement_date >= date_from)
        if date_to:
            filters.append(RiderSettlement.settlement_date <= date_to)

        stmt = select(RiderSettlement).order_by(RiderSettlement.settlement_date.desc())
        count_stmt = select(func.count(RiderSettlement.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = await self.db.scalar(count_stmt) or 0
        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_rider_settlements(
        self,
        rider_id: uuid.UUID,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[RiderSettlement], int]:
        if not await self.db.get(Rider, rider_id):
            raise NotFoundError("Rider")

        total = await self.db.scalar(
            select(func.count(RiderSettlement.id)).where(RiderSettlement.rider_id == rider_id)
        )
        result = await self.db.execute(
            select(RiderSettlement)
            .where(RiderSettlement.rider_id == rider_id)
            .order_by(RiderSettlement.settlement_date.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def get_riders_for_settlement(self) -> List[Dict]:
        """Active riders holding cash, highest balance first, with their last settlement."""
        result = await self.db.execute(
            select(Rider)
            .where(
                and_(
                    Rider.is_active == True,  # noqa: E712
                    Rider.current_cash_balance > 0,
                )
            )
            .order_by(Rider.current_cash_balance.desc())
            .execution_options(populate_existing=True)
        )
        riders = list(result.scalars().all())
        if not riders:
            return []

        last_settlements: Dict[uuid.UUID, RiderSettlement] = {}
        settlements = await self.db.execute(
            select(RiderSettlement)
            .where(RiderSettlement.rider_id.in_([r.id for r in riders]))
            .order_by(RiderSettlement.settlement_date.desc())
        )
        for settlement in settlements.scalars().all():
            last_settlements.setdefault(settlement.rider_id, settlement)

        riders_data = []
        for rider in riders:
            last = last_settlements.get(rider.id)
            riders_data.append({
                "rider_id": rider.id,
                "rider_code": rider.rider_code,
                "full_name": rider.full_name,
                "phone": rider.phone,
                "current_cash_balance": rider.current_cash_balance,
                "last_settlement_at": last.settlement_date if last else None,
                "last_settlement_amount": last.amount_deposited if last else None,
            })
        return riders_data

    async def get_rider_balance_log(
        self,
        rider_id: uuid.UUID,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[RiderBalanceLog], int]:
        total = await self.db.scalar(
            select(func.count(RiderBalanceLog.id)).where(RiderBalanceLog.rider_id == rider_id)
        )
        result = await self.db.execute(
            select(RiderBalanceLog)
            .where(RiderBalanceLog.rider_id == rider_id)
            .order_by(RiderBalanceLog.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def get_settlement_stats(self) -> Dict:
        today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        unsettled, holding = (await self.db.execute(
            select(
                func.coalesce(func.sum(Rider.current_cash_balance), 0),
                func.count(Rider.id).filter(Rider.current_cash_balance > 0),
            ).where(Rider.is_active == True)  # noqa: E712
        )).one()

        today_count, today_amount = (await self.db.execute(
            select(
                func.count(RiderSettlement.id),
                func.coalesce(func.sum(RiderSettlement.amount_deposited), 0),
            ).where(RiderSettlement.settlement_date >= today_start)
        )).one()

        pending = await self.db.scalar(
            select(func.count(RiderSettlement.id)).where(
                RiderSettlement.status == SettlementStatus.PENDING.value
            )
        )

        return {
            "total_unsettled": Decimal(str(unsettled)),
            "riders_holding_cash": holding or 0,
            "today_settlement_count": today_count or 0,
            "today_settlement_amount": Decimal(str(today_amount)),
            "pending_verifications": pending or 0,
        }
