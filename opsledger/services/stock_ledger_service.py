"""
Stock Ledger Service.

Every change to a variant's current_stock goes through apply_movement(),
which writes the new stock value and appends one immutable StockMovement
row in the caller's transaction. current_stock is a cached aggregate:
for every variant it must equal SUM(stock_movements.stock_delta), and
recompute_stock()/reconcile_all() derive the truth from the ledger.

Concurrency: the variant row is read with SELECT ... FOR UPDATE and the
write is conditional on the value read (compare-and-swap). A lost race
raises ConflictError and is never retried here.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple, Union

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from opsledger.config import settings
from opsledger.core.enum_utils import get_enum_value
from opsledger.core.exceptions import (
    AppError,
    ConflictError,
    DatabaseError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from opsledger.models.inventory import StockMovement, StockMovementType
from opsledger.models.product import ProductVariant


logger = logging.getLogger(__name__)


@dataclass
class MovementResult:
    """Outcome of one applied ledger movement."""
    movement: StockMovement
    stock_before: int
    stock_after: int


@dataclass
class StockReconciliation:
    """Cached stock compared with the ledger sum for one variant."""
    variant_id: uuid.UUID
    sku: str
    cached_stock: int
    ledger_stock: int
    repaired: bool = False

    @property
    def difference(self) -> int:
        return self.cached_stock - self.ledger_stock

    @property
    def in_sync(self) -> bool:
        return self.cached_stock == self.ledger_stock


def _check_direction(movement_type: str, quantity_delta: int) -> Optional[str]:
    """Return an error message if the delta's sign is wrong for the movement type."""
    if movement_type == StockMovementType.INWARD.value and quantity_delta <= 0:
        return "Inward movements must increase stock"
    if movement_type == StockMovementType.OUTWARD.value and quantity_delta >= 0:
        return "Outward movements must decrease stock"
    if movement_type == StockMovementType.DAMAGE.value and quantity_delta > 0:
        return "Damage movements can never increase stock"
    if movement_type == StockMovementType.ADJUSTMENT.value and quantity_delta == 0:
        return "Adjustment must change stock"
    return None


class StockLedgerService:
    """Append-only stock ledger and the cached balance it maintains."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== WRITE PATH ====================

    async def apply_movement(
        self,
        variant_id: uuid.UUID,
        quantity_delta: int,
        movement_type: Union[StockMovementType, str],
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        reference_number: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
        quantity: Optional[int] = None,
        unit_cost: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> MovementResult:
        """
        Apply a signed stock change and append its ledger row.

        Does not commit: the stock write and the ledger row are flushed into
        the caller's transaction so they commit (or roll back) together with
        whatever else the caller is doing.

        Args:
            variant_id: Variant whose stock changes
            quantity_delta: Signed change to current_stock
            movement_type: INWARD, OUTWARD, DAMAGE or ADJUSTMENT
            quantity: Units affected; defaults to abs(quantity_delta). Required
                for zero-delta DAMAGE entries.

        Raises:
            ValidationError: delta sign doesn't match the movement type
            NotFoundError: unknown variant
            InsufficientStockError: stock would go negative
            ConflictError: stock changed between read and write
        """
        movement_type = get_enum_value(movement_type)
        if movement_type not in {t.value for t in StockMovementType}:
            raise ValidationError(
                "Invalid movement type",
                [{"field": "movement_type", "message": f"Unknown movement type '{movement_type}'"}],
            )

        direction_error = _check_direction(movement_type, quantity_delta)
        if direction_error:
            raise ValidationError(direction_error, [{"field": "quantity_delta", "message": direction_error}])

        units = quantity if quantity is not None else abs(quantity_delta)
        if units <= 0:
            raise ValidationError(
                "Movement quantity must be positive",
                [{"field": "quantity", "message": "Must be greater than 0"}],
            )

        variant = await self._get_variant_for_update(variant_id)
        stock_before = variant.current_stock
        stock_after = stock_before + quantity_delta

        if stock_after < 0:
            raise InsufficientStockError(variant.sku, abs(quantity_delta), stock_before)

        await self._write_stock(variant_id, stock_before, stock_after)
        set_committed_value(variant, "current_stock", stock_after)

        movement = StockMovement(
            movement_number=self._generate_movement_number(),
            movement_type=movement_type,
            variant_id=variant_id,
            quantity=units,
            stock_delta=quantity_delta,
            stock_before=stock_before,
            stock_after=stock_after,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            unit_cost=unit_cost,
            reason=reason,
            created_by=created_by,
        )
        self.db.add(movement)
        await self.db.flush()

        logger.debug(
            f"Stock {movement_type} for {variant.sku}: {stock_before} -> {stock_after} "
            f"({reference_type}:{reference_number or reference_id})"
        )

        return MovementResult(movement=movement, stock_before=stock_before, stock_after=stock_after)

    async def log_damage(
        self,
        variant_id: uuid.UUID,
        quantity: int,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        reference_number: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> MovementResult:
        """Record damaged units without touching sellable stock (zero stock delta)."""
        return await self.apply_movement(
            variant_id=variant_id,
            quantity_delta=0,
            movement_type=StockMovementType.DAMAGE,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            created_by=created_by,
            quantity=quantity,
            reason=reason,
        )

    async def adjust_stock(
        self,
        variant_id: uuid.UUID,
        quantity_delta: int,
        reason: str,
        created_by: Optional[uuid.UUID] = None,
    ) -> MovementResult:
        """Manual stock correction. Commits its own transaction."""
        if not reason or not reason.strip():
            raise ValidationError(
                "Adjustment reason is required",
                [{"field": "reason", "message": "Reason is required"}],
            )

        try:
            result = await self.apply_movement(
                variant_id=variant_id,
                quantity_delta=quantity_delta,
                movement_type=StockMovementType.ADJUSTMENT,
                reference_type="adjustment",
                created_by=created_by,
                reason=reason.strip(),
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Stock adjustment failed for variant {variant_id}: {e}")
            raise DatabaseError("Failed to adjust stock", original=e)

        logger.info(
            f"Stock adjusted for variant {variant_id}: "
            f"{result.stock_before} -> {result.stock_after} ({reason})"
        )
        return result

    async def _get_variant_for_update(self, variant_id: uuid.UUID) -> ProductVariant:
        result = await self.db.execute(
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        variant = result.scalar_one_or_none()
        if not variant:
            raise NotFoundError(f"Product variant {variant_id}")
        return variant

    async def _write_stock(self, variant_id: uuid.UUID, expected: int, new_stock: int) -> None:
        """Compare-and-swap write of current_stock."""
        result = await self.db.execute(
            update(ProductVariant)
            .where(
                and_(
                    ProductVariant.id == variant_id,
                    ProductVariant.current_stock == expected,
                )
            )
            .values(current_stock=new_stock, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Stock for variant {variant_id} changed concurrently; expected {expected}"
            )

    def _generate_movement_number(self) -> str:
        date_part = datetime.now(timezone.utc).strftime("%Y%m%d")
        return f"MOV-{date_part}-{uuid.uuid4().hex[:10].upper()}"

    # ==================== READ PATH ====================

    async def get_movements(
        self,
        variant_id: Optional[uuid.UUID] = None,
        movement_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockMovement], int]:
        """List ledger entries, newest first."""
        conditions = []
        if variant_id:
            conditions.append(StockMovement.variant_id == variant_id)
        if movement_type:
            conditions.append(StockMovement.movement_type == get_enum_value(movement_type))
        if reference_type:
            conditions.append(StockMovement.reference_type == reference_type)
        if reference_id:
            conditions.append(StockMovement.reference_id == reference_id)

        query = select(StockMovement)
        count_query = select(func.count()).select_from(StockMovement)
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = await self.db.scalar(count_query)
        query = query.order_by(StockMovement.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def get_ledger_stock(self, variant_id: uuid.UUID) -> int:
        """Sum of signed deltas recorded in the ledger for one variant."""
        total = await self.db.scalar(
            select(func.coalesce(func.sum(StockMovement.stock_delta), 0))
            .where(StockMovement.variant_id == variant_id)
        )
        return int(total or 0)

    async def recompute_stock(self, variant_id: uuid.UUID) -> StockReconciliation:
        variant = await self.db.get(ProductVariant, variant_id, populate_existing=True)
        if not variant:
            raise NotFoundError(f"Product variant {variant_id}")

        return StockReconciliation(
            variant_id=variant.id,
            sku=variant.sku,
            cached_stock=variant.current_stock,
            ledger_stock=await self.get_ledger_stock(variant_id),
        )

    async def reconcile_all(self, repair: bool = False) -> List[StockReconciliation]:
        """
        Compare every variant's cached stock against its ledger sum.

        With repair=True, drifted variants get current_stock rewritten to the
        ledger sum (the ledger is the source of truth) and the repair is
        committed. Without it the check is read-only.
        """
        ledger_sums = (
            select(
                StockMovement.variant_id.label("variant_id"),
                func.sum(StockMovement.stock_delta).label("ledger_stock"),
            )
            .group_by(StockMovement.variant_id)
            .subquery()
        )
        result = await self.db.execute(
            select(
                ProductVariant.id,
                ProductVariant.sku,
                ProductVariant.current_stock,
                func.coalesce(ledger_sums.c.ledger_stock, 0),
            )
            .outerjoin(ledger_sums, ledger_sums.c.variant_id == ProductVariant.id)
            .order_by(ProductVariant.sku)
        )

        reports = [
            StockReconciliation(
                variant_id=row[0],
                sku=row[1],
                cached_stock=row[2],
                ledger_stock=int(row[3]),
            )
            for row in result.all()
        ]

        drifted = [r for r in reports if not r.in_sync]
        if not drifted:
            return reports

        for report in drifted:
            logger.warning(
                f"Stock drift on {report.sku}: cached={report.cached_stock} "
                f"ledger={report.ledger_stock}"
            )

        if repair:
            try:
                for report in drifted:
                    if report.ledger_stock < 0:
                        logger.error(f"Ledger sum negative for {report.sku}; not repairing")
                        continue
                    variant = await self._get_variant_for_update(report.variant_id)
                    await self._write_stock(variant.id, variant.current_stock, report.ledger_stock)
                    set_committed_value(variant, "current_stock", report.ledger_stock)
                    report.repaired = True
                await self.db.commit()
            except AppError:
                await self.db.rollback()
                raise
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise DatabaseError("Failed to repair cached stock", original=e)

            logger.warning(f"Repaired cached stock for {sum(1 for r in drifted if r.repaired)} variant(s)")

        return reports

    async def get_inventory_valuation(self) -> Dict[str, Any]:
        """Stock value at current cost price across active variants."""
        result = await self.db.execute(
            select(
                func.count(ProductVariant.id),
                func.coalesce(func.sum(ProductVariant.current_stock), 0),
                func.coalesce(func.sum(ProductVariant.cost_price * ProductVariant.current_stock), 0),
            ).where(ProductVariant.is_active == True)  # noqa: E712
        )
        variant_count, total_units, total_value = result.one()
        return {
            "variant_count": variant_count or 0,
            "total_units": int(total_units or 0),
            "total_value": Decimal(str(total_value or 0)).quantize(Decimal("0.01")),
        }

    async def get_low_stock_alerts(self, threshold: Optional[int] = None) -> List[ProductVariant]:
        """Active variants at or below the threshold, lowest stock first."""
        if threshold is None:
            threshold = settings.LOW_STOCK_THRESHOLD
        result = await self.db.execute(
            select(ProductVariant)
            .where(
                and_(
                    ProductVariant.is_active == True,  # noqa: E712
                    ProductVariant.current_stock <= threshold,
                )
            )
            .order_by(ProductVariant.current_stock.asc(), ProductVariant.sku)
        )
        return list(result.scalars().all())
