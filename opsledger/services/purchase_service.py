"""
Purchase Intake Service.

The only path that injects new stock. A purchase bill (vendor supply) is
persisted with its lines, the vendor's payable balance grows by the bill
total, and every line is pushed through the stock ledger as an INWARD
movement that also overwrites the variant's cost_price (last price wins).

Stock application policy (PURCHASE_STRICT_ATOMICITY):
- False (default): the bill, its lines and the vendor balance commit first.
  Each line's stock movement then commits on its own; a failed line is
  rolled back, marked on the line (stock_applied=False, stock_error) and
  reported back to the caller as a failed line.
- True: bill, lines, vendor balance and every stock movement commit in one
  transaction; any failure rolls back the whole purchase.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Tuple

from sqlalchemy import select, update, func, and_, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsledger.config import settings
from opsledger.core.exceptions import (
    AppError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    ValidationError,
)
from opsledger.models.inventory import StockMovementType
from opsledger.models.product import ProductVariant
from opsledger.models.purchase import VendorSupply, VendorSupplyItem, VendorPayment, SupplyStatus
from opsledger.models.vendor import Vendor
from opsledger.schemas.purchase import PurchaseCreate, VendorPaymentCreate
from opsledger.services.stock_ledger_service import StockLedgerService


logger = logging.getLogger(__name__)


@dataclass
class PurchaseLineOutcome:
    """Stock outcome for one purchase line."""
    line_number: int
    variant_id: uuid.UUID
    quantity: int
    success: bool
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PurchaseResult:
    """Result of a purchase: the bill plus what happened to each line's stock."""
    supply: VendorSupply
    lines: List[PurchaseLineOutcome] = field(default_factory=list)

    @property
    def stock_applied(self) -> int:
        return sum(1 for line in self.lines if line.success)

    @property
    def stock_failed(self) -> int:
        return sum(1 for line in self.lines if not line.success)

    @property
    def fully_applied(self) -> bool:
        return self.stock_failed == 0


class PurchaseService:
    """Purchase bills, their stock intake and vendor payments."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

    # ==================== SUPPLY NUMBER GENERATION ====================

    async def generate_supply_number(self) -> str:
        """Generate supply number: SUP-YYYY-NNNNNN, sequence per calendar year."""
        year = datetime.now(timezone.utc).year
        prefix = f"SUP-{year}-"

        stmt = (
            select(VendorSupply.supply_number)
            .where(VendorSupply.supply_number.like(f"{prefix}%"))
            # Longest first so SUP-2026-1000000 sorts above SUP-2026-999999
            .order_by(func.length(VendorSupply.supply_number).desc(), VendorSupply.supply_number.desc())
            .limit(1)
        )
        last_number = (await self.db.execute(stmt)).scalar_one_or_none()

        sequence = 1
        if last_number:
            try:
                sequence = int(last_number.rsplit("-", 1)[1]) + 1
            except (IndexError, ValueError):
                logger.warning(f"Unparseable supply number '{last_number}', restarting sequence scan")
                count = await self.db.scalar(
                    select(func.count(VendorSupply.id)).where(VendorSupply.supply_number.like(f"{prefix}%"))
                )
                sequence = (count or 0) + 1

        return f"{prefix}{sequence:06d}"

    # ==================== VALIDATION ====================

    async def _validate_purchase(self, data: PurchaseCreate) -> Tuple[Vendor, Dict[uuid.UUID, ProductVariant]]:
        """Collect every violation before anything is written."""
        errors: List[Dict[str, str]] = []

        vendor = await self.db.get(Vendor, data.vendor_id)
        if not vendor:
            errors.append({"field": "vendor_id", "message": "Vendor not found"})
        elif not vendor.is_active:
            errors.append({"field": "vendor_id", "message": "Vendor is inactive"})

        if not data.items:
            errors.append({"field": "items", "message": "At least one item is required"})

        variant_ids = {item.variant_id for item in data.items}
        variants: Dict[uuid.UUID, ProductVariant] = {}
        if variant_ids:
            result = await self.db.execute(
                select(ProductVariant).where(ProductVariant.id.in_(variant_ids))
            )
            variants = {v.id: v for v in result.scalars().all()}

        for index, item in enumerate(data.items):
            if item.variant_id not in variants:
                errors.append({
                    "field": f"items[{index}].variant_id",
                    "message": f"Product variant {item.variant_id} not found",
                })
            if item.quantity <= 0:
                errors.append({"field": f"items[{index}].quantity", "message": "Quantity must be greater than 0"})
            if item.unit_cost < 0:
                errors.append({"field": f"items[{index}].unit_cost", "message": "Unit cost cannot be negative"})

        if errors:
            raise ValidationError(f"Purchase validation failed with {len(errors)} error(s)", errors)

        return vendor, variants

    # ==================== PURCHASE CREATION ====================

    async def create_purchase(
        self,
        data: PurchaseCreate,
        created_by: Optional[uuid.UUID] = None,
    ) -> PurchaseResult:
        """
        Create a purchase bill and bring its goods into stock.

        Raises:
            ValidationError: any invalid vendor, variant, quantity or cost
                (nothing is written)
            DatabaseError: the bill itself could not be persisted
        """
        vendor, _ = await self._validate_purchase(data)

        if settings.PURCHASE_STRICT_ATOMICITY:
            return await self._create_purchase_strict(data, vendor, created_by)
        return await self._create_purchase_lenient(data, vendor, created_by)

    async def _build_supply(
        self,
        data: PurchaseCreate,
        vendor: Vendor,
        created_by: Optional[uuid.UUID],
    ) -> VendorSupply:
        """Add the bill, its lines and the vendor balance increase to the session."""
        supply = VendorSupply(
            supply_number=await self.generate_supply_number(),
            vendor_id=vendor.id,
            status=SupplyStatus.RECEIVED.value,
            invoice_number=data.invoice_number,
            invoice_date=data.invoice_date,
            notes=data.notes,
            received_by=created_by,
            created_by=created_by,
            paid_amount=Decimal("0"),
        )

        total_amount = Decimal("0")
        for line_number, item in enumerate(data.items, start=1):
            total_cost = (Decimal(item.quantity) * item.unit_cost).quantize(Decimal("0.01"))
            total_amount += total_cost
            supply.items.append(
                VendorSupplyItem(
                    variant_id=item.variant_id,
                    line_number=line_number,
                    quantity=item.quantity,
                    unit_cost=item.unit_cost,
                    total_cost=total_cost,
                    stock_applied=False,
                )
            )
        supply.total_amount = total_amount

        self.db.add(supply)
        await self.db.flush()

        # Atomic increment, no read-modify-write on the vendor row
        await self.db.execute(
            update(Vendor)
            .where(Vendor.id == vendor.id)
            .values(balance=Vendor.balance + total_amount, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return supply

    async def _apply_line_stock(
        self,
        supply: VendorSupply,
        item: VendorSupplyItem,
        created_by: Optional[uuid.UUID],
    ) -> PurchaseLineOutcome:
        """INWARD movement plus cost price overwrite for one line. Does not commit."""
        movement = await self.ledger.apply_movement(
            variant_id=item.variant_id,
            quantity_delta=item.quantity,
            movement_type=StockMovementType.INWARD,
            reference_type="purchase",
            reference_id=supply.id,
            reference_number=supply.supply_number,
            created_by=created_by,
            unit_cost=item.unit_cost,
        )

        variant = await self.db.get(ProductVariant, item.variant_id)
        variant.cost_price = item.unit_cost
        item.stock_applied = True
        item.stock_error = None
        await self.db.flush()

        return PurchaseLineOutcome(
            line_number=item.line_number,
            variant_id=item.variant_id,
            quantity=item.quantity,
            success=True,
            stock_before=movement.stock_before,
            stock_after=movement.stock_after,
        )

    async def _create_purchase_strict(
        self,
        data: PurchaseCreate,
        vendor: Vendor,
        created_by: Optional[uuid.UUID],
    ) -> PurchaseResult:
        try:
            supply = await self._build_supply(data, vendor, created_by)
            lines = [await self._apply_line_stock(supply, item, created_by) for item in supply.items]
            await self.db.commit()
        except AppError as e:
            await self.db.rollback()
            logger.error(f"Purchase rolled back (strict mode): {e.code} {e.message}")
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Purchase rolled back (strict mode): {e}")
            raise DatabaseError("Failed to create purchase", original=e)

        logger.info(
            f"Purchase {supply.supply_number} created for vendor {vendor.id}: "
            f"{len(lines)} line(s), total {supply.total_amount}"
        )
        return PurchaseResult(supply=await self.get_purchase(supply.id), lines=lines)

    async def _create_purchase_lenient(
        self,
        data: PurchaseCreate,
        vendor: Vendor,
        created_by: Optional[uuid.UUID],
    ) -> PurchaseResult:
        # Primary write: bill + lines + vendor balance
        try:
            supply = await self._build_supply(data, vendor, created_by)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create purchase bill for vendor {vendor.id}: {e}")
            raise DatabaseError("Failed to create purchase", original=e)

        supply_id = supply.id
        supply_number = supply.supply_number
        item_ids = [item.id for item in supply.items]

        logger.info(
            f"Purchase {supply_number} created for vendor {vendor.id}: "
            f"{len(item_ids)} line(s), total {supply.total_amount}"
        )

        # Stock: one unit per line
        lines: List[PurchaseLineOutcome] = []
        for item_id in item_ids:
            supply = await self.db.get(VendorSupply, supply_id)
            item = await self.db.get(VendorSupplyItem, item_id)
            line_number, variant_id, quantity = item.line_number, item.variant_id, item.quantity
            try:
                lines.append(await self._apply_line_stock(supply, item, created_by))
                await self.db.commit()
            except (AppError, SQLAlchemyError) as e:
                await self.db.rollback()
                code = e.code if isinstance(e, AppError) else DatabaseError.code
                message = e.message if isinstance(e, AppError) else "Stock update failed"
                logger.error(
                    f"Purchase {supply_number} line {line_number}: stock update failed "
                    f"for variant {variant_id}: {code} {e}"
                )
                lines.append(
                    PurchaseLineOutcome(
                        line_number=line_number,
                        variant_id=variant_id,
                        quantity=quantity,
                        success=False,
                        error_code=code,
                        error=message,
                    )
                )
                await self._mark_line_failed(item_id, f"{code}: {message}")

        result = PurchaseResult(supply=await self.get_purchase(supply_id), lines=lines)
        if not result.fully_applied:
            logger.error(
                f"Purchase {supply_number} partially applied: "
                f"{result.stock_applied} line(s) in stock, {result.stock_failed} failed"
            )
        return result

    async def _mark_line_failed(self, item_id: uuid.UUID, error: str) -> None:
        """Secondary write: record the failure on the line."""
        try:
            await self.db.execute(
                update(VendorSupplyItem)
                .where(VendorSupplyItem.id == item_id)
                .values(stock_applied=False, stock_error=error[:500])
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Could not record stock failure on purchase line {item_id}: {e}")

    # ==================== PAYMENTS ====================

    async def record_payment(
        self,
        supply_id: uuid.UUID,
        data: VendorPaymentCreate,
        created_by: Optional[uuid.UUID] = None,
    ) -> VendorSupply:
        """
        Record a payment against a purchase bill.

        paid_amount only ever increases; status moves RECEIVED -> PARTIAL -> PAID
        and the vendor's payable balance drops by the amount paid.
        """
        supply = await self._get_supply_for_update(supply_id)

        remaining = supply.total_amount - supply.paid_amount
        if data.amount <= 0:
            raise ValidationError(
                "Payment amount must be greater than 0",
                [{"field": "amount", "message": "Must be greater than 0"}],
            )
        if data.amount > remaining:
            raise ValidationError(
                f"Payment of {data.amount} exceeds remaining balance {remaining}",
                [{"field": "amount", "message": f"Cannot exceed remaining balance {remaining}"}],
            )

        paid_before = supply.paid_amount
        paid_after = paid_before + data.amount
        new_status = SupplyStatus.PAID.value if paid_after >= supply.total_amount else SupplyStatus.PARTIAL.value

        try:
            result = await self.db.execute(
                update(VendorSupply)
                .where(
                    and_(
                        VendorSupply.id == supply_id,
                        VendorSupply.paid_amount == paid_before,
                    )
                )
                .values(paid_amount=paid_after, status=new_status, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Purchase {supply.supply_number} was paid concurrently; retry")

            await self.db.execute(
                update(Vendor)
                .where(Vendor.id == supply.vendor_id)
                .values(balance=Vendor.balance - data.amount, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )

            self.db.add(
                VendorPayment(
                    supply_id=supply_id,
                    vendor_id=supply.vendor_id,
                    amount=data.amount,
                    payment_mode=data.payment_mode,
                    reference_number=data.reference_number,
                    notes=data.notes,
                    created_by=created_by,
                )
            )
            await self.db.commit()
        except AppError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Payment on purchase {supply_id} failed: {e}")
            raise DatabaseError("Failed to record payment", original=e)

        logger.info(
            f"Payment {data.amount} recorded on {supply.supply_number}: "
            f"paid {paid_before} -> {paid_after} ({new_status})"
        )
        return await self.get_purchase(supply_id)

    async def _get_supply_for_update(self, supply_id: uuid.UUID) -> VendorSupply:
        result = await self.db.execute(
            select(VendorSupply)
            .where(VendorSupply.id == supply_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        supply = result.scalar_one_or_none()
        if not supply:
            raise NotFoundError("Purchase")
        return supply

    # ==================== QUERIES ====================

    async def get_purchase(self, supply_id: uuid.UUID) -> VendorSupply:
        result = await self.db.execute(
            select(VendorSupply)
            .where(VendorSupply.id == supply_id)
            .execution_options(populate_existing=True)
        )
        supply = result.scalar_one_or_none()
        if not supply:
            raise NotFoundError("Purchase")
        return supply

    async def list_purchases(
        self,
        vendor_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[VendorSupply], int]:
        """Get paginated purchases with filters."""
        filters = []
        if vendor_id:
            filters.append(VendorSupply.vendor_id == vendor_id)
        if status:
            filters.append(VendorSupply.status == status)
        if date_from:
            filters.append(VendorSupply.received_at >= date_from)
        if date_to:
            filters.append(VendorSupply.received_at <= date_to)

        stmt = select(VendorSupply).order_by(VendorSupply.received_at.desc())
        count_stmt = select(func.count(VendorSupply.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_stats(self, vendor_id: Optional[uuid.UUID] = None) -> Dict:
        stmt = select(
            func.count(VendorSupply.id),
            func.coalesce(func.sum(VendorSupply.total_amount), 0),
            func.coalesce(func.sum(VendorSupply.paid_amount), 0),
            func.coalesce(func.sum(case((VendorSupply.status == SupplyStatus.RECEIVED.value, 1), else_=0)), 0),
            func.coalesce(func.sum(case((VendorSupply.status == SupplyStatus.PARTIAL.value, 1), else_=0)), 0),
            func.coalesce(func.sum(case((VendorSupply.status == SupplyStatus.PAID.value, 1), else_=0)), 0),
        )
        if vendor_id:
            stmt = stmt.where(VendorSupply.vendor_id == vendor_id)

        count, total_amount, total_paid, received, partial, paid = (await self.db.execute(stmt)).one()
        total_amount = Decimal(str(total_amount))
        total_paid = Decimal(str(total_paid))
        return {
            "total_purchases": count or 0,
            "total_amount": total_amount,
            "total_paid": total_paid,
            "total_outstanding": total_amount - total_paid,
            "received_count": int(received),
            "partial_count": int(partial),
            "paid_count": int(paid),
        }
