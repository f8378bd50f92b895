"""Stock ledger model."""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType, MoneyType


class StockMovementType(str, Enum):
    """Stock movement type enum."""
    INWARD = "INWARD"  # Purchase receipt, good-condition return
    OUTWARD = "OUTWARD"  # Pack/dispatch deduction
    DAMAGE = "DAMAGE"  # Damaged units (zero stock delta on damaged returns)
    ADJUSTMENT = "ADJUSTMENT"  # Manual correction, either sign


class StockMovement(Base):
    """
    Append-only stock ledger.

    quantity is the number of units affected (always positive); stock_delta is
    the signed change applied to the variant's current_stock. For every
    variant, current_stock == SUM(stock_delta).
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        CheckConstraint("stock_after = stock_before + stock_delta", name="ck_stock_movements_balance"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    # Reference
    movement_number = Column(String(50), unique=True, nullable=False, index=True)
    movement_type = Column(
        String(50), nullable=False, index=True,
        comment=enum_comment(StockMovementType)
    )

    variant_id = Column(UUIDType, ForeignKey("product_variants.id"), nullable=False, index=True)

    # Quantity
    quantity = Column(Integer, nullable=False)
    stock_delta = Column(Integer, nullable=False)

    # Stock levels around the movement
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)

    # Related documents
    reference_type = Column(String(50), index=True)  # purchase, order, return, adjustment
    reference_id = Column(UUIDType, index=True)
    reference_number = Column(String(100))

    unit_cost = Column(MoneyType)
    reason = Column(Text)

    created_by = Column(UUIDType)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    variant = relationship("ProductVariant", lazy="selectin")

    def __repr__(self):
        return f"<StockMovement {self.movement_number} {self.movement_type} {self.stock_delta:+d}>"
