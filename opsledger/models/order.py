"""
Order models.

Orders are created and owned by the order-management side of the system.
The ledger core only mutates status, rider_id, current_manifest_id and the
delivery bookkeeping fields as side effects of packing, dispatch, delivery
outcomes and returns.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from opsledger.models.product import ProductVariant


class OrderStatus(str, Enum):
    """Order status enumeration."""
    INTAKE = "INTAKE"                        # Captured, not yet confirmed
    CONVERTED = "CONVERTED"                  # Confirmed, ready to pack
    READY = "READY"                          # Picked, ready to pack
    PACKED = "PACKED"                        # Stock deducted
    ASSIGNED = "ASSIGNED"                    # On an open manifest
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    HANDED_TO_COURIER = "HANDED_TO_COURIER"  # External courier, outside this core
    DELIVERED = "DELIVERED"
    FOLLOW_UP = "FOLLOW_UP"                  # Delivery attempt failed, retry later
    REJECTED = "REJECTED"                    # Refused/returned by customer, awaiting return intake
    RETURN_INITIATED = "RETURN_INITIATED"
    RETURNED = "RETURNED"                    # Return received into stock
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    COD = "COD"
    PREPAID = "PREPAID"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class Order(Base):
    """Customer order (external entity)."""
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.INTAKE.value,
        nullable=False,
        index=True,
        comment=enum_comment(OrderStatus)
    )

    payment_method: Mapped[str] = mapped_column(String(50), default=PaymentMethod.COD.value, nullable=False, comment=enum_comment(PaymentMethod))
    payment_status: Mapped[str] = mapped_column(String(50), default=PaymentStatus.PENDING.value, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Dispatch linkage
    rider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("riders.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    current_manifest_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("dispatch_manifests.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    delivery_attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_delivery_outcome: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    packed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    packed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def is_cod_due(self) -> bool:
        """COD amount still to be collected at the door."""
        return (
            self.payment_method == PaymentMethod.COD.value
            and self.payment_status != PaymentStatus.PAID.value
        )

    @property
    def item_count(self) -> int:
        return len(self.items)

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("product_variants.id", ondelete="RESTRICT"),
        nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    variant: Mapped["ProductVariant"] = relationship("ProductVariant", lazy="selectin")
