"""Return intake models. One canonical record per received return."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType

if TYPE_CHECKING:
    from opsledger.models.order import Order


class ReturnCondition(str, Enum):
    """Physical condition of a returned unit."""
    GOOD = "GOOD"        # Back into sellable stock
    DAMAGED = "DAMAGED"  # Logged, never re-enters sellable stock


class OrderReturn(Base):
    """
    Received return for one order.

    rider_id and manifest_id are copied from the manifest run the order was
    on, when there was one.
    """
    __tablename__ = "order_returns"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    return_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    rider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("riders.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    manifest_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("dispatch_manifests.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(String(50), default="RECEIVED", nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    items: Mapped[List["OrderReturnItem"]] = relationship(
        "OrderReturnItem",
        back_populates="order_return",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    order: Mapped["Order"] = relationship("Order", lazy="selectin")


class OrderReturnItem(Base):
    __tablename__ = "order_return_items"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    return_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("order_returns.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("product_variants.id", ondelete="RESTRICT"),
        nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    condition: Mapped[str] = mapped_column(String(50), nullable=False, comment=enum_comment(ReturnCondition))
    movement_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("stock_movements.id", ondelete="SET NULL"),
        nullable=True
    )

    order_return: Mapped["OrderReturn"] = relationship("OrderReturn", back_populates="items")
