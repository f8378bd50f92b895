"""Dispatch manifest models for rider delivery runs."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from opsledger.models.order import Order
    from opsledger.models.rider import Rider


class ManifestStatus(str, Enum):
    """Manifest status enumeration."""
    OPEN = "OPEN"                              # Orders assigned, not yet left the hub
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"      # Rider dispatched
    PARTIALLY_SETTLED = "PARTIALLY_SETTLED"    # Cash deposited, some outcomes still pending
    SETTLED = "SETTLED"                        # All outcomes recorded and cash deposited
    CANCELLED = "CANCELLED"


class DeliveryOutcome(str, Enum):
    """Per-order delivery outcome on a manifest."""
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    PARTIAL_DELIVERY = "PARTIAL_DELIVERY"
    CUSTOMER_REFUSED = "CUSTOMER_REFUSED"
    CUSTOMER_UNAVAILABLE = "CUSTOMER_UNAVAILABLE"
    WRONG_ADDRESS = "WRONG_ADDRESS"
    RESCHEDULED = "RESCHEDULED"
    RETURNED = "RETURNED"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


class DispatchManifest(Base):
    """
    Manifest model grouping packed orders for one rider run.

    Created once and never deleted; only rescheduling shrinks its order set.
    """
    __tablename__ = "dispatch_manifests"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    manifest_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Readable run id e.g., RUN-240115-001"
    )

    rider_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("riders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    zone_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=ManifestStatus.OPEN.value,
        nullable=False,
        index=True,
        comment=enum_comment(ManifestStatus)
    )

    # Counts
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delivered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    returned_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rescheduled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Cash
    total_cod_expected: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    total_cod_collected: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    cash_received: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    settlement_variance: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    settlement_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    dispatched_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    rider: Mapped["Rider"] = relationship("Rider", lazy="selectin")
    items: Mapped[List["ManifestItem"]] = relationship(
        "ManifestItem",
        back_populates="manifest",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ManifestItem.sequence_number"
    )

    @property
    def pending_count(self) -> int:
        return sum(1 for item in self.items if item.outcome == DeliveryOutcome.PENDING.value)

    def __repr__(self) -> str:
        return f"<DispatchManifest(number='{self.manifest_number}', status='{self.status}')>"


class ManifestItem(Base):
    """One order on a manifest, with its delivery outcome."""
    __tablename__ = "manifest_items"
    __table_args__ = (
        UniqueConstraint("manifest_id", "order_id", name="uq_manifest_items_manifest_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    manifest_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("dispatch_manifests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    outcome: Mapped[str] = mapped_column(
        String(50),
        default=DeliveryOutcome.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(DeliveryOutcome)
    )
    outcome_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recorded_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    cod_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    cod_collected: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    manifest: Mapped["DispatchManifest"] = relationship("DispatchManifest", back_populates="items")
    order: Mapped["Order"] = relationship("Order", lazy="selectin")
