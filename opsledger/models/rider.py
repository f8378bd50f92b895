"""Delivery rider models: rider, balance audit log and cash settlements."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from opsledger.models.manifest import DispatchManifest


class RiderStatus(str, Enum):
    """Rider duty status."""
    AVAILABLE = "AVAILABLE"
    ON_DELIVERY = "ON_DELIVERY"
    OFF_DUTY = "OFF_DUTY"


class BalanceChangeType(str, Enum):
    """Reason for a rider cash balance change."""
    COD_COLLECTION = "COD_COLLECTION"
    SETTLEMENT = "SETTLEMENT"


class SettlementStatus(str, Enum):
    """Rider settlement status."""
    PENDING = "PENDING"    # Deposit recorded, awaiting verification
    SETTLED = "SETTLED"    # Deposit recorded against a manifest run
    VERIFIED = "VERIFIED"  # Confirmed by accounts (terminal)


class Rider(Base):
    """
    Delivery rider.

    current_cash_balance is the cash the rider currently holds and owes the
    business. It rises with COD collections and falls only through settlements.
    """
    __tablename__ = "riders"
    __table_args__ = (
        CheckConstraint("current_cash_balance >= 0", name="ck_riders_cash_balance_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    rider_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=RiderStatus.AVAILABLE.value,
        nullable=False,
        comment=enum_comment(RiderStatus)
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    current_cash_balance: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    # Cumulative counters
    total_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    returned_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

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

    def __repr__(self) -> str:
        return f"<Rider(code='{self.rider_code}', balance={self.current_cash_balance})>"


class RiderBalanceLog(Base):
    """Audit trail of rider cash balance changes. Secondary to riders.current_cash_balance."""
    __tablename__ = "rider_balance_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    rider_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("riders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    change_type: Mapped[str] = mapped_column(String(50), nullable=False, comment=enum_comment(BalanceChangeType))
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, comment="Signed change")
    balance_before: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )


class RiderSettlement(Base):
    """Cash deposit by a rider, reducing their held balance."""
    __tablename__ = "rider_settlements"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    settlement_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="STL-YYYYMMDD-NNNN"
    )
    rider_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("riders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    manifest_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("dispatch_manifests.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    settlement_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    total_cod_collected: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    amount_deposited: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    payment_method: Mapped[str] = mapped_column(String(50), default="CASH", nullable=False)
    deposit_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=SettlementStatus.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(SettlementStatus)
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    rider: Mapped["Rider"] = relationship("Rider", lazy="selectin")

    def __repr__(self) -> str:
        return f"<RiderSettlement(number='{self.settlement_number}', amount={self.amount_deposited})>"
