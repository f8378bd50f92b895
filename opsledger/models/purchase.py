"""Purchase bill (vendor supply) models."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String, Boolean, Date, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.core.enum_utils import enum_comment
from opsledger.database import Base
from opsledger.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from opsledger.models.vendor import Vendor
    from opsledger.models.product import ProductVariant


class SupplyStatus(str, Enum):
    """Purchase bill payment status."""
    RECEIVED = "RECEIVED"  # Goods in, nothing paid
    PARTIAL = "PARTIAL"    # Partly paid
    PAID = "PAID"          # Fully paid


class VendorSupply(Base):
    """Purchase bill. The only document that injects new stock."""
    __tablename__ = "vendor_supplies"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    supply_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="SUP-YYYY-NNNNNN"
    )

    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("vendors.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=SupplyStatus.RECEIVED.value,
        nullable=False,
        index=True,
        comment=enum_comment(SupplyStatus)
    )

    total_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

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

    vendor: Mapped["Vendor"] = relationship("Vendor", lazy="selectin")
    items: Mapped[List["VendorSupplyItem"]] = relationship(
        "VendorSupplyItem",
        back_populates="supply",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="VendorSupplyItem.line_number"
    )
    payments: Mapped[List["VendorPayment"]] = relationship(
        "VendorPayment",
        back_populates="supply",
        lazy="selectin"
    )

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.paid_amount

    def __repr__(self) -> str:
        return f"<VendorSupply(number='{self.supply_number}', status='{self.status}')>"


class VendorSupplyItem(Base):
    """Line on a purchase bill."""
    __tablename__ = "vendor_supply_items"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    supply_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("vendor_supplies.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("product_variants.id", ondelete="RESTRICT"),
        nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    # Set once the ledger movement for this line is committed
    stock_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stock_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    supply: Mapped["VendorSupply"] = relationship("VendorSupply", back_populates="items")
    variant: Mapped["ProductVariant"] = relationship("ProductVariant", lazy="selectin")


class VendorPayment(Base):
    """Payment made against a purchase bill."""
    __tablename__ = "vendor_payments"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    supply_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("vendor_supplies.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("vendors.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(50), nullable=False, comment="CASH, BANK, UPI, CHEQUE")
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    supply: Mapped["VendorSupply"] = relationship("VendorSupply", back_populates="payments")
