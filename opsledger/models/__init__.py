"""SQLAlchemy models. Importing this package registers every table on Base.metadata."""
from opsledger.models.product import Product, ProductVariant
from opsledger.models.inventory import StockMovement, StockMovementType
from opsledger.models.vendor import Vendor
from opsledger.models.purchase import VendorSupply, VendorSupplyItem, VendorPayment, SupplyStatus
from opsledger.models.order import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from opsledger.models.rider import (
    Rider,
    RiderStatus,
    RiderBalanceLog,
    BalanceChangeType,
    RiderSettlement,
    SettlementStatus,
)
from opsledger.models.manifest import DispatchManifest, ManifestItem, ManifestStatus, DeliveryOutcome
from opsledger.models.return_order import OrderReturn, OrderReturnItem, ReturnCondition

__all__ = [
    "Product",
    "ProductVariant",
    "StockMovement",
    "StockMovementType",
    "Vendor",
    "VendorSupply",
    "VendorSupplyItem",
    "VendorPayment",
    "SupplyStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Rider",
    "RiderStatus",
    "RiderBalanceLog",
    "BalanceChangeType",
    "RiderSettlement",
    "SettlementStatus",
    "DispatchManifest",
    "ManifestItem",
    "ManifestStatus",
    "DeliveryOutcome",
    "OrderReturn",
    "OrderReturnItem",
    "ReturnCondition",
]
