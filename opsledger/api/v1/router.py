from fastapi import APIRouter

from opsledger.api.v1.endpoints import (
    # Stock Ledger
    inventory,
    # Vendor Purchases
    purchases,
    # Pack/Deduct Gate
    packing,
    # Rider Dispatch
    manifests,
    # Return Intake
    returns,
    # Rider Cash Settlement
    settlements,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")


# ==================== STOCK LEDGER ====================
api_router.include_router(
    inventory.router,
    prefix="/inventory",
    tags=["Inventory"]
)

# ==================== PURCHASE INTAKE ====================
api_router.include_router(
    purchases.router,
    prefix="/purchases",
    tags=["Purchases"]
)

# ==================== FULFILLMENT ====================
api_router.include_router(
    packing.router,
    prefix="/packing",
    tags=["Packing"]
)
api_router.include_router(
    manifests.router,
    prefix="/manifests",
    tags=["Manifests"]
)
api_router.include_router(
    returns.router,
    prefix="/returns",
    tags=["Returns"]
)

# ==================== RIDER CASH ====================
api_router.include_router(
    settlements.router,
    prefix="/settlements",
    tags=["Settlements"]
)
