"""
Test configuration and fixtures for pytest tests.
Provides an isolated in-memory SQLite database per test.
"""
import os

# Must be set before opsledger.config is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STOCK_RECONCILIATION_JOB_ENABLED"] = "false"

import uuid
from decimal import Decimal
from typing import Iterable, Optional, Tuple

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from opsledger.database import Base, get_db
from opsledger.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    ProductVariant,
    Rider,
    Vendor,
)
from opsledger.services.packing_service import PackingService
from opsledger.services.stock_ledger_service import StockLedgerService


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def user_id():
    return uuid.uuid4()


# ==================== FACTORIES ====================

@pytest.fixture
def make_variant(db):
    """Create a variant; opening stock goes through the ledger as an adjustment."""
    counter = {"n": 0}

    async def _make(stock: int = 0, sku: Optional[str] = None, cost_price: Decimal = Decimal("100.00")):
        counter["n"] += 1
        product = Product(name=f"Product {counter['n']}")
        variant = ProductVariant(
            product=product,
            sku=sku or f"SKU-{counter['n']:03d}",
            name=f"Variant {counter['n']}",
            current_stock=0,
            cost_price=cost_price,
            selling_price=cost_price * 2,
        )
        db.add_all([product, variant])
        await db.commit()

        if stock:
            await StockLedgerService(db).adjust_stock(variant.id, stock, "Opening stock")
            await db.refresh(variant)
        return variant

    return _make


@pytest.fixture
def make_vendor(db):
    async def _make(name: str = "Acme Supplies", is_active: bool = True):
        vendor = Vendor(name=name, is_active=is_active, balance=Decimal("0"))
        db.add(vendor)
        await db.commit()
        return vendor

    return _make


@pytest.fixture
def make_rider(db):
    counter = {"n": 0}

    async def _make(balance: Decimal = Decimal("0"), is_active: bool = True):
        counter["n"] += 1
        rider = Rider(
            rider_code=f"RDR-{counter['n']:03d}",
            full_name=f"Rider {counter['n']}",
            phone="9000000000",
            is_active=is_active,
            current_cash_balance=balance,
        )
        db.add(rider)
        await db.commit()
        return rider

    return _make


@pytest.fixture
def make_order(db):
    """Create an order from (variant, quantity) lines."""
    counter = {"n": 0}

    async def _make(
        lines: Iterable[Tuple[ProductVariant, int]],
        total_amount: Decimal = Decimal("500.00"),
        status: str = OrderStatus.CONVERTED.value,
        payment_method: str = PaymentMethod.COD.value,
    ):
        counter["n"] += 1
        order = Order(
            order_number=f"ORD-{counter['n']:05d}",
            status=status,
            payment_method=payment_method,
            total_amount=total_amount,
            customer_name=f"Customer {counter['n']}",
            customer_city="Pune",
        )
        for variant, quantity in lines:
            order.items.append(OrderItem(variant_id=variant.id, quantity=quantity, unit_price=variant.selling_price))
        db.add(order)
        await db.commit()
        return order

    return _make


@pytest.fixture
def make_packed_order(db, make_order):
    """Create an order and push it through the pack gate."""
    async def _make(lines, **kwargs):
        order = await make_order(lines, **kwargs)
        await PackingService(db).pack_order(order.id)
        await db.refresh(order)
        return order

    return _make


# ==================== HTTP CLIENT ====================

@pytest.fixture
async def client(session_factory):
    from opsledger.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
