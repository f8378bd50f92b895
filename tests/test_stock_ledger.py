"""Tests for the stock ledger: movements, direction rules, reconciliation."""
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import update

from opsledger.core.enum_utils import enum_comment
from opsledger.core.exceptions import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from opsledger.models import (
    DispatchManifest,
    Order,
    ProductVariant,
    RiderSettlement,
    StockMovement,
    StockMovementType,
)
from opsledger.services.stock_ledger_service import StockLedgerService


class TestApplyMovement:

    async def test_inward_records_before_and_after(self, db, make_variant):
        variant = await make_variant()
        ledger = StockLedgerService(db)

        result = await ledger.apply_movement(
            variant.id, 25, StockMovementType.INWARD, reference_type="purchase"
        )
        await db.commit()

        assert (result.stock_before, result.stock_after) == (0, 25)
        assert result.movement.stock_delta == 25
        assert result.movement.quantity == 25
        assert result.movement.movement_number.startswith("MOV-")
        await db.refresh(variant)
        assert variant.current_stock == 25

    async def test_outward_below_zero_raises_and_leaves_stock(self, db, make_variant):
        variant = await make_variant(stock=5)
        sku = variant.sku
        ledger = StockLedgerService(db)

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.apply_movement(variant.id, -6, StockMovementType.OUTWARD)
        await db.rollback()

        assert exc_info.value.details["sku"] == sku
        assert exc_info.value.details["available"] == 5
        await db.refresh(variant)
        assert variant.current_stock == 5

    @pytest.mark.parametrize("movement_type,delta", [
        (StockMovementType.INWARD, -1),
        (StockMovementType.OUTWARD, 3),
        (StockMovementType.DAMAGE, 2),
        (StockMovementType.ADJUSTMENT, 0),
    ])
    async def test_direction_rules(self, db, make_variant, movement_type, delta):
        variant = await make_variant(stock=10)

        with pytest.raises(ValidationError):
            await StockLedgerService(db).apply_movement(variant.id, delta, movement_type)

    async def test_unknown_variant(self, db):
        with pytest.raises(NotFoundError):
            await StockLedgerService(db).apply_movement(uuid.uuid4(), 1, StockMovementType.INWARD)

    async def test_damage_logs_without_changing_stock(self, db, make_variant):
        variant = await make_variant(stock=7)

        result = await StockLedgerService(db).log_damage(variant.id, 3, reference_type="return")
        await db.commit()

        assert result.movement.movement_type == StockMovementType.DAMAGE.value
        assert result.movement.quantity == 3
        assert result.movement.stock_delta == 0
        assert result.stock_before == result.stock_after == 7

    async def test_stale_stock_write_is_a_conflict(self, db, make_variant):
        variant = await make_variant(stock=10)

        with pytest.raises(ConflictError):
            await StockLedgerService(db)._write_stock(variant.id, expected=9, new_stock=8)


class TestAdjustStock:

    async def test_reason_required(self, db, make_variant):
        variant = await make_variant()

        with pytest.raises(ValidationError):
            await StockLedgerService(db).adjust_stock(variant.id, 5, "  ")

    async def test_negative_adjustment(self, db, make_variant, user_id):
        variant = await make_variant(stock=10)

        result = await StockLedgerService(db).adjust_stock(variant.id, -4, "Cycle count", created_by=user_id)

        assert result.stock_after == 6
        assert result.movement.movement_type == StockMovementType.ADJUSTMENT.value
        assert result.movement.created_by == user_id


class TestReconciliation:

    async def test_in_sync_after_mixed_movements(self, db, make_variant):
        variant = await make_variant(stock=40)
        ledger = StockLedgerService(db)
        await ledger.apply_movement(variant.id, -15, StockMovementType.OUTWARD)
        await ledger.apply_movement(variant.id, 5, StockMovementType.INWARD)
        await ledger.log_damage(variant.id, 2)
        await db.commit()

        report = await ledger.recompute_stock(variant.id)

        assert report.cached_stock == report.ledger_stock == 30
        assert report.in_sync

    async def test_drift_detected_and_repaired(self, db, make_variant):
        variant = await make_variant(stock=12)
        other = await make_variant(stock=3)
        # Simulate an out-of-band write that bypassed the ledger
        await db.execute(
            update(ProductVariant).where(ProductVariant.id == variant.id).values(current_stock=20)
        )
        await db.commit()
        ledger = StockLedgerService(db)

        reports = await ledger.reconcile_all(repair=False)
        drifted = [r for r in reports if not r.in_sync]
        assert [r.variant_id for r in drifted] == [variant.id]
        assert drifted[0].difference == 8
        assert not drifted[0].repaired

        reports = await ledger.reconcile_all(repair=True)
        assert [r.repaired for r in reports if not r.in_sync] == [True]

        await db.refresh(variant)
        await db.refresh(other)
        assert variant.current_stock == 12
        assert other.current_stock == 3
        assert all(r.in_sync for r in await ledger.reconcile_all())


class TestQueries:

    async def test_movements_filtered_by_variant(self, db, make_variant):
        first = await make_variant(stock=5)
        second = await make_variant(stock=8)
        await StockLedgerService(db).adjust_stock(first.id, 2, "Found")

        items, total = await StockLedgerService(db).get_movements(variant_id=first.id)

        assert total == 2
        assert {m.variant_id for m in items} == {first.id}
        assert second.id not in {m.variant_id for m in items}

    async def test_valuation_and_low_stock(self, db, make_variant):
        await make_variant(stock=4, cost_price=Decimal("10.00"))
        await make_variant(stock=50, cost_price=Decimal("2.50"))
        ledger = StockLedgerService(db)

        valuation = await ledger.get_inventory_valuation()
        low = await ledger.get_low_stock_alerts(threshold=10)

        assert valuation["total_units"] == 54
        assert valuation["total_value"] == Decimal("165.00")
        assert [v.current_stock for v in low] == [4]


class TestStatusColumnComments:

    @pytest.mark.parametrize("column, expected", [
        (StockMovement.__table__.c.movement_type, "INWARD"),
        (Order.__table__.c.status, "RETURN_INITIATED"),
        (DispatchManifest.__table__.c.status, "PARTIALLY_SETTLED"),
        (RiderSettlement.__table__.c.status, "VERIFIED"),
    ])
    def test_comment_lists_every_value(self, column, expected):
        assert expected in column.comment.split(", ")

    def test_comment_tracks_enum(self):
        assert StockMovement.__table__.c.movement_type.comment == enum_comment(StockMovementType)
