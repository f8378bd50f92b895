"""Tests for the background stock audit job."""
from contextlib import asynccontextmanager

from sqlalchemy import update

from opsledger.jobs import scheduler as scheduler_module
from opsledger.jobs import stock_reconciliation
from opsledger.models import ProductVariant


async def test_audit_reports_drift_without_repairing(db, session_factory, make_variant, monkeypatch):
    variant = await make_variant(stock=6)
    await make_variant(stock=2)
    await db.execute(update(ProductVariant).where(ProductVariant.id == variant.id).values(current_stock=9))
    await db.commit()

    @asynccontextmanager
    async def test_session():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(stock_reconciliation, "get_db_session", test_session)

    summary = await stock_reconciliation.audit_stock_ledger()

    assert summary == {"checked": 2, "drifted": 1}
    await db.refresh(variant)
    assert variant.current_stock == 9


def test_scheduler_stays_off_when_disabled(monkeypatch):
    monkeypatch.setattr(scheduler_module.settings, "STOCK_RECONCILIATION_JOB_ENABLED", False)

    scheduler_module.start_scheduler()

    assert not scheduler_module.scheduler.running
    assert scheduler_module.scheduler.get_jobs() == []
