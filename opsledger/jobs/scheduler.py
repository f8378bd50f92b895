"""
APScheduler configuration.

Only the stock reconciliation audit is scheduled, and only when
STOCK_RECONCILIATION_JOB_ENABLED is set. The ledger core itself never
depends on the scheduler running.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from opsledger.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


def start_scheduler():
    """Register enabled jobs and start the scheduler."""
    if not settings.STOCK_RECONCILIATION_JOB_ENABLED:
        logger.info("Stock reconciliation job disabled; scheduler not started")
        return

    if not scheduler.running:
        from opsledger.jobs.stock_reconciliation import audit_stock_ledger

        # Read-only drift audit; repairs are an explicit API action
        scheduler.add_job(
            audit_stock_ledger,
            'interval',
            minutes=settings.STOCK_RECONCILIATION_INTERVAL_MINUTES,
            id='audit_stock_ledger',
            name='Audit cached stock against the ledger',
            replace_existing=True,
        )

        scheduler.start()
        logger.info(
            f"Background scheduler started: stock audit every "
            f"{settings.STOCK_RECONCILIATION_INTERVAL_MINUTES} minute(s)"
        )


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler shutdown")
