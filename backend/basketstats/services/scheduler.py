"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the subscription background jobs.

WHY: Two jobs run without user requests:
1. Expiration sweep (ACTIVE -> EXPIRED, abandoned checkouts -> CANCELLED)
2. Optional periodic reconciliation of duplicate ACTIVE rows

HOW: Uses APScheduler's AsyncIOScheduler with an in-memory job store. Both
jobs are safe to run on every instance at once, so no distributed lock is
needed. An interval of 0 disables a job.

Example:
    # In main.py lifespan:
    await start_scheduler()
    ...
    await shutdown_scheduler()
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from basketstats.core.config import settings
from basketstats.db.session import get_session_factory
from basketstats.services.expiration_sweep import get_sweep_service
from basketstats.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "subscription_expiration_sweep"
RECONCILIATION_JOB_ID = "subscription_reconciliation"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler() -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the jobs whose interval is non-zero
    3. Starts the scheduler
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    _register_jobs(_scheduler)
    _scheduler.start()
    logger.info(f"Scheduler started with {len(_scheduler.get_jobs())} job(s)")


def _register_jobs(scheduler: AsyncIOScheduler) -> None:
    sweep_interval = settings.SUBSCRIPTION_SWEEP_INTERVAL_SECONDS
    if sweep_interval > 0:
        scheduler.add_job(
            func=get_sweep_service().run_sweep,
            trigger=IntervalTrigger(seconds=sweep_interval),
            id=SWEEP_JOB_ID,
            name="Subscription Expiration Sweep",
            replace_existing=True,
        )
        logger.info(f"Registered expiration sweep job (interval: {sweep_interval}s)")

    reconcile_interval = settings.RECONCILIATION_INTERVAL_SECONDS
    if reconcile_interval > 0:
        scheduler.add_job(
            func=run_reconciliation_now,
            trigger=IntervalTrigger(seconds=reconcile_interval),
            id=RECONCILIATION_JOB_ID,
            name="Subscription Reconciliation",
            replace_existing=True,
        )
        logger.info(f"Registered reconciliation job (interval: {reconcile_interval}s)")


async def run_reconciliation_now() -> dict:
    """Run reconciliation immediately as the system actor."""
    report = await ReconciliationService(get_session_factory()).reconcile()
    return report.to_dict()


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    WHY: Ensures running jobs complete and resources are released.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if not _scheduler.running:
        logger.info("Scheduler already stopped")
        _scheduler = None
        return

    logger.info("Shutting down scheduler...")
    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information for the health endpoint.

    Returns:
        Dict with scheduler status and job details
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in _scheduler.get_jobs()
    ]
    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
