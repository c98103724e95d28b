"""
Scheduler Tests.

WHY: A zero interval must disable a job, and start/shutdown must be safe
to call twice from the application lifespan.
"""

import pytest

from basketstats.core.config import settings
from basketstats.services import scheduler


@pytest.mark.asyncio
class TestScheduler:
    async def test_registers_configured_jobs(self, monkeypatch):
        monkeypatch.setattr(settings, "SUBSCRIPTION_SWEEP_INTERVAL_SECONDS", 300)
        monkeypatch.setattr(settings, "RECONCILIATION_INTERVAL_SECONDS", 0)

        await scheduler.start_scheduler()
        try:
            status = scheduler.get_scheduler_status()
            assert status["running"] is True
            assert [job["id"] for job in status["jobs"]] == [scheduler.SWEEP_JOB_ID]

            await scheduler.start_scheduler()
            assert len(scheduler.get_scheduler().get_jobs()) == 1
        finally:
            await scheduler.shutdown_scheduler()

        assert scheduler.get_scheduler() is None
        assert scheduler.get_scheduler_status()["running"] is False

    async def test_both_jobs(self, monkeypatch):
        monkeypatch.setattr(settings, "SUBSCRIPTION_SWEEP_INTERVAL_SECONDS", 300)
        monkeypatch.setattr(settings, "RECONCILIATION_INTERVAL_SECONDS", 3600)

        await scheduler.start_scheduler()
        try:
            job_ids = {job.id for job in scheduler.get_scheduler().get_jobs()}
        finally:
            await scheduler.shutdown_scheduler()

        assert job_ids == {scheduler.SWEEP_JOB_ID, scheduler.RECONCILIATION_JOB_ID}

    async def test_shutdown_when_not_started(self):
        await scheduler.shutdown_scheduler()

        assert scheduler.get_scheduler() is None
