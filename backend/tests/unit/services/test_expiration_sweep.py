"""
Expiration Sweep Tests.

WHY: The sweep runs on every instance. It must expire only overdue ACTIVE
rows, close only stale checkouts, and be harmless when run repeatedly.
"""

from datetime import timedelta

import pytest

from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.base import utcnow
from basketstats.models.plan import PlanType
from basketstats.models.subscription import SubscriptionStatus
from basketstats.services.expiration_sweep import ExpirationSweepService
from tests.factories import SubscriptionFactory


@pytest.mark.asyncio
class TestRunSweep:
    async def test_sweep(self, session_factory, db_session, plans):
        now = utcnow()
        overdue = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=now - timedelta(days=1)
        )
        current = await SubscriptionFactory.create(
            db_session, user_id="u2", plan=plans[PlanType.BASIC], end_date=now + timedelta(days=1)
        )
        stale_checkout = await SubscriptionFactory.create(
            db_session,
            user_id="u3",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.PENDING,
            created_at=now - timedelta(hours=3),
        )
        fresh_checkout = await SubscriptionFactory.create(
            db_session,
            user_id="u4",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.PENDING,
        )
        service = ExpirationSweepService(session_factory, pending_ttl=timedelta(hours=2))

        stats = await service.run_sweep()

        assert stats == {"expired": 1, "abandoned_checkouts": 1}
        async with session_factory() as session:
            dao = SubscriptionDAO(session)
            assert (await dao.get_by_id(overdue.id)).status == SubscriptionStatus.EXPIRED
            assert (await dao.get_by_id(current.id)).status == SubscriptionStatus.ACTIVE
            assert (await dao.get_by_id(stale_checkout.id)).status == SubscriptionStatus.CANCELLED
            assert (await dao.get_by_id(fresh_checkout.id)).status == SubscriptionStatus.PENDING

    async def test_second_run_is_noop(self, session_factory, db_session, plans):
        await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            end_date=utcnow() - timedelta(days=1),
        )
        service = ExpirationSweepService(session_factory)

        await service.run_sweep()

        assert await service.run_sweep() == {"expired": 0, "abandoned_checkouts": 0}

    async def test_sweep_clock_injected(self, session_factory, db_session, plans):
        """Verify rows are judged against the injected clock."""
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])
        later = sub.end_date + timedelta(seconds=1)

        stats = await ExpirationSweepService(session_factory, clock=lambda: later).run_sweep()

        assert stats["expired"] == 1
