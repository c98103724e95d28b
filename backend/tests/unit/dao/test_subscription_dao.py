"""
Tests for SubscriptionDAO.

WHY: The compare-and-swap writes and the partial unique index are what
keep "at most one ACTIVE subscription per user" true across instances.
These tests exercise them against a real (SQLite) database.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.base import utcnow
from basketstats.models.plan import PlanType
from basketstats.models.subscription import Subscription, SubscriptionStatus
from tests.factories import SubscriptionFactory


@pytest.mark.asyncio
class TestTransition:
    """Tests for the compare-and-swap transition."""

    async def test_transition_wins_from_expected_status(self, db_session, plans):
        sub = await SubscriptionFactory.create(db_session, plan=plans[PlanType.BASIC])
        dao = SubscriptionDAO(db_session)

        won = await dao.transition(
            sub.id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.SUSPENDED,
            suspended_reason="chargeback",
        )

        assert won is True
        refreshed = await dao.get_by_id(sub.id)
        assert refreshed.status == SubscriptionStatus.SUSPENDED
        assert refreshed.suspended_reason == "chargeback"

    async def test_transition_loses_from_unexpected_status(self, db_session, plans):
        """
        Verify a stale decision does not overwrite a moved row.

        WHY: A sweep that expired the row must not be undone by an admin
        command based on an earlier read.
        """
        sub = await SubscriptionFactory.create(
            db_session, plan=plans[PlanType.BASIC], status=SubscriptionStatus.EXPIRED
        )
        dao = SubscriptionDAO(db_session)

        won = await dao.transition(
            sub.id, [SubscriptionStatus.ACTIVE], SubscriptionStatus.CANCELLED
        )

        assert won is False
        assert (await dao.get_by_id(sub.id)).status == SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
class TestOneActivePerUserIndex:
    """Tests for the partial unique index."""

    async def test_second_active_row_rejected(self, db_session, plans):
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        with pytest.raises(IntegrityError):
            await SubscriptionFactory.create(
                db_session, user_id="u1", plan=plans[PlanType.PREMIUM]
            )

    async def test_inactive_rows_not_constrained(self, db_session, plans):
        """Verify history rows of any other status coexist with one ACTIVE row."""
        for status in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.SUSPENDED,
            SubscriptionStatus.PENDING,
            SubscriptionStatus.CANCELLED,
        ):
            await SubscriptionFactory.create(
                db_session, user_id="u1", plan=plans[PlanType.BASIC], status=status
            )
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        history = await SubscriptionDAO(db_session).list_for_user("u1")
        assert len(history) == 6

    async def test_other_users_not_constrained(self, db_session, plans):
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])
        await SubscriptionFactory.create(db_session, user_id="u2", plan=plans[PlanType.BASIC])

        assert await SubscriptionDAO(db_session).count(status=SubscriptionStatus.ACTIVE) == 2


@pytest.mark.asyncio
class TestQueries:
    """Tests for read helpers."""

    async def test_get_active_for_user(self, db_session, plans):
        await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], status=SubscriptionStatus.CANCELLED
        )
        active = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.PREMIUM]
        )

        found = await SubscriptionDAO(db_session).get_active_for_user("u1")

        assert found.id == active.id
        assert found.plan.type == PlanType.PREMIUM

    async def test_get_active_for_user_none(self, db_session, plans):
        assert await SubscriptionDAO(db_session).get_active_for_user("nobody") is None

    async def test_get_pending_checkout(self, db_session, plans):
        pending = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.PENDING,
            ref_command="SUB_u1_1",
        )
        dao = SubscriptionDAO(db_session)

        assert (await dao.get_pending_checkout("u1", "SUB_u1_1")).id == pending.id
        assert await dao.get_pending_checkout("u2", "SUB_u1_1") is None
        assert await dao.get_pending_checkout("u1", "SUB_u1_2") is None

    async def test_count_by_status_includes_zeroes(self, db_session, plans):
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        counts = await SubscriptionDAO(db_session).count_by_status()

        assert counts["ACTIVE"] == 1
        assert counts["SUSPENDED"] == 0
        assert set(counts) == {status.value for status in SubscriptionStatus}


@pytest.mark.asyncio
class TestBulkWrites:
    """Tests for the sweep helpers."""

    async def test_expire_overdue_only_touches_past_active_rows(self, db_session, plans):
        now = utcnow()
        overdue = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=now - timedelta(days=1)
        )
        current = await SubscriptionFactory.create(
            db_session, user_id="u2", plan=plans[PlanType.BASIC], end_date=now + timedelta(days=1)
        )
        perpetual = await SubscriptionFactory.create(
            db_session, user_id="u3", plan=plans[PlanType.FREE]
        )
        dao = SubscriptionDAO(db_session)

        assert await dao.expire_overdue(now) == 1
        assert await dao.expire_overdue(now) == 0

        assert (await dao.get_by_id(overdue.id)).status == SubscriptionStatus.EXPIRED
        assert (await dao.get_by_id(current.id)).status == SubscriptionStatus.ACTIVE
        assert (await dao.get_by_id(perpetual.id)).status == SubscriptionStatus.ACTIVE

    async def test_cancel_stale_pending(self, db_session, plans):
        now = utcnow()
        stale = await SubscriptionFactory.create(
            db_session,
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.PENDING,
            created_at=now - timedelta(hours=5),
        )
        fresh = await SubscriptionFactory.create(
            db_session, plan=plans[PlanType.BASIC], status=SubscriptionStatus.PENDING
        )
        dao = SubscriptionDAO(db_session)

        assert await dao.cancel_stale_pending(now - timedelta(hours=2)) == 1

        stale_row: Subscription = await dao.get_by_id(stale.id)
        assert stale_row.status == SubscriptionStatus.CANCELLED
        assert stale_row.cancelled_at is not None
        assert (await dao.get_by_id(fresh.id)).status == SubscriptionStatus.PENDING

    async def test_cancel_all_active_for_user(self, db_session, plans):
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])
        dao = SubscriptionDAO(db_session)

        cancelled = await dao.cancel_all_active_for_user("u1")

        assert cancelled == [sub.id]
        assert await dao.get_active_for_user("u1") is None
