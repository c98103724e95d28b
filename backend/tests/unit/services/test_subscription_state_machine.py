"""
Subscription State Machine Tests.

WHAT: Unit tests for SubscriptionStateMachine against a real database.

WHY: Every status change in the system goes through this class. These tests
pin down:
- Activation supersedes the previous ACTIVE row in the same transaction
- Paying again for the current plan restarts the period from now
- Admin transitions are only allowed from their source statuses
- Restore refuses to create a second ACTIVE row
- Lazy and bulk expiration are idempotent
"""

from datetime import datetime, timedelta

import pytest

from basketstats.core.exceptions import (
    ConflictingActiveSubscription,
    InvalidSubscriptionTransition,
    PlanNotFound,
    SubscriptionNotFound,
)
from basketstats.dao.plan import PlanDAO
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.plan import PlanType
from basketstats.models.subscription import SubscriptionStatus
from basketstats.services.subscription_state_machine import (
    ADMIN_PAYMENT_METHOD,
    SubscriptionStateMachine,
)
from tests.factories import SubscriptionFactory

NOW = datetime(2026, 3, 1, 9, 0, 0)


def clock():
    return NOW


async def _statuses(session_factory, user_id):
    async with session_factory() as session:
        rows = await SubscriptionDAO(session).list_for_user(user_id)
        return {row.id: row.status for row in rows}


@pytest.mark.asyncio
class TestActivate:
    """Tests for activate()."""

    async def test_first_activation_creates_active_row(self, session_factory, plans):
        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.BASIC, transaction_id="tok_1", payment_method="Wave"
            )
            await session.commit()

        sub = result.subscription
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.start_date == NOW
        assert sub.end_date == NOW + timedelta(days=30)
        assert sub.transaction_id == "tok_1"
        assert sub.payment_method == "Wave"
        assert result.superseded_ids == []

    async def test_upgrade_supersedes_previous_plan(self, session_factory, db_session, plans):
        """
        Verify BASIC -> PREMIUM cancels the BASIC row.

        WHY: Cancel-then-activate in one transaction keeps exactly one
        ACTIVE row visible at all times.
        """
        basic = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            start_date=NOW - timedelta(days=5),
        )

        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.PREMIUM, transaction_id="tok_2"
            )
            await session.commit()

        assert result.superseded_ids == [basic.id]
        assert result.subscription.end_date == NOW + timedelta(days=30)

        statuses = await _statuses(session_factory, "u1")
        assert statuses[basic.id] == SubscriptionStatus.CANCELLED
        assert statuses[result.subscription.id] == SubscriptionStatus.ACTIVE

    async def test_same_plan_payment_restarts_period_from_now(
        self, session_factory, db_session, plans
    ):
        """
        Verify paying again for the current plan ends duration days from now.

        WHY: Days left on the previous row are not carried over.
        """
        current_end = NOW + timedelta(days=10)
        current = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=current_end
        )

        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.BASIC, transaction_id="tok_3"
            )
            await session.commit()

        assert result.superseded_ids == [current.id]
        assert result.subscription.start_date == NOW
        assert result.subscription.end_date == NOW + timedelta(days=30)

    async def test_overdue_row_expires_before_activation(
        self, session_factory, db_session, plans
    ):
        overdue = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            end_date=NOW - timedelta(days=1),
        )

        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.BASIC, transaction_id="tok_4"
            )
            await session.commit()

        assert result.expired_ids == [overdue.id]
        assert result.subscription.end_date == NOW + timedelta(days=30)
        assert (await _statuses(session_factory, "u1"))[overdue.id] == SubscriptionStatus.EXPIRED

    async def test_promotes_pending_checkout(self, session_factory, db_session, plans):
        pending = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.PREMIUM],
            status=SubscriptionStatus.PENDING,
            ref_command="SUB_u1_1",
        )

        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.PREMIUM, transaction_id="tok_5", ref_command="SUB_u1_1"
            )
            await session.commit()

        assert result.promoted_pending is True
        assert result.subscription.id == pending.id
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.transaction_id == "tok_5"

    async def test_free_plan_is_perpetual(self, session_factory, plans):
        async with session_factory() as session:
            result = await SubscriptionStateMachine(session, clock=clock).activate(
                "u1", PlanType.FREE, payment_method=ADMIN_PAYMENT_METHOD
            )
            await session.commit()

        assert result.subscription.end_date is None

    async def test_unknown_plan_writes_nothing(self, session_factory, db_session, plans):
        """Verify PlanNotFound aborts before the current row is superseded."""
        current = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC]
        )
        async with session_factory() as session:
            await PlanDAO(session).update(plans[PlanType.PREMIUM].id, is_active=False)
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(PlanNotFound):
                await SubscriptionStateMachine(session, clock=clock).activate(
                    "u1", PlanType.PREMIUM, transaction_id="tok_6"
                )

        assert (await _statuses(session_factory, "u1")) == {
            current.id: SubscriptionStatus.ACTIVE
        }


@pytest.mark.asyncio
class TestCheckoutTransitions:
    async def test_start_and_cancel_checkout(self, session_factory, plans):
        async with session_factory() as session:
            machine = SubscriptionStateMachine(session, clock=clock)
            pending = await machine.start_checkout("u1", plans[PlanType.BASIC], "SUB_u1_9")
            await session.commit()

        assert pending.status == SubscriptionStatus.PENDING
        assert pending.end_date is None

        async with session_factory() as session:
            cancelled = await SubscriptionStateMachine(session, clock=clock).cancel_checkout(
                "u1", "SUB_u1_9"
            )
            await session.commit()

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == NOW

    async def test_cancel_unknown_checkout_is_noop(self, session_factory, plans):
        async with session_factory() as session:
            assert await SubscriptionStateMachine(session).cancel_checkout("u1", "nope") is None


@pytest.mark.asyncio
class TestAdminTransitions:
    """Tests for suspend / restore / cancel guards."""

    async def test_suspend_then_restore(self, session_factory, db_session, plans):
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        async with session_factory() as session:
            suspended = await SubscriptionStateMachine(session, clock=clock).suspend(
                sub.id, reason="chargeback"
            )
            await session.commit()

        assert suspended.status == SubscriptionStatus.SUSPENDED
        assert suspended.suspended_at == NOW
        assert suspended.suspended_reason == "chargeback"

        async with session_factory() as session:
            restored = await SubscriptionStateMachine(session, clock=clock).restore(sub.id)
            await session.commit()

        assert restored.status == SubscriptionStatus.ACTIVE
        assert restored.restored_at == NOW

    async def test_restore_refused_when_another_row_is_active(
        self, session_factory, db_session, plans
    ):
        """
        Verify restoring cannot create a second ACTIVE row.

        WHY: A payment may activate a new plan while the old one is
        suspended. Both rows must stay as they are.
        """
        suspended = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.SUSPENDED,
        )
        active = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.PREMIUM]
        )

        async with session_factory() as session:
            with pytest.raises(ConflictingActiveSubscription):
                await SubscriptionStateMachine(session).restore(suspended.id)

        assert await _statuses(session_factory, "u1") == {
            suspended.id: SubscriptionStatus.SUSPENDED,
            active.id: SubscriptionStatus.ACTIVE,
        }

    async def test_restore_refused_after_end_date(self, session_factory, db_session, plans):
        """
        Verify a subscription that ran out while suspended is not brought back.

        WHY: Restoring it would hand out access the user no longer paid for.
        """
        suspended = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.SUSPENDED,
            start_date=NOW - timedelta(days=40),
            end_date=NOW - timedelta(days=10),
        )

        async with session_factory() as session:
            with pytest.raises(InvalidSubscriptionTransition) as exc_info:
                await SubscriptionStateMachine(session, clock=clock).restore(suspended.id)

        assert exc_info.value.status_code == 409
        assert await _statuses(session_factory, "u1") == {
            suspended.id: SubscriptionStatus.SUSPENDED
        }

    @pytest.mark.parametrize(
        "status,command",
        [
            (SubscriptionStatus.CANCELLED, "restore"),
            (SubscriptionStatus.EXPIRED, "restore"),
            (SubscriptionStatus.ACTIVE, "restore"),
            (SubscriptionStatus.SUSPENDED, "suspend"),
            (SubscriptionStatus.CANCELLED, "suspend"),
            (SubscriptionStatus.EXPIRED, "cancel"),
            (SubscriptionStatus.CANCELLED, "cancel"),
        ],
    )
    async def test_invalid_transitions(self, session_factory, db_session, plans, status, command):
        sub = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], status=status
        )

        async with session_factory() as session:
            machine = SubscriptionStateMachine(session)
            with pytest.raises(InvalidSubscriptionTransition):
                if command == "suspend":
                    await machine.suspend(sub.id, reason="x")
                else:
                    await getattr(machine, command)(sub.id)

    async def test_cancel_keeps_history(self, session_factory, db_session, plans):
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        async with session_factory() as session:
            cancelled = await SubscriptionStateMachine(session, clock=clock).cancel(sub.id)
            await session.commit()

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert len(await _statuses(session_factory, "u1")) == 1

    async def test_unknown_subscription(self, session_factory, plans):
        async with session_factory() as session:
            with pytest.raises(SubscriptionNotFound):
                await SubscriptionStateMachine(session).suspend("missing", reason="x")


@pytest.mark.asyncio
class TestExpiration:
    async def test_expire_if_overdue(self, session_factory, db_session, plans):
        sub = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=NOW - timedelta(hours=1)
        )

        async with session_factory() as session:
            machine = SubscriptionStateMachine(session, clock=clock)
            assert await machine.expire_if_overdue(sub) is True
            await session.commit()

        assert (await _statuses(session_factory, "u1"))[sub.id] == SubscriptionStatus.EXPIRED

    async def test_expire_if_overdue_leaves_current_rows(self, session_factory, db_session, plans):
        sub = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=NOW + timedelta(hours=1)
        )

        async with session_factory() as session:
            machine = SubscriptionStateMachine(session, clock=clock)
            assert await machine.expire_if_overdue(sub) is False

    async def test_expire_overdue_is_idempotent(self, session_factory, db_session, plans):
        await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], end_date=NOW - timedelta(days=2)
        )

        async with session_factory() as session:
            machine = SubscriptionStateMachine(session, clock=clock)
            assert await machine.expire_overdue() == 1
            assert await machine.expire_overdue() == 0
            await session.commit()
