"""
Integration tests for Admin API.

WHAT: Tests for the subscription support and catalog endpoints.

WHY: Admin endpoints change user access without a payment behind them:
1. The admin token must guard every endpoint
2. Every command must respect the lifecycle rules
3. Every mutation must leave an audit row naming the operator

HOW: Uses pytest-asyncio with AsyncClient for HTTP testing.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import text

from basketstats.core.config import settings
from basketstats.dao.audit_log import AuditLogDAO
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.audit_log import AuditAction
from basketstats.models.base import utcnow
from basketstats.models.plan import PlanType
from basketstats.models.subscription import SubscriptionStatus
from basketstats.services.notification_service import NotificationEvent
from tests.factories import SubscriptionFactory

ADMIN_URL = "/api/admin/subscriptions"


class TestAdminAuthentication:
    """The admin token gate."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient):
        response = await client.get(f"{ADMIN_URL}/stats")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token(self, client: AsyncClient):
        response = await client.get(f"{ADMIN_URL}/stats", headers={"X-Admin-Token": "nope"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unconfigured_surface_is_closed(
        self, client: AsyncClient, admin_headers, monkeypatch
    ):
        """
        Test an unset ADMIN_API_TOKEN closes the admin surface.

        WHY: A missing deployment secret must never open the admin API.
        """
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", None)

        response = await client.get(f"{ADMIN_URL}/stats", headers=admin_headers)

        assert response.status_code == 403


class TestSubscriptionCommands:
    """Suspend, restore, cancel and force-activate."""

    @pytest.mark.asyncio
    async def test_suspend_and_restore(
        self, client: AsyncClient, session_factory, db_session, plans, admin_headers, notifier
    ):
        """
        Test suspend then restore round trip through the API.

        WHY: This is the chargeback dispute flow used by support.
        """
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        response = await client.post(
            f"{ADMIN_URL}/{sub.id}/suspend", json={"reason": "chargeback"}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUSPENDED"
        assert data["suspended_reason"] == "chargeback"
        assert notifier.send_safe.call_args.args[0].event == NotificationEvent.SUBSCRIPTION_SUSPENDED

        response = await client.post(f"{ADMIN_URL}/{sub.id}/restore", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ACTIVE"
        async with session_factory() as session:
            entries = await AuditLogDAO(session).get_by_subscription(sub.id)
        assert {entry.action for entry in entries} == {
            AuditAction.SUBSCRIPTION_SUSPENDED,
            AuditAction.SUBSCRIPTION_RESTORED,
        }
        assert all(entry.actor == "ops@basketstats.test" for entry in entries)
        assert all(entry.request_id for entry in entries)

    @pytest.mark.asyncio
    async def test_suspend_requires_reason(
        self, client: AsyncClient, db_session, plans, admin_headers
    ):
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        response = await client.post(f"{ADMIN_URL}/{sub.id}/suspend", json={}, headers=admin_headers)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_suspend_unknown_subscription(self, client: AsyncClient, admin_headers):
        response = await client.post(
            f"{ADMIN_URL}/does-not-exist/suspend", json={"reason": "x"}, headers=admin_headers
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_transition(
        self, client: AsyncClient, db_session, plans, admin_headers
    ):
        """
        Test suspending an expired subscription is refused.

        WHY: Only ACTIVE subscriptions can be suspended.
        """
        sub = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], status=SubscriptionStatus.EXPIRED
        )

        response = await client.post(
            f"{ADMIN_URL}/{sub.id}/suspend", json={"reason": "x"}, headers=admin_headers
        )

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidSubscriptionTransition"

    @pytest.mark.asyncio
    async def test_restore_conflict(
        self, client: AsyncClient, db_session, plans, admin_headers
    ):
        """
        Test restoring while another plan is ACTIVE is refused.

        WHY: A user holds at most one ACTIVE subscription.
        """
        suspended = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], status=SubscriptionStatus.SUSPENDED
        )
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.PREMIUM])

        response = await client.post(f"{ADMIN_URL}/{suspended.id}/restore", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "ConflictingActiveSubscription"

    @pytest.mark.asyncio
    async def test_restore_after_end_date(
        self, client: AsyncClient, db_session, plans, admin_headers, notifier
    ):
        suspended = await SubscriptionFactory.create(
            db_session,
            user_id="u1",
            plan=plans[PlanType.BASIC],
            status=SubscriptionStatus.SUSPENDED,
            end_date=utcnow() - timedelta(days=1),
        )

        response = await client.post(f"{ADMIN_URL}/{suspended.id}/restore", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidSubscriptionTransition"
        notifier.send_safe.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_without_body(
        self, client: AsyncClient, db_session, plans, admin_headers
    ):
        sub = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        response = await client.post(f"{ADMIN_URL}/{sub.id}/cancel", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["cancelled_at"] is not None

    @pytest.mark.asyncio
    async def test_force_activate_supersedes(
        self, client: AsyncClient, session_factory, db_session, plans, admin_headers
    ):
        old = await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])

        response = await client.post(
            f"{ADMIN_URL}/force-activate",
            json={"user_id": "u1", "plan_type": "PROFESSIONAL"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["plan"]["type"] == "PROFESSIONAL"
        async with session_factory() as session:
            dao = SubscriptionDAO(session)
            assert (await dao.get_by_id(old.id)).status == SubscriptionStatus.CANCELLED
            [active] = await dao.list_active_for_user("u1")
            assert active.id == response.json()["id"]


class TestMaintenance:
    """Reconciliation, sweep and inspection endpoints."""

    @pytest.mark.asyncio
    async def test_reconcile(
        self, client: AsyncClient, db_engine, db_session, plans, admin_headers
    ):
        """
        Test reconcile repairs a user with two ACTIVE rows.

        WHY: Rows written before the partial unique index existed can still
        violate the one-active rule.
        """
        async with db_engine.begin() as conn:
            await conn.execute(text("DROP INDEX uq_subscriptions_one_active_per_user"))
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.PREMIUM])

        stats = await client.get(f"{ADMIN_URL}/stats", headers=admin_headers)
        assert stats.json()["users_with_multiple_active"] == ["u1"]

        dry = await client.post(f"{ADMIN_URL}/reconcile?dry_run=true", headers=admin_headers)
        assert dry.json()["dry_run"] is True
        assert dry.json()["cancelled_count"] == 1

        response = await client.post(f"{ADMIN_URL}/reconcile", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["users_repaired"] == 1
        stats = await client.get(f"{ADMIN_URL}/stats", headers=admin_headers)
        assert stats.json()["users_with_multiple_active"] == []

    @pytest.mark.asyncio
    async def test_sweep(self, client: AsyncClient, admin_headers):
        response = await client.post(f"{ADMIN_URL}/sweep", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"expired": 0, "abandoned_checkouts": 0}

    @pytest.mark.asyncio
    async def test_stats_counts(self, client: AsyncClient, db_session, plans, admin_headers):
        await SubscriptionFactory.create(db_session, user_id="u1", plan=plans[PlanType.BASIC])
        await SubscriptionFactory.create(
            db_session, user_id="u2", plan=plans[PlanType.BASIC], status=SubscriptionStatus.EXPIRED
        )

        response = await client.get(f"{ADMIN_URL}/stats", headers=admin_headers)

        assert response.json()["counts"]["ACTIVE"] == 1
        assert response.json()["counts"]["EXPIRED"] == 1

    @pytest.mark.asyncio
    async def test_user_view(self, client: AsyncClient, db_session, plans, admin_headers):
        await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.BASIC], status=SubscriptionStatus.EXPIRED
        )
        current = await SubscriptionFactory.create(
            db_session, user_id="u1", plan=plans[PlanType.PREMIUM]
        )

        response = await client.get(f"{ADMIN_URL}/users/u1", headers=admin_headers)

        data = response.json()
        assert data["active"]["id"] == current.id
        assert len(data["history"]) == 2


class TestPlanCatalogAdmin:
    """Plan seeding and editing."""

    @pytest.mark.asyncio
    async def test_initialize_plans(self, client: AsyncClient, admin_headers):
        response = await client.post("/api/admin/plans/initialize", headers=admin_headers)

        assert response.status_code == 200
        assert [plan["type"] for plan in response.json()["plans"]] == [
            "FREE",
            "BASIC",
            "PREMIUM",
            "PROFESSIONAL",
        ]

    @pytest.mark.asyncio
    async def test_upsert_plan(self, client: AsyncClient, plans, admin_headers):
        response = await client.put(
            "/api/admin/plans/BASIC",
            json={
                "name": "Basique+",
                "price": 150,
                "duration_days": 30,
                "features": {"maxClubs": 4},
            },
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["price"] == 150
        listed = await client.get("/api/subscriptions/plans")
        basic = next(plan for plan in listed.json()["plans"] if plan["type"] == "BASIC")
        assert basic["name"] == "Basique+"

    @pytest.mark.asyncio
    async def test_upsert_negative_price(self, client: AsyncClient, admin_headers):
        response = await client.put(
            "/api/admin/plans/BASIC",
            json={"name": "Basic", "price": -1, "duration_days": 30},
            headers=admin_headers,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_plan_type(self, client: AsyncClient, admin_headers):
        response = await client.put(
            "/api/admin/plans/GOLD",
            json={"name": "Gold", "price": 1, "duration_days": 30},
            headers=admin_headers,
        )

        assert response.status_code == 400
