"""
Administrative subscription commands.

WHAT: suspend, restore, cancel and force-activate for operators, plus plan
catalog maintenance.

WHY: Support staff fix payment disputes and grant plans by hand. Each
command must be audited atomically with the change it describes and must
obey the same transition guards as the payment path.

HOW: Every command is one run_in_transaction() unit: state machine
transition + audit entry. The caller receives the updated row and the
notification to dispatch after responding.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.db.transaction import run_in_transaction
from basketstats.models.plan import Plan, PlanType
from basketstats.models.subscription import Subscription
from basketstats.services.audit import AuditService
from basketstats.services.notification_service import (
    NotificationEvent,
    SubscriptionNotification,
)
from basketstats.services.plan_catalog import PlanCatalog
from basketstats.services.subscription_state_machine import (
    ADMIN_PAYMENT_METHOD,
    SubscriptionStateMachine,
)

logger = logging.getLogger(__name__)


@dataclass
class AdminCommandResult:
    subscription: Subscription
    notification: Optional[SubscriptionNotification] = None


class SubscriptionAdminService:
    """
    Operator commands, each atomic with its audit entry.

    Example:
        service = SubscriptionAdminService(get_session_factory())
        result = await service.suspend(sub_id, reason="chargeback", actor="ops@basketstats")
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def suspend(
        self, subscription_id: str, reason: str, actor: Optional[str] = None
    ) -> AdminCommandResult:
        """
        ACTIVE -> SUSPENDED.

        Raises:
            SubscriptionNotFound, InvalidSubscriptionTransition,
            ConflictingActiveSubscription
        """

        async def work(session: AsyncSession) -> Subscription:
            subscription = await SubscriptionStateMachine(session).suspend(subscription_id, reason)
            await AuditService(session).log_suspended(subscription, actor, reason)
            return subscription

        subscription = await run_in_transaction(
            self.session_factory, work, operation="admin_suspend"
        )
        return AdminCommandResult(
            subscription=subscription,
            notification=self._notification(
                NotificationEvent.SUBSCRIPTION_SUSPENDED, subscription, {"reason": reason}
            ),
        )

    async def restore(
        self, subscription_id: str, actor: Optional[str] = None
    ) -> AdminCommandResult:
        """
        SUSPENDED -> ACTIVE.

        Raises:
            SubscriptionNotFound,
            InvalidSubscriptionTransition: Not SUSPENDED, or ended while suspended
            ConflictingActiveSubscription: Another row of the user is ACTIVE
        """

        async def work(session: AsyncSession) -> Subscription:
            subscription = await SubscriptionStateMachine(session).restore(subscription_id)
            await AuditService(session).log_restored(subscription, actor)
            return subscription

        subscription = await run_in_transaction(
            self.session_factory, work, operation="admin_restore"
        )
        return AdminCommandResult(
            subscription=subscription,
            notification=self._notification(NotificationEvent.SUBSCRIPTION_RESTORED, subscription),
        )

    async def cancel(
        self,
        subscription_id: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AdminCommandResult:
        """
        ACTIVE/SUSPENDED/PENDING -> CANCELLED.

        Raises:
            SubscriptionNotFound, InvalidSubscriptionTransition
        """

        async def work(session: AsyncSession) -> Subscription:
            machine = SubscriptionStateMachine(session)
            previous = await machine.dao.get_by_id(subscription_id)
            previous_status = previous.status.value if previous else None
            subscription = await machine.cancel(subscription_id)
            await AuditService(session).log_cancelled(
                subscription, actor, reason=reason, previous_status=previous_status
            )
            return subscription

        subscription = await run_in_transaction(
            self.session_factory, work, operation="admin_cancel"
        )
        return AdminCommandResult(
            subscription=subscription,
            notification=self._notification(
                NotificationEvent.SUBSCRIPTION_CANCELLED, subscription, {"reason": reason}
            ),
        )

    async def force_activate(
        self,
        user_id: str,
        plan_type: PlanType,
        actor: Optional[str] = None,
    ) -> AdminCommandResult:
        """
        Grant `plan_type` without a payment, superseding any ACTIVE row.

        Raises:
            PlanNotFound: Unknown or inactive plan
            ConflictingActiveSubscription: Lost a race twice
        """

        async def work(session: AsyncSession):
            result = await SubscriptionStateMachine(session).activate(
                user_id, plan_type, payment_method=ADMIN_PAYMENT_METHOD
            )
            await AuditService(session).log_force_activated(
                result.subscription, actor, plan_type.value, result.superseded_ids
            )
            return result

        result = await run_in_transaction(
            self.session_factory, work, operation="admin_force_activate"
        )
        subscription = result.subscription
        return AdminCommandResult(
            subscription=subscription,
            notification=self._notification(
                NotificationEvent.SUBSCRIPTION_ACTIVATED,
                subscription,
                {
                    "plan_type": plan_type.value,
                    "end_date": (
                        subscription.end_date.isoformat() if subscription.end_date else None
                    ),
                    "granted_by": actor,
                },
            ),
        )

    # =========================================================================
    # Plan catalog
    # =========================================================================

    async def initialize_plans(self, actor: Optional[str] = None) -> List[Plan]:
        """Create the default plans that do not exist yet."""

        async def work(session: AsyncSession) -> List[Plan]:
            created = await PlanCatalog(session).initialize_default_plans()
            if created:
                await AuditService(session).log_plans_initialized(
                    [plan.type.value for plan in created], actor
                )
            return created

        return await run_in_transaction(self.session_factory, work, operation="init_plans")

    async def upsert_plan(
        self, plan_type: PlanType, fields: Dict[str, Any], actor: Optional[str] = None
    ) -> Plan:
        """
        Create or update one plan. Existing subscriptions see the change at
        their next entitlement read.
        """

        async def work(session: AsyncSession) -> Plan:
            plan = await PlanCatalog(session).upsert_plan(plan_type, **fields)
            await AuditService(session).log_plan_upserted(plan_type.value, actor)
            return plan

        return await run_in_transaction(self.session_factory, work, operation="upsert_plan")

    @staticmethod
    def _notification(
        event: NotificationEvent,
        subscription: Subscription,
        data: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionNotification:
        return SubscriptionNotification(
            event=event,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            data=data or {},
        )
