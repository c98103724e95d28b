"""
Subscription state machine.

WHAT: The only code that changes a subscription's status.

WHY: PayTech notifications, admin commands, the expiration sweep and
reconciliation all mutate the same rows, possibly from different instances
at the same time. Funnelling them through one set of guarded transitions
keeps the at-most-one-ACTIVE rule intact whatever the entry point.

HOW: Every method works inside the caller's transaction (one AsyncSession).
Writes are compare-and-swap updates from SubscriptionDAO. A lost race
raises OptimisticLockConflict or IntegrityError (partial unique index),
which run_in_transaction() retries once from a fresh read.

    NONE ──checkout──> PENDING ──SaleComplete──> ACTIVE
    NONE/CANCELLED ──SaleComplete / force-activate──> ACTIVE
    ACTIVE ──suspend──> SUSPENDED ──restore──> ACTIVE
    ACTIVE/SUSPENDED/PENDING ──cancel / superseded──> CANCELLED
    ACTIVE ──end_date passed──> EXPIRED
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.core.exceptions import (
    ConflictingActiveSubscription,
    InvalidSubscriptionTransition,
    OptimisticLockConflict,
    SubscriptionNotFound,
)
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.base import utcnow
from basketstats.models.plan import Plan, PlanType
from basketstats.models.subscription import (
    DEFAULT_PAYMENT_METHOD,
    Subscription,
    SubscriptionStatus,
)
from basketstats.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

ADMIN_PAYMENT_METHOD = "admin"

# Statuses each administrative command may start from
ALLOWED_SOURCES: Dict[str, FrozenSet[SubscriptionStatus]] = {
    "suspend": frozenset({SubscriptionStatus.ACTIVE}),
    "restore": frozenset({SubscriptionStatus.SUSPENDED}),
    "cancel": frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.SUSPENDED,
            SubscriptionStatus.PENDING,
        }
    ),
}


@dataclass
class ActivationResult:
    """
    Outcome of an activation.

    Attributes:
        subscription: The new (or promoted) ACTIVE row
        superseded_ids: Rows moved ACTIVE -> CANCELLED by this activation
        expired_ids: Overdue ACTIVE rows moved to EXPIRED on the way
        promoted_pending: A PENDING checkout row was promoted
    """

    subscription: Subscription
    superseded_ids: List[str] = field(default_factory=list)
    expired_ids: List[str] = field(default_factory=list)
    promoted_pending: bool = False


def compute_end_date(plan: Plan, start: datetime) -> Optional[datetime]:
    """start + plan duration, None for perpetual plans."""
    if plan.is_perpetual:
        return None
    return start + timedelta(days=plan.duration_days)


class SubscriptionStateMachine:
    """
    Guarded subscription transitions within one transaction.

    Example:
        async def work(session):
            machine = SubscriptionStateMachine(session)
            return await machine.suspend(subscription_id, reason="chargeback")

        await run_in_transaction(session_factory, work, operation="suspend")
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            session: Transaction-scoped session
            catalog: Plan catalog (defaults to one on the same session)
            clock: Time source, injectable for tests
        """
        self.session = session
        self.dao = SubscriptionDAO(session)
        self.catalog = catalog or PlanCatalog(session)
        self.clock = clock

    # =========================================================================
    # Activation
    # =========================================================================

    async def activate(
        self,
        user_id: str,
        plan_type: Union[PlanType, str],
        transaction_id: Optional[str] = None,
        ref_command: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> ActivationResult:
        """
        Make `plan_type` the user's single ACTIVE subscription.

        WHAT: Cancels every ACTIVE row of the user, then promotes the matching
        PENDING checkout or inserts a new ACTIVE row.

        WHY: Cancel-then-activate runs in one transaction, so readers see
        either the old ACTIVE row or the new one, never both or neither.

        HOW:
        1. Look the plan up (PlanNotFound aborts before any write)
        2. Expire overdue ACTIVE rows
        3. Compare-and-swap every remaining ACTIVE row to CANCELLED
        4. Promote PENDING(ref_command) or insert, with end_date =
           now + duration, whatever the previous plan was

        Args:
            user_id: Subscriber
            plan_type: Tier to activate, or its catalog key
            transaction_id: Provider token (None for admin grants)
            ref_command: Checkout correlation id, if any
            payment_method: Provider payment method label

        Returns:
            ActivationResult

        Raises:
            PlanNotFound: Unknown or inactive plan
            OptimisticLockConflict: A row changed status under us
            IntegrityError: Another activation for this user committed first
        """
        plan = await self.catalog.get_plan(plan_type)
        now = self.clock()

        expired_ids = []
        for current in await self.dao.list_active_for_user(user_id, lock=True):
            if current.is_past_end(now):
                await self._expire(current)
                expired_ids.append(current.id)

        superseded_ids = await self.dao.cancel_all_active_for_user(user_id, now=now)

        end_date = compute_end_date(plan, now)
        values = {
            "plan_id": plan.id,
            "start_date": now,
            "end_date": end_date,
            "transaction_id": transaction_id,
            "payment_method": payment_method or DEFAULT_PAYMENT_METHOD,
        }

        pending = None
        if ref_command:
            pending = await self.dao.get_pending_checkout(user_id, ref_command)

        if pending is not None:
            won = await self.dao.transition(
                pending.id,
                [SubscriptionStatus.PENDING],
                SubscriptionStatus.ACTIVE,
                **values,
            )
            if not won:
                raise OptimisticLockConflict(subscription_id=pending.id, user_id=user_id)
            subscription = await self.dao.get_by_id(pending.id)
        else:
            subscription = await self.dao.create(
                user_id=user_id,
                status=SubscriptionStatus.ACTIVE,
                ref_command=ref_command,
                **values,
            )

        logger.info(
            f"Activated {plan.type.value} for user {user_id}",
            extra={
                "user_id": user_id,
                "subscription_id": subscription.id,
                "transaction_id": transaction_id,
                "superseded_ids": superseded_ids,
            },
        )
        return ActivationResult(
            subscription=subscription,
            superseded_ids=superseded_ids,
            expired_ids=expired_ids,
            promoted_pending=pending is not None,
        )

    async def start_checkout(
        self,
        user_id: str,
        plan: Plan,
        ref_command: str,
    ) -> Subscription:
        """
        NONE -> PENDING: record a checkout awaiting the provider notification.

        WHY: The PENDING row does not entitle anything and does not take part
        in the one-ACTIVE rule; it only lets SaleComplete and SaleCancelled
        find the checkout they belong to.
        """
        now = self.clock()
        subscription = await self.dao.create(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.PENDING,
            start_date=now,
            end_date=None,
            ref_command=ref_command,
        )
        logger.info(
            f"Checkout {ref_command} started for user {user_id}",
            extra={"user_id": user_id, "subscription_id": subscription.id},
        )
        return subscription

    async def cancel_checkout(self, user_id: str, ref_command: str) -> Optional[Subscription]:
        """
        PENDING -> CANCELLED for a checkout the payer abandoned.

        Returns:
            The cancelled row, or None when no PENDING checkout matches
        """
        pending = await self.dao.get_pending_checkout(user_id, ref_command)
        if pending is None:
            return None
        won = await self.dao.transition(
            pending.id,
            [SubscriptionStatus.PENDING],
            SubscriptionStatus.CANCELLED,
            cancelled_at=self.clock(),
        )
        if not won:
            raise OptimisticLockConflict(subscription_id=pending.id, user_id=user_id)
        return await self.dao.get_by_id(pending.id)

    # =========================================================================
    # Administrative commands
    # =========================================================================

    async def suspend(self, subscription_id: str, reason: str) -> Subscription:
        """
        ACTIVE -> SUSPENDED.

        Args:
            subscription_id: Row to suspend
            reason: Operator-supplied reason, stored on the row

        Raises:
            SubscriptionNotFound, InvalidSubscriptionTransition,
            OptimisticLockConflict
        """
        subscription = await self._load_for("suspend", subscription_id)
        await self._transition(
            subscription,
            "suspend",
            SubscriptionStatus.SUSPENDED,
            suspended_at=self.clock(),
            suspended_reason=reason,
        )
        return await self.dao.get_by_id(subscription_id)

    async def restore(self, subscription_id: str) -> Subscription:
        """
        SUSPENDED -> ACTIVE, unless another row of the user is ACTIVE.

        WHY: A payment may have activated a different plan while this one
        was suspended. Restoring would then create two ACTIVE rows, so the
        restore is refused and both rows stay as they are.
        A row whose end_date passed while suspended is not restored either;
        support cancels it or grants a new plan.

        Raises:
            SubscriptionNotFound, InvalidSubscriptionTransition,
            ConflictingActiveSubscription, OptimisticLockConflict
        """
        subscription = await self._load_for("restore", subscription_id)

        if subscription.is_past_end(self.clock()):
            raise InvalidSubscriptionTransition(
                message="Cannot restore: the subscription ended while suspended",
                subscription_id=subscription.id,
                status=subscription.status.value,
                end_date=subscription.end_date.isoformat(),
            )

        others = [
            row
            for row in await self.dao.list_active_for_user(subscription.user_id, lock=True)
            if row.id != subscription.id
        ]
        if others:
            raise ConflictingActiveSubscription(
                message="Cannot restore: the user has another active subscription",
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                active_subscription_id=others[0].id,
            )

        await self._transition(
            subscription,
            "restore",
            SubscriptionStatus.ACTIVE,
            restored_at=self.clock(),
        )
        return await self.dao.get_by_id(subscription_id)

    async def cancel(self, subscription_id: str) -> Subscription:
        """
        ACTIVE/SUSPENDED/PENDING -> CANCELLED. History is kept.

        Raises:
            SubscriptionNotFound, InvalidSubscriptionTransition,
            OptimisticLockConflict
        """
        subscription = await self._load_for("cancel", subscription_id)
        await self._transition(
            subscription,
            "cancel",
            SubscriptionStatus.CANCELLED,
            cancelled_at=self.clock(),
        )
        return await self.dao.get_by_id(subscription_id)

    async def supersede(self, subscription: Subscription) -> bool:
        """
        ACTIVE -> CANCELLED for a duplicate found by reconciliation.

        Returns:
            False if the row was no longer ACTIVE (nothing to do)
        """
        return await self.dao.transition(
            subscription.id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.CANCELLED,
            cancelled_at=self.clock(),
        )

    # =========================================================================
    # Expiration
    # =========================================================================

    async def expire_if_overdue(self, subscription: Subscription) -> bool:
        """
        Lazily apply ACTIVE -> EXPIRED when end_date has passed.

        WHY: Idempotent. A row that a concurrent reader or the sweep already
        expired simply fails the compare-and-swap, which is fine.

        Returns:
            True if the row is past its end (expired now or already)
        """
        now = self.clock()
        if not subscription.is_past_end(now):
            return False
        if subscription.status == SubscriptionStatus.ACTIVE:
            await self.dao.transition(
                subscription.id,
                [SubscriptionStatus.ACTIVE],
                SubscriptionStatus.EXPIRED,
            )
            logger.info(
                f"Subscription {subscription.id} expired",
                extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
            )
        return True

    async def expire_overdue(self) -> int:
        """Bulk ACTIVE -> EXPIRED sweep. Returns the number of rows expired."""
        return await self.dao.expire_overdue(self.clock())

    async def cancel_abandoned_checkouts(self, ttl: timedelta) -> int:
        """Cancel PENDING rows older than `ttl`."""
        return await self.dao.cancel_stale_pending(self.clock() - ttl)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load_for(self, command: str, subscription_id: str) -> Subscription:
        subscription = await self.dao.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id=subscription_id)
        if subscription.status not in ALLOWED_SOURCES[command]:
            raise InvalidSubscriptionTransition(
                message=f"Cannot {command} a {subscription.status.value} subscription",
                subscription_id=subscription_id,
                status=subscription.status.value,
            )
        return subscription

    async def _transition(
        self,
        subscription: Subscription,
        command: str,
        to_status: SubscriptionStatus,
        **values,
    ) -> None:
        won = await self.dao.transition(
            subscription.id,
            [subscription.status],
            to_status,
            **values,
        )
        if not won:
            raise OptimisticLockConflict(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                command=command,
            )
        logger.info(
            f"Subscription {subscription.id}: {subscription.status.value} -> {to_status.value}",
            extra={
                "subscription_id": subscription.id,
                "user_id": subscription.user_id,
                "command": command,
            },
        )

    async def _expire(self, subscription: Subscription) -> None:
        won = await self.dao.transition(
            subscription.id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.EXPIRED,
        )
        if not won:
            raise OptimisticLockConflict(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
            )
