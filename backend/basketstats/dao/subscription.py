"""
Subscription Data Access Object (DAO).

WHAT: DAO for subscription rows and their guarded status transitions.

WHY: Several application instances apply PayTech notifications, admin
commands and reconciliation against the same table at the same time. The
at-most-one-ACTIVE rule therefore cannot rely on what a service read a few
milliseconds earlier:
1. Status changes are compare-and-swap updates
   (UPDATE ... WHERE id = ? AND status IN (...)) that report whether they won
2. Superseding a user's ACTIVE rows checks that every row it read is
   still the row it cancels
3. The partial unique index rejects any second ACTIVE row outright

HOW: Extends BaseDAO. Every status write in the code base goes through
transition() or one of the bulk helpers here.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.core.exceptions import OptimisticLockConflict
from basketstats.dao.base import BaseDAO
from basketstats.models.base import utcnow
from basketstats.models.subscription import Subscription, SubscriptionStatus


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.

    WHY: Centralizes subscription queries for entitlement reads, webhook
    activation, admin recovery flows and the reconciliation sweep.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize SubscriptionDAO.

        Args:
            session: Async database session
        """
        super().__init__(Subscription, session)

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_active_for_user(
        self,
        user_id: str,
        lock: bool = False,
    ) -> List[Subscription]:
        """
        All ACTIVE rows of a user, newest first.

        WHY: Normally zero or one. More than one only exists in legacy data
        loaded before the unique index, which reconciliation repairs. The
        ordering (created_at desc, id asc) is the reconciliation keep order.

        Args:
            user_id: Owner of the subscriptions
            lock: SELECT ... FOR UPDATE the rows (ignored by SQLite)

        Returns:
            ACTIVE subscriptions ordered newest first
        """
        query = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.asc())
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update(of=Subscription)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_active_for_user(self, user_id: str) -> Optional[Subscription]:
        """The user's ACTIVE subscription (derived, never cached)."""
        active = await self.list_active_for_user(user_id)
        return active[0] if active else None

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[Subscription]:
        """Full subscription history of a user, newest first."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_checkout(
        self,
        user_id: str,
        ref_command: str,
    ) -> Optional[Subscription]:
        """
        Find the PENDING row a checkout created for this correlation id.

        Args:
            user_id: Owner recorded on the checkout
            ref_command: Correlation id sent to the provider

        Returns:
            PENDING subscription or None
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.ref_command == ref_command,
                Subscription.status == SubscriptionStatus.PENDING,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Subscription]:
        return await self.get_by_field("transaction_id", transaction_id)

    async def find_users_with_multiple_active(self) -> List[str]:
        """
        Users currently holding more than one ACTIVE row.

        Returns:
            Sorted list of user ids
        """
        result = await self.session.execute(
            select(Subscription.user_id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .group_by(Subscription.user_id)
            .having(func.count(Subscription.id) > 1)
            .order_by(Subscription.user_id)
        )
        return [row[0] for row in result.all()]

    async def count_by_status(self) -> Dict[str, int]:
        """
        Count subscriptions by status.

        Returns:
            Dict mapping status name to count (zero for absent statuses)
        """
        result = await self.session.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(
                Subscription.status
            )
        )
        counts = {status.value: 0 for status in SubscriptionStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts

    # =========================================================================
    # Guarded writes
    # =========================================================================

    async def transition(
        self,
        subscription_id: str,
        from_statuses: Iterable[SubscriptionStatus],
        to_status: SubscriptionStatus,
        **values: Any,
    ) -> bool:
        """
        Compare-and-swap a subscription's status.

        WHAT: UPDATE subscriptions SET status = :to WHERE id = :id AND status IN (:from)

        WHY: The write only lands if the row is still in a state we expect,
        so a concurrent webhook, admin command or sweep can never be
        clobbered by a decision made on a stale read.

        Args:
            subscription_id: Row to update
            from_statuses: Statuses the row must currently have
            to_status: New status
            **values: Extra columns to set with the transition

        Returns:
            True if the row was updated, False if it had already moved

        Raises:
            IntegrityError: If the update would create a second ACTIVE row
        """
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status.in_(list(from_statuses)),
            )
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel_all_active_for_user(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Cancel every ACTIVE row of a user ahead of a new activation.

        WHY: Must run in the same transaction as the insert or promotion
        that follows, so no reader ever sees two ACTIVE rows or zero.

        HOW: Reads the ACTIVE rows (locking them where the backend supports
        it) and compare-and-swaps each one. A row that moved in between
        raises OptimisticLockConflict so the whole unit is retried.

        Args:
            user_id: Owner of the rows
            now: Cancellation timestamp

        Returns:
            Ids of the rows that were cancelled

        Raises:
            OptimisticLockConflict: A row changed status concurrently
        """
        now = now or utcnow()
        cancelled = []
        for subscription in await self.list_active_for_user(user_id, lock=True):
            won = await self.transition(
                subscription.id,
                [SubscriptionStatus.ACTIVE],
                SubscriptionStatus.CANCELLED,
                cancelled_at=now,
            )
            if not won:
                raise OptimisticLockConflict(
                    subscription_id=subscription.id,
                    user_id=user_id,
                )
            cancelled.append(subscription.id)
        return cancelled

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """
        Bulk ACTIVE -> EXPIRED for rows whose end_date has passed.

        WHY: Conditioned on status = ACTIVE, so running it again (or racing
        the lazy check) leaves already-expired rows alone.

        Returns:
            Number of rows expired
        """
        now = now or utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date.is_not(None),
                Subscription.end_date < now,
            )
            .values(status=SubscriptionStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def cancel_stale_pending(self, created_before: datetime) -> int:
        """
        Cancel PENDING checkouts that never received a notification.

        Args:
            created_before: Checkouts created before this instant are abandoned

        Returns:
            Number of rows cancelled
        """
        now = utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.PENDING,
                Subscription.created_at < created_before,
            )
            .values(status=SubscriptionStatus.CANCELLED, cancelled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
