"""
Reconciliation of the at-most-one-ACTIVE rule.

WHAT: Finds users holding several ACTIVE subscriptions (legacy data loaded
before the partial unique index, or a manual database edit) and cancels all
but one of them.

WHY: Request paths cannot create such duplicates any more, but historical
rows can still contain them. Entitlement reads already agree on the row
this job keeps, so repairing is invisible to users.

HOW: Each user is repaired in its own transaction through the state
machine's compare-and-swap, so a concurrent activation or admin command is
never clobbered and a second run finds nothing to do. The kept row is the
newest by created_at, ties broken by the smallest id.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.exceptions import InvariantViolationDetected
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.db.transaction import run_in_transaction
from basketstats.models.base import utcnow
from basketstats.services.audit import AuditService
from basketstats.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationItem:
    user_id: str
    kept_subscription_id: str
    cancelled_subscription_ids: List[str] = field(default_factory=list)


@dataclass
class ReconciliationReport:
    """
    Result of one reconciliation run.

    Attributes:
        items: One entry per repaired user
        dry_run: Nothing was written
        started_at / finished_at: Run boundaries (UTC)
    """

    items: List[ReconciliationItem] = field(default_factory=list)
    dry_run: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_clean(self) -> bool:
        return not self.items

    @property
    def cancelled_count(self) -> int:
        return sum(len(item.cancelled_subscription_ids) for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "users_repaired": len(self.items),
            "cancelled_count": self.cancelled_count,
            "items": [asdict(item) for item in self.items],
        }


class ReconciliationService:
    """
    Detects and repairs users with more than one ACTIVE subscription.

    Example:
        report = await ReconciliationService(get_session_factory()).reconcile()
        assert report.is_clean or report.cancelled_count > 0
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def find_violations(self) -> List[str]:
        """User ids currently holding more than one ACTIVE row."""
        async with self.session_factory() as session:
            return await SubscriptionDAO(session).find_users_with_multiple_active()

    async def assert_invariants(self) -> None:
        """
        Raises:
            InvariantViolationDetected: At least one user has several ACTIVE rows
        """
        users = await self.find_violations()
        if users:
            logger.error(
                f"{len(users)} user(s) hold more than one active subscription",
                extra={"user_ids": users},
            )
            raise InvariantViolationDetected(user_ids=users, count=len(users))

    async def reconcile(
        self,
        dry_run: bool = False,
        actor: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Repair every violating user.

        Args:
            dry_run: Report what would be cancelled without writing
            actor: Operator recorded in the audit log (None for the scheduler)

        Returns:
            ReconciliationReport; empty when nothing needed repair
        """
        report = ReconciliationReport(dry_run=dry_run, started_at=self.clock())

        for user_id in await self.find_violations():

            async def work(session: AsyncSession, user_id: str = user_id):
                return await self._reconcile_user(session, user_id, dry_run, actor)

            item = await run_in_transaction(
                self.session_factory, work, operation="reconcile"
            )
            if item is not None and item.cancelled_subscription_ids:
                report.items.append(item)

        report.finished_at = self.clock()
        logger.info(
            f"Reconciliation {'dry run ' if dry_run else ''}finished: "
            f"{len(report.items)} user(s), {report.cancelled_count} subscription(s) "
            f"{'to cancel' if dry_run else 'cancelled'}",
            extra={"dry_run": dry_run},
        )
        return report

    async def _reconcile_user(
        self,
        session: AsyncSession,
        user_id: str,
        dry_run: bool,
        actor: Optional[str],
    ) -> Optional[ReconciliationItem]:
        dao = SubscriptionDAO(session)
        active = await dao.list_active_for_user(user_id, lock=not dry_run)
        if len(active) <= 1:
            # Repaired concurrently since detection
            return None

        kept, duplicates = active[0], active[1:]
        item = ReconciliationItem(user_id=user_id, kept_subscription_id=kept.id)

        if dry_run:
            item.cancelled_subscription_ids = [row.id for row in duplicates]
            return item

        machine = SubscriptionStateMachine(session, clock=self.clock)
        for row in duplicates:
            if await machine.supersede(row):
                item.cancelled_subscription_ids.append(row.id)

        if item.cancelled_subscription_ids:
            await AuditService(session).log_reconciliation(actor, user_id, asdict(item))
            logger.warning(
                f"Reconciled user {user_id}: kept {kept.id}, "
                f"cancelled {len(item.cancelled_subscription_ids)}",
                extra={"user_id": user_id, "kept_subscription_id": kept.id},
            )
        return item
