"""
Subscription expiration sweep.

WHAT: Background job that moves overdue ACTIVE subscriptions to EXPIRED and
closes checkouts that never received a PayTech notification.

WHY: Entitlement reads already expire rows lazily, so correctness does not
depend on this job. It keeps the table truthful for reporting and for users
who never come back, and stops abandoned PENDING rows from piling up.

HOW: Runs on the APScheduler interval from settings. Both updates are
conditioned on the current status, so overlapping runs (several instances,
or a lazy expiry racing the sweep) are harmless.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.config import settings
from basketstats.db.session import get_session_factory
from basketstats.db.transaction import run_in_transaction
from basketstats.models.base import utcnow
from basketstats.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)


class ExpirationSweepService:
    """
    Periodic expiry of subscriptions and abandoned checkouts.

    Example:
        service = ExpirationSweepService()
        stats = await service.run_sweep()
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        pending_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            session_factory: Session factory (defaults to the application's)
            pending_ttl: Age after which a PENDING checkout is abandoned
            clock: Time source, injectable for tests
        """
        self._session_factory = session_factory
        self.pending_ttl = pending_ttl or timedelta(
            minutes=settings.CHECKOUT_PENDING_TTL_MINUTES
        )
        self.clock = clock

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or get_session_factory()

    async def run_sweep(self) -> Dict[str, int]:
        """
        Main job function.

        Returns:
            Dict with counts of expired subscriptions and cancelled checkouts
        """
        logger.info("Starting subscription expiration sweep")
        start_time = utcnow()

        async def work(session: AsyncSession) -> Dict[str, int]:
            machine = SubscriptionStateMachine(session, clock=self.clock)
            return {
                "expired": await machine.expire_overdue(),
                "abandoned_checkouts": await machine.cancel_abandoned_checkouts(self.pending_ttl),
            }

        stats = await run_in_transaction(self.session_factory, work, operation="expiration_sweep")

        elapsed = (utcnow() - start_time).total_seconds()
        logger.info(
            f"Expiration sweep completed in {elapsed:.2f}s. "
            f"Expired: {stats['expired']}, "
            f"Abandoned checkouts: {stats['abandoned_checkouts']}"
        )
        return stats


_sweep_service: Optional[ExpirationSweepService] = None


def get_sweep_service() -> ExpirationSweepService:
    """Get or create the expiration sweep service instance."""
    global _sweep_service
    if _sweep_service is None:
        _sweep_service = ExpirationSweepService()
    return _sweep_service
