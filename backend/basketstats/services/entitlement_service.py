"""
Entitlement queries.

WHAT: Answers "can this user see the dashboard", "which plan is active" and
"may this user use feature X".

WHY: These are read paths called on every page load of the basketball
platform. They never grant access from a row that is past its end date,
even if the expiration sweep has not run yet.

HOW: Reads go through SubscriptionDAO. An ACTIVE row found past its
end_date is expired in place (idempotent compare-and-swap) and skipped.
Feature flags are read from the live plan, so a catalog change applies to
existing subscribers immediately.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.dao.subscription import SubscriptionDAO
from basketstats.models.base import utcnow
from basketstats.models.plan import Plan
from basketstats.models.subscription import Subscription
from basketstats.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

UNLIMITED = -1


def feature_grants(value: Any) -> bool:
    """
    Interpret one feature value from a plan's feature map.

    True and non-zero numbers grant (-1 means unlimited), None grants
    without limit, False and 0 deny.
    """
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return bool(value)


class EntitlementService:
    """
    Read-side access checks.

    Example:
        service = EntitlementService(db)
        if not await service.can_access_dashboard(user_id):
            raise AuthorizationError(...)
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.dao = SubscriptionDAO(session)
        self.machine = SubscriptionStateMachine(session, clock=clock)

    async def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        The user's ACTIVE subscription, None if there is none.

        WHY: Rows are read newest first, the order reconciliation keeps, so
        even before a repair every reader agrees on the same row.
        """
        for subscription in await self.dao.list_active_for_user(user_id):
            if await self.machine.expire_if_overdue(subscription):
                continue
            return subscription
        return None

    async def get_active_plan(self, user_id: str) -> Optional[Plan]:
        subscription = await self.get_current_subscription(user_id)
        return subscription.plan if subscription else None

    async def can_access_dashboard(self, user_id: str, is_admin: bool = False) -> bool:
        """
        Admins always; everyone else needs an ACTIVE, unexpired subscription.
        """
        if is_admin:
            return True
        return await self.get_current_subscription(user_id) is not None

    async def can_access_feature(self, user_id: str, feature: str) -> bool:
        """
        Whether the user's active plan grants `feature`.

        Returns:
            False when there is no active plan or the plan does not list it
        """
        plan = await self.get_active_plan(user_id)
        if plan is None or feature not in (plan.features or {}):
            return False
        return feature_grants(plan.features[feature])

    async def get_feature_limit(self, user_id: str, feature: str) -> Optional[int]:
        """
        Numeric limit for `feature`.

        Returns:
            None for unlimited, 0 when not granted, the limit otherwise
        """
        plan = await self.get_active_plan(user_id)
        if plan is None or feature not in (plan.features or {}):
            return 0
        value = plan.features[feature]
        if value is None or value is True or value == UNLIMITED:
            return None
        if value is False:
            return 0
        if isinstance(value, (int, float)):
            return int(value)
        return None

    async def is_within_limit(self, user_id: str, feature: str, current_usage: int) -> bool:
        """True while `current_usage` is below the plan's limit for `feature`."""
        limit = await self.get_feature_limit(user_id, feature)
        if limit is None:
            return True
        return current_usage < limit

    async def list_subscription_history(self, user_id: str, limit: int = 100) -> List[Subscription]:
        return await self.dao.list_for_user(user_id, limit=limit)
