"""
Plan Data Access Object (DAO).

WHAT: Catalog lookups by tier and the administrative upsert.

WHY: The state machine looks the plan up at transition time for its
duration, and entitlement checks read its feature map live.
"""

from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.dao.base import BaseDAO
from basketstats.models.plan import Plan, PlanType


class PlanDAO(BaseDAO[Plan]):
    """Data Access Object for Plan model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    async def get_by_type(self, plan_type: PlanType) -> Optional[Plan]:
        """
        Get the plan for a tier, active or not.

        Args:
            plan_type: Tier identity

        Returns:
            Plan or None
        """
        return await self.get_by_field("type", plan_type)

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        """All plans ordered by price, active ones only by default."""
        query = select(Plan).order_by(Plan.price.asc(), Plan.id.asc())
        if not include_inactive:
            query = query.where(Plan.is_active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def upsert(self, plan_type: PlanType, **fields: Any) -> Plan:
        """
        Create or replace the plan for a tier.

        WHY: Plans are identified by type, so administrative edits replace
        the existing row in place and subscriptions keep their plan_id.

        Args:
            plan_type: Tier identity
            **fields: Plan attributes to set

        Returns:
            The created or updated Plan
        """
        existing = await self.get_by_type(plan_type)
        if existing is None:
            return await self.create(type=plan_type, **fields)
        return await self.update(existing.id, **fields)
