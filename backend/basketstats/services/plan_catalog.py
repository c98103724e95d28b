"""
Plan catalog service.

WHAT: Lookup and administration of subscription tiers.

WHY: The state machine asks the catalog for a plan's duration at transition
time, and checkout asks it for the price. A plan that is unknown or has been
deactivated cannot be sold, so get_plan() treats both the same way.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.core.exceptions import PlanNotFound, ValidationError
from basketstats.dao.plan import PlanDAO
from basketstats.models.plan import Plan, PlanType, DEFAULT_PLANS

logger = logging.getLogger(__name__)


def parse_plan_type(value: Union[PlanType, str]) -> PlanType:
    """Tier for a catalog key; names outside the catalog raise PlanNotFound."""
    try:
        return PlanType(value)
    except ValueError as e:
        raise PlanNotFound(
            message=f"Plan {value} is not available",
            plan_type=str(value),
        ) from e


class PlanCatalog:
    """Read-mostly access to the plan catalog."""

    def __init__(self, session: AsyncSession):
        self.dao = PlanDAO(session)

    async def get_plan(self, plan_type: Union[PlanType, str]) -> Plan:
        """
        Get the sellable plan for a tier.

        Args:
            plan_type: Tier identity, or its key as sent by a client

        Returns:
            The active Plan

        Raises:
            PlanNotFound: Unknown tier or inactive plan
        """
        plan_type = parse_plan_type(plan_type)
        plan = await self.dao.get_by_type(plan_type)
        if plan is None or not plan.is_active:
            raise PlanNotFound(
                message=f"Plan {plan_type.value} is not available",
                plan_type=plan_type.value,
            )
        return plan

    async def find_plan(self, plan_type: PlanType) -> Optional[Plan]:
        """Plan for a tier regardless of its active flag, None if absent."""
        return await self.dao.get_by_type(plan_type)

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        return await self.dao.list_plans(include_inactive=include_inactive)

    async def upsert_plan(
        self,
        plan_type: PlanType,
        name: str,
        price: int,
        duration_days: int,
        features: Dict[str, Any],
        description: Optional[str] = None,
        currency: str = "XOF",
        is_active: bool = True,
    ) -> Plan:
        """
        Create or replace a plan by type.

        WHY: Entitlements are read live, so a changed feature map applies to
        every current subscriber of the tier as soon as this commits.

        Raises:
            ValidationError: Negative price or duration
        """
        if price < 0 or duration_days < 0:
            raise ValidationError(
                message="price and duration_days must be non-negative",
                plan_type=plan_type.value,
            )

        plan = await self.dao.upsert(
            plan_type,
            name=name,
            description=description,
            price=price,
            currency=currency,
            duration_days=duration_days,
            features=dict(features),
            is_active=is_active,
        )
        logger.info(
            f"Plan {plan_type.value} upserted",
            extra={"plan_type": plan_type.value, "price": price},
        )
        return plan

    async def initialize_default_plans(self) -> List[Plan]:
        """
        Seed the four default tiers.

        WHY: Idempotent: re-running replaces the rows with the defaults
        again, so it is also the way to undo accidental catalog edits.

        Returns:
            The seeded plans
        """
        plans = []
        for plan_type, data in DEFAULT_PLANS.items():
            plans.append(
                await self.upsert_plan(
                    plan_type,
                    name=data["name"],
                    description=data["description"],
                    price=data["price"],
                    duration_days=data["duration_days"],
                    features=data["features"],
                )
            )
        logger.info(f"Initialized {len(plans)} default plans")
        return plans
