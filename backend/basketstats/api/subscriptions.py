"""
Subscription API endpoints for platform users.

WHAT: REST API endpoints for subscription status and purchase:
1. GET /subscriptions/plans - List available plans
2. GET /subscriptions/current - Current ACTIVE subscription
3. GET /subscriptions/history - All subscriptions, newest first
4. GET /subscriptions/access - Dashboard entitlement and plan features
5. GET /subscriptions/features/{feature} - One feature gate
6. POST /subscriptions/checkout - Start a PayTech checkout

WHY: The basketball platform frontend gates its dashboard and features on
these answers, and users buy plans through checkout.

SECURITY (OWASP):
- A01: Every read is scoped to the caller's own user id
- A07: User identity comes from the authentication gateway
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.core.deps import (
    get_checkout_service,
    get_current_user_id,
    get_current_user_is_admin,
)
from basketstats.db.session import get_db
from basketstats.schemas.subscription import (
    AccessResponse,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    FeatureAccessResponse,
    PlanResponse,
    PlansResponse,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
)
from basketstats.services.checkout_service import CheckoutService
from basketstats.services.entitlement_service import EntitlementService
from basketstats.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


# ============================================================================
# Plan Information
# ============================================================================


@router.get(
    "/plans",
    response_model=PlansResponse,
    summary="List available subscription plans",
)
async def list_plans(db: AsyncSession = Depends(get_db)):
    """
    List active plans, cheapest first.

    WHY: Public information for the pricing page; no identity required.
    """
    plans = await PlanCatalog(db).list_plans()
    return PlansResponse(plans=[PlanResponse.model_validate(plan) for plan in plans])


# ============================================================================
# Current User
# ============================================================================


@router.get(
    "/current",
    response_model=CurrentSubscriptionResponse,
    summary="Get current subscription",
)
async def get_current_subscription(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    subscription = await EntitlementService(db).get_current_subscription(user_id)
    if subscription is None:
        return CurrentSubscriptionResponse(has_subscription=False)
    return CurrentSubscriptionResponse(
        has_subscription=True,
        subscription=SubscriptionResponse.model_validate(subscription),
    )


@router.get(
    "/history",
    response_model=SubscriptionHistoryResponse,
    summary="Get subscription history",
)
async def get_subscription_history(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    items = await EntitlementService(db).list_subscription_history(user_id)
    return SubscriptionHistoryResponse(
        items=[SubscriptionResponse.model_validate(item) for item in items],
        total=len(items),
    )


@router.get(
    "/access",
    response_model=AccessResponse,
    summary="Check dashboard access",
)
async def get_access(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    is_admin: bool = Depends(get_current_user_is_admin),
):
    """
    Dashboard entitlement for the caller.

    WHY: Administrators always pass; everyone else needs an ACTIVE,
    unexpired subscription of any plan.
    """
    service = EntitlementService(db)
    subscription = await service.get_current_subscription(user_id)
    if subscription is None:
        return AccessResponse(can_access_dashboard=is_admin)
    return AccessResponse(
        can_access_dashboard=True,
        plan_type=subscription.plan.type,
        features=subscription.plan.features or {},
        end_date=subscription.end_date,
    )


@router.get(
    "/features/{feature}",
    response_model=FeatureAccessResponse,
    summary="Check one feature",
)
async def get_feature_access(
    feature: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    service = EntitlementService(db)
    return FeatureAccessResponse(
        feature=feature,
        allowed=await service.can_access_feature(user_id, feature),
        limit=await service.get_feature_limit(user_id, feature),
    )


# ============================================================================
# Checkout
# ============================================================================


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Start a subscription checkout",
    description="Creates a PayTech payment for the plan, or activates a free plan directly.",
)
async def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = await service.start_checkout(user_id, request.plan_type)
    logger.info(
        f"Checkout for {request.plan_type.value} by user {user_id}",
        extra={"user_id": user_id, "subscription_id": result.subscription.id},
    )
    return CheckoutResponse(
        subscription_id=result.subscription.id,
        status=result.subscription.status,
        ref_command=result.ref_command,
        redirect_url=result.redirect_url,
        token=result.token,
        activated=result.activated,
    )
