"""
Admin API endpoints.

WHAT: RESTful API for subscription support operations.

WHY: Operators need to:
1. Suspend, restore and cancel subscriptions during payment disputes
2. Grant a plan by hand
3. Repair duplicate ACTIVE rows and run the expiration sweep on demand
4. Maintain the plan catalog

HOW: FastAPI router guarded by the admin token on every endpoint. Every
mutation is audited in the same transaction as the change.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.deps import (
    get_admin_actor,
    get_admin_service,
    get_notifier,
    require_admin,
)
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.db.session import get_db, get_session_factory
from basketstats.models.plan import PlanType
from basketstats.schemas.subscription import (
    CancelRequest,
    ForceActivateRequest,
    PlanResponse,
    PlansResponse,
    PlanUpsertRequest,
    ReconciliationReportResponse,
    SubscriptionResponse,
    SubscriptionStatsResponse,
    SuspendRequest,
    SweepResponse,
    UserSubscriptionsResponse,
)
from basketstats.services.entitlement_service import EntitlementService
from basketstats.services.expiration_sweep import ExpirationSweepService
from basketstats.services.notification_service import SubscriptionNotifier
from basketstats.services.reconciliation_service import ReconciliationService
from basketstats.services.subscription_admin_service import (
    AdminCommandResult,
    SubscriptionAdminService,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _respond(
    result: AdminCommandResult,
    background_tasks: BackgroundTasks,
    notifier: SubscriptionNotifier,
) -> SubscriptionResponse:
    if result.notification is not None:
        background_tasks.add_task(notifier.send_safe, result.notification)
    return SubscriptionResponse.model_validate(result.subscription)


# ============================================================================
# Subscription Commands
# ============================================================================


@router.post(
    "/subscriptions/force-activate",
    response_model=SubscriptionResponse,
    summary="Grant a plan without payment",
)
async def force_activate(
    request: ForceActivateRequest,
    background_tasks: BackgroundTasks,
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
    notifier: SubscriptionNotifier = Depends(get_notifier),
):
    result = await service.force_activate(request.user_id, request.plan_type, actor=actor)
    return _respond(result, background_tasks, notifier)


@router.post(
    "/subscriptions/reconcile",
    response_model=ReconciliationReportResponse,
    summary="Repair users holding several active subscriptions",
)
async def reconcile(
    dry_run: bool = Query(False, description="Report without writing"),
    actor: str = Depends(get_admin_actor),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    report = await ReconciliationService(session_factory).reconcile(dry_run=dry_run, actor=actor)
    return ReconciliationReportResponse(**report.to_dict())


@router.post(
    "/subscriptions/sweep",
    response_model=SweepResponse,
    summary="Run the expiration sweep now",
)
async def sweep(session_factory: async_sessionmaker = Depends(get_session_factory)):
    stats = await ExpirationSweepService(session_factory).run_sweep()
    return SweepResponse(**stats)


@router.get(
    "/subscriptions/stats",
    response_model=SubscriptionStatsResponse,
    summary="Subscription counts and invariant check",
)
async def subscription_stats(db: AsyncSession = Depends(get_db)):
    dao = SubscriptionDAO(db)
    return SubscriptionStatsResponse(
        counts=await dao.count_by_status(),
        users_with_multiple_active=await dao.find_users_with_multiple_active(),
    )


@router.get(
    "/subscriptions/users/{user_id}",
    response_model=UserSubscriptionsResponse,
    summary="Inspect one user's subscriptions",
)
async def get_user_subscriptions(user_id: str, db: AsyncSession = Depends(get_db)):
    service = EntitlementService(db)
    active = await service.get_current_subscription(user_id)
    history = await service.list_subscription_history(user_id)
    return UserSubscriptionsResponse(
        user_id=user_id,
        active=SubscriptionResponse.model_validate(active) if active else None,
        history=[SubscriptionResponse.model_validate(item) for item in history],
    )


@router.post(
    "/subscriptions/{subscription_id}/suspend",
    response_model=SubscriptionResponse,
    summary="Suspend an active subscription",
)
async def suspend_subscription(
    subscription_id: str,
    request: SuspendRequest,
    background_tasks: BackgroundTasks,
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
    notifier: SubscriptionNotifier = Depends(get_notifier),
):
    result = await service.suspend(subscription_id, request.reason, actor=actor)
    return _respond(result, background_tasks, notifier)


@router.post(
    "/subscriptions/{subscription_id}/restore",
    response_model=SubscriptionResponse,
    summary="Restore a suspended subscription",
)
async def restore_subscription(
    subscription_id: str,
    background_tasks: BackgroundTasks,
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
    notifier: SubscriptionNotifier = Depends(get_notifier),
):
    result = await service.restore(subscription_id, actor=actor)
    return _respond(result, background_tasks, notifier)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel a subscription",
)
async def cancel_subscription(
    subscription_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[CancelRequest] = None,
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
    notifier: SubscriptionNotifier = Depends(get_notifier),
):
    reason = request.reason if request else None
    result = await service.cancel(subscription_id, actor=actor, reason=reason)
    return _respond(result, background_tasks, notifier)


# ============================================================================
# Plan Catalog
# ============================================================================


@router.post(
    "/plans/initialize",
    response_model=PlansResponse,
    summary="Seed the default plans",
)
async def initialize_plans(
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
):
    plans = await service.initialize_plans(actor=actor)
    return PlansResponse(plans=[PlanResponse.model_validate(plan) for plan in plans])


@router.put(
    "/plans/{plan_type}",
    response_model=PlanResponse,
    summary="Create or replace a plan",
)
async def upsert_plan(
    plan_type: PlanType,
    request: PlanUpsertRequest,
    actor: str = Depends(get_admin_actor),
    service: SubscriptionAdminService = Depends(get_admin_service),
):
    plan = await service.upsert_plan(plan_type, request.model_dump(), actor=actor)
    return PlanResponse.model_validate(plan)
