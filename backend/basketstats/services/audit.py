"""
Audit logging service.

WHAT: Service layer for recording administrative subscription actions.

WHY: Suspensions, restorations, cancellations and forced activations change
a user's access without a payment behind them. Each one is written to the
audit trail with the operator and request context.

HOW: Uses the AuditLogDAO for persistence and the RequestContext middleware
for automatic request id / IP / user-agent capture. Unlike a fire-and-forget
logger, entries are written in the caller's transaction: if the audit row
cannot be written the transition it describes is rolled back with it.
"""

import logging
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.dao.audit_log import AuditLogDAO
from basketstats.models.audit_log import AuditLog, AuditAction
from basketstats.models.subscription import Subscription
from basketstats.middleware.request_context import get_request_context

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditService:
    """
    Service for creating audit log entries.

    Example:
        audit = AuditService(session)
        await audit.log_suspended(subscription, actor="ops@basketstats", reason="chargeback")
    """

    def __init__(self, session: AsyncSession):
        """
        Args:
            session: Async database session shared with the audited transition
        """
        self.dao = AuditLogDAO(session)

    async def log_event(
        self,
        action: AuditAction,
        actor: Optional[str] = None,
        subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Log a generic audit event.

        Args:
            action: Type of event (from AuditAction enum)
            actor: Operator identity, defaults to "system"
            subscription_id: Affected subscription (optional)
            user_id: Affected user (optional)
            details: Additional context

        Returns:
            Created AuditLog
        """
        ctx = get_request_context()
        entry = await self.dao.create(
            action=action,
            actor=actor or SYSTEM_ACTOR,
            subscription_id=subscription_id,
            user_id=user_id,
            details=details,
            request_id=ctx.request_id if ctx else None,
            ip_address=ctx.ip_address if ctx else None,
            user_agent=ctx.user_agent if ctx else None,
        )
        logger.info(
            f"Audit: {action.value} by {entry.actor}",
            extra={
                "audit_action": action.value,
                "subscription_id": subscription_id,
                "user_id": user_id,
            },
        )
        return entry

    # =========================================================================
    # Subscription Events
    # =========================================================================

    async def log_suspended(
        self, subscription: Subscription, actor: Optional[str], reason: str
    ) -> AuditLog:
        return await self.log_event(
            AuditAction.SUBSCRIPTION_SUSPENDED,
            actor=actor,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            details={"reason": reason},
        )

    async def log_restored(self, subscription: Subscription, actor: Optional[str]) -> AuditLog:
        return await self.log_event(
            AuditAction.SUBSCRIPTION_RESTORED,
            actor=actor,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
        )

    async def log_cancelled(
        self,
        subscription: Subscription,
        actor: Optional[str],
        reason: Optional[str] = None,
        previous_status: Optional[str] = None,
    ) -> AuditLog:
        return await self.log_event(
            AuditAction.SUBSCRIPTION_CANCELLED,
            actor=actor,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            details={"reason": reason, "previous_status": previous_status},
        )

    async def log_force_activated(
        self,
        subscription: Subscription,
        actor: Optional[str],
        plan_type: str,
        superseded_ids: list,
    ) -> AuditLog:
        return await self.log_event(
            AuditAction.SUBSCRIPTION_FORCE_ACTIVATED,
            actor=actor,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            details={"plan_type": plan_type, "superseded_ids": superseded_ids},
        )

    # =========================================================================
    # Batch & Catalog Events
    # =========================================================================

    async def log_reconciliation(
        self, actor: Optional[str], user_id: str, item: Dict[str, Any]
    ) -> AuditLog:
        """
        Record the repair of one user by reconciliation.

        Args:
            actor: Operator, or None for the scheduled job
            user_id: User whose duplicate ACTIVE rows were cancelled
            item: Serialized ReconciliationItem
        """
        return await self.log_event(
            AuditAction.RECONCILIATION_RUN,
            actor=actor,
            user_id=user_id,
            details=item,
        )

    async def log_plan_upserted(self, plan_type: str, actor: Optional[str]) -> AuditLog:
        return await self.log_event(
            AuditAction.PLAN_UPSERTED,
            actor=actor,
            details={"plan_type": plan_type},
        )

    async def log_plans_initialized(
        self, plan_types: list, actor: Optional[str]
    ) -> AuditLog:
        return await self.log_event(
            AuditAction.PLANS_INITIALIZED,
            actor=actor,
            details={"plan_types": plan_types},
        )
