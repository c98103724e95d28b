"""
Audit Log Data Access Object (DAO).

WHAT: Data access layer for the subscription audit trail.

WHY: Support staff answer "why did this user lose access?" from this table.
Records are immutable, so the DAO exposes inserts and queries only.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.models.audit_log import AuditLog, AuditAction


class AuditLogDAO:
    """
    Data Access Object for audit log operations.

    WHY: Does not extend BaseDAO on purpose: there is no update path for
    audit rows.
    """

    def __init__(self, session: AsyncSession):
        """
        Args:
            session: Async database session
        """
        self.session = session

    async def create(
        self,
        action: AuditAction,
        actor: str = "system",
        subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        """
        Insert an audit log entry.

        Returns:
            The created AuditLog
        """
        entry = AuditLog(
            action=action,
            actor=actor,
            subscription_id=subscription_id,
            user_id=user_id,
            details=details,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_user(self, user_id: str, limit: int = 100) -> List[AuditLog]:
        """Entries concerning a user, newest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_subscription(self, subscription_id: str) -> List[AuditLog]:
        """Entries concerning one subscription, oldest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.subscription_id == subscription_id)
            .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        )
        return list(result.scalars().all())

    async def get_by_action(self, action: AuditAction, limit: int = 100) -> List[AuditLog]:
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.action == action)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
