"""
Audit Log Model.

WHAT: SQLAlchemy model for the administrative audit trail of subscriptions.

WHY: Every manual correction (suspend, restore, cancel, forced activation,
reconciliation) changes what a user is entitled to without a payment behind
it. Operators need to know who did it, when, and why:
- Immutable: rows are only ever inserted
- Complete: who, what, when and from where
- Indexed: by user and by subscription for support lookups

HOW: Append-only table written in the same transaction as the transition it
describes. Uses JSON for flexible storage of details.
(PostgreSQL uses JSONB semantics, SQLite uses JSON for compatibility)
"""

import enum
from sqlalchemy import Column, String, Enum, Text, JSON

from basketstats.models.base import Base, TimestampMixin, PrimaryKeyMixin


class AuditAction(str, enum.Enum):
    """
    Enumeration of auditable subscription actions.

    WHY: Using an enum ensures only valid, documented actions can be
    logged, making it easier to query and analyze audit data.
    """

    SUBSCRIPTION_SUSPENDED = "SUBSCRIPTION_SUSPENDED"
    SUBSCRIPTION_RESTORED = "SUBSCRIPTION_RESTORED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_FORCE_ACTIVATED = "SUBSCRIPTION_FORCE_ACTIVATED"
    RECONCILIATION_RUN = "RECONCILIATION_RUN"
    PLAN_UPSERTED = "PLAN_UPSERTED"
    PLANS_INITIALIZED = "PLANS_INITIALIZED"


class AuditLog(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Immutable audit log entry for an administrative action.

    Fields:
    - actor: operator identity as reported by the admin tool (or "system")
    - action: AuditAction
    - subscription_id / user_id: affected records, nullable for batch actions
    - details: action-specific context (reason, report, plan type)
    - request_id / ip_address: request context for correlation
    - created_at: Timestamp (from TimestampMixin)
    """

    __tablename__ = "subscription_audit_logs"

    actor = Column(String(255), nullable=False, default="system", index=True)
    action = Column(Enum(AuditAction), nullable=False, index=True)

    subscription_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)

    # NOTE: Named 'details' because 'metadata' is reserved by SQLAlchemy
    details = Column(JSON, nullable=True)

    request_id = Column(String(64), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action={self.action.value}, "
            f"actor={self.actor}, subscription_id={self.subscription_id})>"
        )
