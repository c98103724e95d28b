"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from basketstats.models.base import (
    Base,
    TimestampMixin,
    PrimaryKeyMixin,
    UUIDPrimaryKeyMixin,
    utcnow,
)
from basketstats.models.plan import Plan, PlanType, DEFAULT_PLANS
from basketstats.models.subscription import (
    Subscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    DEFAULT_PAYMENT_METHOD,
)
from basketstats.models.webhook_event import WebhookEvent, WebhookOutcome, WebhookEventKind
from basketstats.models.audit_log import AuditLog, AuditAction

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "UUIDPrimaryKeyMixin",
    "utcnow",
    "Plan",
    "PlanType",
    "DEFAULT_PLANS",
    "Subscription",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "DEFAULT_PAYMENT_METHOD",
    "WebhookEvent",
    "WebhookOutcome",
    "WebhookEventKind",
    "AuditLog",
    "AuditAction",
]
