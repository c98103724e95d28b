"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from basketstats.dao.base import BaseDAO
from basketstats.dao.plan import PlanDAO
from basketstats.dao.subscription import SubscriptionDAO
from basketstats.dao.webhook_event import WebhookEventDAO
from basketstats.dao.audit_log import AuditLogDAO

__all__ = [
    "BaseDAO",
    "PlanDAO",
    "SubscriptionDAO",
    "WebhookEventDAO",
    "AuditLogDAO",
]
