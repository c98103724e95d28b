"""
Subscription model for per-user plan subscriptions.

WHY: Subscriptions record which plan a user paid for and when it runs out:
1. PayTech IPN notifications activate subscriptions
2. Administrators suspend, restore and cancel them
3. Rows are never deleted, so the table is the user's full history

INVARIANT:
- At most one row per user is ACTIVE at any instant. This is enforced by a
  partial unique index on user_id restricted to status = 'ACTIVE', so a
  second concurrent activation fails at commit rather than slipping through.

ARCHITECTURE:
- The "current" subscription is derived (the ACTIVE row), never cached
- Status changes go through compare-and-swap updates in SubscriptionDAO
- transaction_id is the provider token and is unique when present
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    ForeignKey,
    DateTime,
    Index,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from basketstats.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription lifecycle states.

    Statuses:
    - PENDING: checkout started, waiting for the provider notification
    - ACTIVE: paid (or granted) and entitling
    - SUSPENDED: frozen by an administrator, not entitling, restorable
    - CANCELLED: terminal, superseded or cancelled
    - EXPIRED: terminal, end_date passed without renewal
    """

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# Statuses a row can never leave
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

DEFAULT_PAYMENT_METHOD = "mobile_money"


class Subscription(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    One subscription period for one user.

    Fields:
    - user_id: owner, issued by the authentication service
    - plan_id: the plan this period was bought for
    - status: SubscriptionStatus
    - start_date / end_date: validity window, end_date None = perpetual
    - suspended_at / suspended_reason / restored_at: admin recovery trail
    - cancelled_at: when the row became CANCELLED
    - transaction_id: provider token of the payment that activated the row
    - ref_command: checkout correlation id sent to the provider
    - payment_method: provider payment method label
    """

    __tablename__ = "subscriptions"

    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True, doc="None means perpetual")

    # Admin recovery trail
    suspended_at = Column(DateTime, nullable=True)
    suspended_reason = Column(Text, nullable=True)
    restored_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Payment correlation
    transaction_id = Column(String(255), nullable=True, unique=True)
    ref_command = Column(String(255), nullable=True, index=True)
    payment_method = Column(String(50), nullable=False, default=DEFAULT_PAYMENT_METHOD)

    plan = relationship("Plan", lazy="joined", innerjoin=True)

    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_id={self.plan_id}, status={self.status.value})>"
        )

    @property
    def is_active(self) -> bool:
        """Whether the row is ACTIVE (regardless of end_date)."""
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_past_end(self, now: Optional[datetime] = None) -> bool:
        """
        Check whether the validity window has closed.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            True if end_date is set and already passed
        """
        if self.end_date is None:
            return False
        return self.end_date < (now or utcnow())

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        """Days until end_date, or None for perpetual subscriptions."""
        if self.end_date is None:
            return None
        delta = self.end_date - (now or utcnow())
        return max(0, delta.days)
