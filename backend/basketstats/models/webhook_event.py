"""
Webhook event ledger model.

WHAT: One row per distinct payment notification the service has processed.

WHY: Payment providers deliver notifications at least once, sometimes
concurrently. The unique constraint on transaction_id turns "have we seen
this token?" into a single atomic insert, so only one delivery of a given
token can ever apply its effect.

HOW: Rows are append-only. The outcome is decided in the same transaction
that applies (or declines) the state change, so a rolled-back attempt
leaves no ledger row and the provider retry is processed afresh.
"""

import enum

from sqlalchemy import Column, String, Enum, DateTime, UniqueConstraint

from basketstats.models.base import Base, PrimaryKeyMixin, utcnow


class WebhookOutcome(str, enum.Enum):
    """
    Result of handling one notification.

    DUPLICATE_IGNORED is reported to callers but never stored: a duplicate
    is by definition a delivery whose token already has a row.
    """

    APPLIED = "APPLIED"
    DUPLICATE_IGNORED = "DUPLICATE_IGNORED"
    REJECTED = "REJECTED"


class WebhookEventKind(str, enum.Enum):
    """Normalized provider event kinds."""

    SALE_COMPLETE = "SALE_COMPLETE"
    SALE_CANCELLED = "SALE_CANCELLED"


class WebhookEvent(Base, PrimaryKeyMixin):
    """Immutable ledger entry keyed by the provider transaction token."""

    __tablename__ = "webhook_events"

    transaction_id = Column(String(255), nullable=False)
    event_kind = Column(Enum(WebhookEventKind), nullable=True)
    outcome = Column(Enum(WebhookOutcome), nullable=False)
    payload_digest = Column(String(64), nullable=False, doc="sha256 of the normalized payload")
    ref_command = Column(String(255), nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_webhook_events_transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(transaction_id={self.transaction_id}, "
            f"outcome={self.outcome.value})>"
        )
