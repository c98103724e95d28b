"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
ensures consistency across all models and reduces code duplication.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    WHY: Every DateTime column in this schema stores naive UTC, so all
    comparisons (end_date < now) must use the same representation.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    """Generate a string UUID4 primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    WHY: Most models need timestamp tracking for audit trails and debugging.
    Using a mixin ensures consistent timestamp behavior across all models.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.

    WHY: Catalog and ledger tables use an auto-incrementing integer key.
    """

    id = Column(Integer, primary_key=True, index=True)


class UUIDPrimaryKeyMixin:
    """
    Mixin to add a string UUID primary key to models.

    WHY: Subscription ids are handed to operators and to the payment
    provider correlation data, and reconciliation tie-breaks on them
    lexicographically, so they must be opaque strings rather than a
    guessable sequence.
    """

    id = Column(String(36), primary_key=True, default=new_uuid)
