"""Database package"""

from basketstats.db.session import AsyncSessionLocal, engine, get_db, get_session_factory
from basketstats.db.transaction import run_in_transaction
from basketstats.models.base import Base

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "engine",
    "get_db",
    "get_session_factory",
    "run_in_transaction",
]
