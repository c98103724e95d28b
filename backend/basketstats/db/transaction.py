"""
Unit-of-work runner with a single optimistic retry.

WHAT: Runs an async callable inside a fresh session and transaction, commits
on success, and maps store failures onto the application exception hierarchy.

WHY: Every mutation path (PayTech notifications, admin commands,
reconciliation) shares one concurrency policy:
- A unique-index violation (another instance activated the same user first)
  or a lost compare-and-swap is retried once from a fresh read.
- A second conflict surfaces as ConflictingActiveSubscription.
- Any other SQLAlchemy error becomes TransientStoreError with nothing
  committed; provider retries plus the idempotency ledger converge.

HOW: The callable receives the session and must not commit itself.
"""

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.exceptions import (
    ConflictingActiveSubscription,
    OptimisticLockConflict,
    TransientStoreError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 2


async def run_in_transaction(
    session_factory: async_sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    operation: str,
) -> T:
    """
    Execute `work` atomically, retrying once on a concurrency conflict.

    Args:
        session_factory: Factory producing AsyncSession instances
        work: Coroutine function doing the reads and guarded writes
        operation: Short label for logs

    Returns:
        Whatever `work` returned, after a successful commit

    Raises:
        ConflictingActiveSubscription: Conflict persisted after the retry
        TransientStoreError: Connectivity or other store failure
        AppException: Any domain error raised by `work` (rolled back)
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        async with session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except (IntegrityError, OptimisticLockConflict) as e:
                await session.rollback()
                if attempt < MAX_ATTEMPTS:
                    logger.warning(
                        f"Concurrency conflict during {operation}, retrying with fresh read",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    continue
                logger.error(
                    f"Concurrency conflict during {operation} persisted after retry",
                    extra={"operation": operation},
                )
                context = dict(e.context) if isinstance(e, OptimisticLockConflict) else {}
                context["operation"] = operation
                raise ConflictingActiveSubscription(
                    message=f"Concurrent update conflict during {operation}",
                    **context,
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    f"Store failure during {operation}: {e.__class__.__name__}",
                    extra={"operation": operation},
                )
                raise TransientStoreError(operation=operation) from e

    # Unreachable: the loop either returns or raises
    raise TransientStoreError(operation=operation)
