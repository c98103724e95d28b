"""
Webhook Event Data Access Object (DAO).

WHAT: The idempotency ledger's storage primitive.

WHY: "Have we processed this token?" must be answered by one atomic
statement. A SELECT followed by an INSERT lets two concurrent deliveries both
see "not yet" and both apply their effect.

HOW: INSERT ... ON CONFLICT (transaction_id) DO NOTHING, using the
PostgreSQL or SQLite dialect insert. The affected row count tells the caller
whether it won. A concurrent inserter of the same token blocks on the
unique index until the first transaction commits or rolls back, then
either loses (0 rows) or takes over (1 row).
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.dao.base import BaseDAO
from basketstats.models.base import utcnow
from basketstats.models.webhook_event import WebhookEvent, WebhookEventKind, WebhookOutcome

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class WebhookEventDAO(BaseDAO[WebhookEvent]):
    """Data Access Object for the webhook ledger. Insert-only."""

    def __init__(self, session: AsyncSession):
        super().__init__(WebhookEvent, session)

    async def insert_if_absent(
        self,
        transaction_id: str,
        outcome: WebhookOutcome,
        payload_digest: str,
        event_kind: Optional[WebhookEventKind] = None,
        ref_command: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically record a token unless it is already present.

        Args:
            transaction_id: Provider token (idempotency key)
            outcome: Outcome to store with the entry
            payload_digest: sha256 of the normalized payload
            event_kind: Normalized event kind, None if unparseable
            ref_command: Checkout correlation id, if known
            received_at: Receipt time (defaults to now)

        Returns:
            True if this call inserted the entry, False if it existed

        Raises:
            NotImplementedError: For a backend without ON CONFLICT support
        """
        dialect = self.session.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"Idempotency ledger does not support dialect {dialect!r}")

        stmt = (
            insert(WebhookEvent)
            .values(
                transaction_id=transaction_id,
                outcome=outcome,
                payload_digest=payload_digest,
                event_kind=event_kind,
                ref_command=ref_command,
                received_at=received_at or utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[WebhookEvent]:
        return await self.get_by_field("transaction_id", transaction_id)

    async def list_recent(self, limit: int = 50) -> List[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent).order_by(WebhookEvent.received_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
