"""
Idempotency ledger.

WHAT: Records which provider transaction tokens have been processed.

WHY: PayTech delivers each notification at least once and retries on any
non-2xx answer, sometimes while the first delivery is still in flight. The
effect of a token (activation, checkout cancellation) must be applied at
most once no matter how many deliveries arrive.

HOW: record_if_new() is a single INSERT ... ON CONFLICT DO NOTHING in the
caller's transaction. Because the entry commits or rolls back together with
the state change it guards, "recorded" and "applied" can never diverge:
a crash or PlanNotFound after the insert rolls the entry back too, and
the provider's retry is treated as new.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from basketstats.core.exceptions import DuplicateTransaction
from basketstats.dao.webhook_event import WebhookEventDAO
from basketstats.models.webhook_event import WebhookEvent, WebhookEventKind, WebhookOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerRecord:
    """Result of record_if_new."""

    transaction_id: str
    is_new: bool


class IdempotencyLedger:
    """Transaction-scoped access to the webhook ledger."""

    def __init__(self, session: AsyncSession):
        self.dao = WebhookEventDAO(session)

    async def record_if_new(
        self,
        transaction_id: str,
        payload_digest: str,
        outcome: WebhookOutcome = WebhookOutcome.APPLIED,
        event_kind: Optional[WebhookEventKind] = None,
        ref_command: Optional[str] = None,
    ) -> LedgerRecord:
        """
        Atomically claim a transaction token.

        Args:
            transaction_id: Provider token
            payload_digest: sha256 of the normalized payload
            outcome: APPLIED or REJECTED, stored with the entry
            event_kind: Normalized event kind, if parsed
            ref_command: Checkout correlation id, if parsed

        Returns:
            LedgerRecord with is_new True for exactly one caller per token
        """
        if outcome == WebhookOutcome.DUPLICATE_IGNORED:
            raise ValueError("Duplicates are reported, never stored")

        is_new = await self.dao.insert_if_absent(
            transaction_id=transaction_id,
            outcome=outcome,
            payload_digest=payload_digest,
            event_kind=event_kind,
            ref_command=ref_command,
        )
        if not is_new:
            logger.info(
                f"Duplicate delivery of transaction {transaction_id} ignored",
                extra={"transaction_id": transaction_id},
            )
        return LedgerRecord(transaction_id=transaction_id, is_new=is_new)

    async def claim(
        self,
        transaction_id: str,
        payload_digest: str,
        event_kind: Optional[WebhookEventKind] = None,
        ref_command: Optional[str] = None,
    ) -> None:
        """
        Claim a token for an effect that is about to be applied.

        Raises:
            DuplicateTransaction: The token was already processed
        """
        record = await self.record_if_new(
            transaction_id,
            payload_digest,
            outcome=WebhookOutcome.APPLIED,
            event_kind=event_kind,
            ref_command=ref_command,
        )
        if not record.is_new:
            raise DuplicateTransaction(transaction_id=transaction_id)

    async def get(self, transaction_id: str) -> Optional[WebhookEvent]:
        return await self.dao.get_by_transaction_id(transaction_id)
