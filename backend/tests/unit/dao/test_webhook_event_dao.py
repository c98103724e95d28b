"""
Tests for WebhookEventDAO.

WHY: insert_if_absent is the single atomic statement behind idempotent
webhook processing. Exactly one caller may win per token.
"""

import pytest

from basketstats.dao.webhook_event import WebhookEventDAO
from basketstats.models.webhook_event import WebhookEventKind, WebhookOutcome


@pytest.mark.asyncio
class TestInsertIfAbsent:
    async def test_first_insert_wins(self, db_session):
        dao = WebhookEventDAO(db_session)

        assert await dao.insert_if_absent("tok_1", WebhookOutcome.APPLIED, "digest") is True
        assert await dao.insert_if_absent("tok_1", WebhookOutcome.APPLIED, "other") is False

    async def test_existing_entry_unchanged(self, db_session):
        """Verify a losing insert does not overwrite the stored entry."""
        dao = WebhookEventDAO(db_session)
        await dao.insert_if_absent(
            "tok_1",
            WebhookOutcome.REJECTED,
            "digest-a",
            event_kind=WebhookEventKind.SALE_COMPLETE,
            ref_command="SUB_1",
        )
        await dao.insert_if_absent("tok_1", WebhookOutcome.APPLIED, "digest-b")

        entry = await dao.get_by_transaction_id("tok_1")
        assert entry.outcome == WebhookOutcome.REJECTED
        assert entry.payload_digest == "digest-a"
        assert entry.ref_command == "SUB_1"

    async def test_rolled_back_insert_leaves_no_entry(self, session_factory):
        """
        Verify the entry lives and dies with its transaction.

        WHY: A PlanNotFound after the claim must leave the token free for
        the provider retry.
        """
        async with session_factory() as session:
            await WebhookEventDAO(session).insert_if_absent(
                "tok_1", WebhookOutcome.APPLIED, "digest"
            )
            await session.rollback()

        async with session_factory() as session:
            assert await WebhookEventDAO(session).get_by_transaction_id("tok_1") is None

    async def test_list_recent(self, db_session):
        dao = WebhookEventDAO(db_session)
        for i in range(3):
            await dao.insert_if_absent(f"tok_{i}", WebhookOutcome.APPLIED, "digest")

        assert len(await dao.list_recent(limit=2)) == 2
