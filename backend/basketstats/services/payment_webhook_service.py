"""
PayTech notification processing.

WHAT: Turns one IPN delivery into at most one subscription effect and an
acknowledgment outcome.

WHY: PayTech delivers at least once, possibly concurrently, and retries
anything that is not acknowledged with a 2xx. Processing therefore has to be
idempotent per token and atomic: the ledger entry and the state change
commit together or not at all.

HOW:
1. Verify (AuthenticationFailed propagates to the route as 401)
2. Malformed but authentic payloads are acknowledged and recorded REJECTED
   when WEBHOOK_ACK_MALFORMED is on, so the provider stops retrying
3. In one transaction: claim the token, then apply the event through the
   state machine. A duplicate claim is reported, not applied.
4. Notifications are returned to the caller for dispatch after the response
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.config import settings
from basketstats.core.exceptions import DuplicateTransaction, MalformedPayload, PlanNotFound
from basketstats.db.transaction import run_in_transaction
from basketstats.models.base import utcnow
from basketstats.models.webhook_event import WebhookEventKind, WebhookOutcome
from basketstats.services.idempotency_ledger import IdempotencyLedger
from basketstats.services.notification_service import (
    NotificationEvent,
    SubscriptionNotification,
)
from basketstats.services.subscription_state_machine import SubscriptionStateMachine
from basketstats.services.webhook_verifier import (
    PaymentEvent,
    PaymentIntent,
    PaytechWebhookVerifier,
)

logger = logging.getLogger(__name__)

# Never part of a stored digest
AUTH_FIELDS = frozenset({"api_key_sha256", "api_secret_sha256", "hmac_compute"})


@dataclass
class WebhookProcessingResult:
    """
    What happened to one delivery.

    Attributes:
        outcome: APPLIED, DUPLICATE_IGNORED or REJECTED
        transaction_id: Provider token, when one could be read
        subscription_id: Row created or changed, if any
        reason: Why the delivery was rejected
        notifications: Events to dispatch once the response is sent
    """

    outcome: WebhookOutcome
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    reason: Optional[str] = None
    notifications: List[SubscriptionNotification] = field(default_factory=list)


def raw_payload_digest(payload: Mapping[str, Any]) -> str:
    """sha256 of a payload that could not be normalized, credentials excluded."""
    data = {str(k): str(v) for k, v in payload.items() if k not in AUTH_FIELDS}
    canonical = json.dumps(data, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class PaymentWebhookService:
    """
    Applies verified PayTech notifications.

    Example:
        service = PaymentWebhookService(get_session_factory(), verifier)
        result = await service.process(form_data)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        verifier: Optional[PaytechWebhookVerifier] = None,
        ack_malformed: Optional[bool] = None,
        clock: Callable = utcnow,
    ):
        """
        Args:
            session_factory: Factory for per-attempt sessions
            verifier: IPN verifier (defaults to one built from settings)
            ack_malformed: Acknowledge malformed payloads (defaults to settings)
            clock: Time source for the state machine
        """
        self.session_factory = session_factory
        self.verifier = verifier or PaytechWebhookVerifier()
        self.ack_malformed = (
            ack_malformed if ack_malformed is not None else settings.WEBHOOK_ACK_MALFORMED
        )
        self.clock = clock

    async def process(self, payload: Mapping[str, Any]) -> WebhookProcessingResult:
        """
        Verify and apply one delivery.

        Args:
            payload: Decoded form or JSON body

        Returns:
            WebhookProcessingResult

        Raises:
            AuthenticationFailed: Credentials or signature invalid
            MalformedPayload: Unparseable and WEBHOOK_ACK_MALFORMED is off
            PlanNotFound: Plan in custom_field unknown (422, nothing stored)
            ConflictingActiveSubscription, TransientStoreError: Not applied,
                the provider retry will try again
        """
        try:
            event = self.verifier.verify(payload)
        except MalformedPayload as e:
            return await self._reject(payload, e)

        try:
            return await run_in_transaction(
                self.session_factory,
                lambda session: self._apply(session, event),
                operation="paytech_ipn",
            )
        except DuplicateTransaction:
            return WebhookProcessingResult(
                outcome=WebhookOutcome.DUPLICATE_IGNORED,
                transaction_id=event.transaction_id,
            )
        except PlanNotFound as e:
            logger.error(
                f"IPN {event.transaction_id} references an unknown plan",
                extra={"transaction_id": event.transaction_id, "user_id": event.user_id},
            )
            raise PlanNotFound(
                message=e.message,
                status_code=422,
                transaction_id=event.transaction_id,
                plan_type=event.plan_type,
            ) from e

    async def _apply(self, session: AsyncSession, event: PaymentEvent) -> WebhookProcessingResult:
        ledger = IdempotencyLedger(session)
        await ledger.claim(
            event.transaction_id,
            event.digest(),
            event_kind=event.event_kind,
            ref_command=event.ref_command,
        )

        machine = SubscriptionStateMachine(session, clock=self.clock)

        if event.event_kind == WebhookEventKind.SALE_CANCELLED:
            cancelled = await machine.cancel_checkout(event.user_id, event.ref_command)
            logger.info(
                f"IPN {event.transaction_id}: sale cancelled "
                f"({'checkout closed' if cancelled else 'no pending checkout'})",
                extra={"transaction_id": event.transaction_id, "user_id": event.user_id},
            )
            return WebhookProcessingResult(
                outcome=WebhookOutcome.APPLIED,
                transaction_id=event.transaction_id,
                subscription_id=cancelled.id if cancelled else None,
                notifications=[
                    SubscriptionNotification(
                        event=NotificationEvent.CHECKOUT_CANCELLED,
                        user_id=event.user_id,
                        subscription_id=cancelled.id if cancelled else None,
                        data={"ref_command": event.ref_command},
                    )
                ],
            )

        if event.intent == PaymentIntent.ONE_OFF:
            logger.info(
                f"IPN {event.transaction_id}: one-off payment recorded",
                extra={"transaction_id": event.transaction_id, "user_id": event.user_id},
            )
            return WebhookProcessingResult(
                outcome=WebhookOutcome.APPLIED,
                transaction_id=event.transaction_id,
                notifications=[
                    SubscriptionNotification(
                        event=NotificationEvent.PAYMENT_RECEIVED,
                        user_id=event.user_id,
                        data={
                            "amount": event.amount_minor_units,
                            "currency": event.currency,
                            "item_name": event.item_name,
                        },
                    )
                ],
            )

        result = await machine.activate(
            event.user_id,
            event.plan_type,
            transaction_id=event.transaction_id,
            ref_command=event.ref_command,
            payment_method=event.payment_method,
        )
        subscription = result.subscription
        return WebhookProcessingResult(
            outcome=WebhookOutcome.APPLIED,
            transaction_id=event.transaction_id,
            subscription_id=subscription.id,
            notifications=[
                SubscriptionNotification(
                    event=NotificationEvent.SUBSCRIPTION_ACTIVATED,
                    user_id=event.user_id,
                    subscription_id=subscription.id,
                    data={
                        "plan_type": event.plan_type,
                        "end_date": (
                            subscription.end_date.isoformat() if subscription.end_date else None
                        ),
                        "amount": event.amount_minor_units,
                        "currency": event.currency,
                    },
                )
            ],
        )

    async def _reject(
        self, payload: Mapping[str, Any], error: MalformedPayload
    ) -> WebhookProcessingResult:
        token = payload.get("token")
        token = token[:255] if isinstance(token, str) and token else None
        logger.warning(
            f"Malformed PayTech notification: {error.message}",
            extra={"transaction_id": token},
        )
        if not self.ack_malformed:
            raise error

        outcome = WebhookOutcome.REJECTED
        if token is not None:
            digest = raw_payload_digest(payload)

            async def record(session: AsyncSession):
                return await IdempotencyLedger(session).record_if_new(
                    token, digest, outcome=WebhookOutcome.REJECTED
                )

            entry = await run_in_transaction(
                self.session_factory, record, operation="paytech_ipn_rejected"
            )
            if not entry.is_new:
                outcome = WebhookOutcome.DUPLICATE_IGNORED

        return WebhookProcessingResult(
            outcome=outcome,
            transaction_id=token,
            reason=error.message,
        )
