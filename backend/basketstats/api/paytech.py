"""
PayTech IPN endpoint.

WHAT: POST /paytech/ipn receives PayTech payment notifications.

WHY: Notifications are the only source of truth for payments. The
endpoint acknowledges with 200 whenever the delivery was applied, was a
duplicate, or was malformed but authentic (per WEBHOOK_ACK_MALFORMED), so
PayTech stops retrying. Everything that might succeed on retry (unknown
plan, store outage, conflict) gets a non-2xx answer instead.

SECURITY (OWASP):
- A02: Credential digests and HMAC verified before any processing
- A09: Secrets never logged
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from basketstats.core.deps import get_notifier, get_webhook_service
from basketstats.core.exceptions import ValidationError
from basketstats.models.webhook_event import WebhookOutcome
from basketstats.schemas.subscription import WebhookAckResponse
from basketstats.services.notification_service import SubscriptionNotifier
from basketstats.services.payment_webhook_service import PaymentWebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/paytech", tags=["PayTech"])

ACK_OUTCOMES = {
    WebhookOutcome.APPLIED: "applied",
    WebhookOutcome.DUPLICATE_IGNORED: "duplicate",
    WebhookOutcome.REJECTED: "rejected",
}


async def read_payload(request: Request) -> Dict[str, Any]:
    """
    Decode a form or JSON body into a flat mapping.

    Raises:
        ValidationError: Body is neither a form nor a JSON object
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError(message="Body is not valid JSON") from e
        if not isinstance(body, dict):
            raise ValidationError(message="Body must be a JSON object")
        return body

    if content_type.startswith(
        ("application/x-www-form-urlencoded", "multipart/form-data")
    ):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raise ValidationError(message="Unsupported content type", content_type=content_type)


@router.post(
    "/ipn",
    response_model=WebhookAckResponse,
    summary="PayTech payment notification",
    description="Receives PayTech IPN deliveries (sale_complete / sale_canceled).",
)
async def paytech_ipn(
    request: Request,
    background_tasks: BackgroundTasks,
    service: PaymentWebhookService = Depends(get_webhook_service),
    notifier: SubscriptionNotifier = Depends(get_notifier),
):
    """
    Verify, deduplicate and apply one PayTech notification.

    Returns:
        Acknowledgment with the processing outcome
    """
    payload = await read_payload(request)
    result = await service.process(payload)

    for notification in result.notifications:
        background_tasks.add_task(notifier.send_safe, notification)

    logger.info(
        f"PayTech IPN {result.transaction_id}: {result.outcome.value}",
        extra={
            "transaction_id": result.transaction_id,
            "outcome": result.outcome.value,
            "subscription_id": result.subscription_id,
        },
    )
    return WebhookAckResponse(
        outcome=ACK_OUTCOMES[result.outcome],
        transaction_id=result.transaction_id,
    )
