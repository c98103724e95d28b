"""
Subscription notification dispatch.

WHAT: Tells the rest of the platform (in-app notifications, e-mail) that a
subscription changed, by POSTing a JSON event to a configured webhook.

WHY: Delivery transports live outside this service. A slow or broken
notification endpoint must never delay or fail the PayTech acknowledgment
or an admin command, so dispatch happens after the response
(FastAPI BackgroundTasks) and failures are logged, never raised.

HOW: send() raises NotificationDeliveryError for callers that want to know;
send_safe() is the fire-and-forget wrapper used everywhere else.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from basketstats.core.config import settings
from basketstats.core.exceptions import NotificationDeliveryError
from basketstats.models.base import utcnow

logger = logging.getLogger(__name__)


class NotificationEvent(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    PAYMENT_RECEIVED = "subscription.payment_received"
    CHECKOUT_CANCELLED = "subscription.checkout_cancelled"
    SUBSCRIPTION_SUSPENDED = "subscription.suspended"
    SUBSCRIPTION_RESTORED = "subscription.restored"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


@dataclass(frozen=True)
class SubscriptionNotification:
    """One event destined for the notification webhook."""

    event: NotificationEvent
    user_id: str
    subscription_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "occurred_at": self.occurred_at.isoformat() + "Z",
            "data": self.data,
        }


class SubscriptionNotifier:
    """
    Posts subscription events to the notification webhook.

    Attributes:
        webhook_url: Receiver URL
        enabled: When False, events are only logged
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            webhook_url: Receiver URL (defaults to settings)
            enabled: Whether dispatch is enabled (defaults to settings)
            timeout: HTTP timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.webhook_url = webhook_url or settings.NOTIFICATION_WEBHOOK_URL
        self.enabled = (
            enabled if enabled is not None else settings.NOTIFICATION_WEBHOOK_ENABLED
        )
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.webhook_url)

    async def send(self, notification: SubscriptionNotification) -> bool:
        """
        Deliver one notification.

        Returns:
            True if delivered, False if dispatch is disabled

        Raises:
            NotificationDeliveryError: Non-2xx answer, timeout or connection error
        """
        if not self.is_configured:
            logger.info(
                f"Notification {notification.event.value} not dispatched (disabled)",
                extra={"user_id": notification.user_id},
            )
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=notification.to_payload())
        except httpx.TimeoutException as e:
            raise NotificationDeliveryError(
                message="Notification webhook timed out",
                timeout=self.timeout,
            ) from e
        except httpx.RequestError as e:
            raise NotificationDeliveryError(
                message="Failed to reach notification webhook",
                error=str(e),
            ) from e

        if response.status_code >= 300:
            raise NotificationDeliveryError(
                message="Notification webhook returned an error",
                response_status=response.status_code,
            )

        logger.info(
            f"Notification {notification.event.value} delivered",
            extra={"user_id": notification.user_id},
        )
        return True

    async def send_safe(self, notification: SubscriptionNotification) -> bool:
        """
        Deliver without raising.

        Returns:
            True if delivered, False otherwise
        """
        try:
            return await self.send(notification)
        except NotificationDeliveryError as e:
            logger.error(
                f"Failed to dispatch {notification.event.value}: {e.message}",
                extra={"user_id": notification.user_id},
            )
            return False
        except Exception as e:
            logger.error(
                f"Unexpected error dispatching {notification.event.value}: {e}",
                extra={"user_id": notification.user_id},
            )
            return False
