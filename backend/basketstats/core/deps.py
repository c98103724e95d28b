"""
FastAPI dependencies for caller identity and collaborators.

WHY: Dependencies provide reusable identity checks and service wiring that
can be injected into route handlers and overridden in tests.

Identity model:
- End users are authenticated by the platform gateway, which forwards the
  user id in X-User-Id and the role in X-User-Role.
- The administrative surface requires X-Admin-Token matching
  ADMIN_API_TOKEN; X-Admin-Actor names the operator for the audit log.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import async_sessionmaker

from basketstats.core.config import settings
from basketstats.core.exceptions import AuthenticationError, AuthorizationError
from basketstats.db.session import get_session_factory
from basketstats.services.checkout_service import CheckoutService
from basketstats.services.notification_service import SubscriptionNotifier
from basketstats.services.paytech_client import PaytechClient
from basketstats.services.payment_webhook_service import PaymentWebhookService
from basketstats.services.subscription_admin_service import SubscriptionAdminService
from basketstats.services.webhook_verifier import PaytechWebhookVerifier

ADMIN_ROLE = "ADMIN"
DEFAULT_ADMIN_ACTOR = "admin"


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """
    Get the authenticated user's id from the gateway header.

    Raises:
        AuthenticationError: Header missing or empty
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError(message="Missing user identity")
    return x_user_id.strip()[:64]


async def get_current_user_is_admin(
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> bool:
    """Whether the gateway flagged the caller as an administrator."""
    return bool(x_user_role) and x_user_role.strip().upper() == ADMIN_ROLE


async def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    """
    Require the shared admin token.

    WHY: When ADMIN_API_TOKEN is unset the admin surface is closed, never
    open.

    Raises:
        AuthenticationError: Token missing
        AuthorizationError: Token wrong, or admin surface not configured
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise AuthorizationError(message="Admin API is not configured")
    if not x_admin_token:
        raise AuthenticationError(message="Missing admin token")
    if not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise AuthorizationError(message="Invalid admin token")


async def get_admin_actor(
    x_admin_actor: Optional[str] = Header(None, alias="X-Admin-Actor"),
) -> str:
    """Operator identity recorded in the audit log."""
    if x_admin_actor and x_admin_actor.strip():
        return x_admin_actor.strip()[:255]
    return DEFAULT_ADMIN_ACTOR


def get_verifier() -> PaytechWebhookVerifier:
    return PaytechWebhookVerifier()


def get_notifier() -> SubscriptionNotifier:
    return SubscriptionNotifier()


def get_paytech_client() -> PaytechClient:
    return PaytechClient()


def get_webhook_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    verifier: PaytechWebhookVerifier = Depends(get_verifier),
) -> PaymentWebhookService:
    return PaymentWebhookService(session_factory, verifier)


def get_admin_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> SubscriptionAdminService:
    return SubscriptionAdminService(session_factory)


def get_checkout_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: PaytechClient = Depends(get_paytech_client),
) -> CheckoutService:
    return CheckoutService(session_factory, client)
