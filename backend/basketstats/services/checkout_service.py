"""
Subscription checkout.

WHAT: Starts a purchase: records a PENDING subscription and asks PayTech for
a hosted payment page. Free plans activate immediately.

WHY: The PENDING row carries the ref_command PayTech echoes back in its
notification, which lets SaleComplete promote the exact checkout and
SaleCancelled close it. The row is written before the provider call so the
notification can never arrive for a checkout we do not know.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from basketstats.core.config import settings
from basketstats.core.exceptions import PaymentProviderError
from basketstats.db.transaction import run_in_transaction
from basketstats.models.plan import PlanType
from basketstats.models.subscription import Subscription
from basketstats.schemas.paytech import PaytechPaymentRequest
from basketstats.services.paytech_client import PaytechClient
from basketstats.services.plan_catalog import PlanCatalog
from basketstats.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

FREE_PAYMENT_METHOD = "free"


def make_ref_command(user_id: str) -> str:
    """SUB_<user>_<epoch ms>, unique per checkout."""
    return f"SUB_{user_id}_{int(time.time() * 1000)}"


@dataclass
class CheckoutResult:
    subscription: Subscription
    ref_command: Optional[str] = None
    redirect_url: Optional[str] = None
    token: Optional[str] = None
    activated: bool = False


class CheckoutService:
    """Creates PayTech checkouts for subscription plans."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: Optional[PaytechClient] = None,
    ):
        self.session_factory = session_factory
        self.client = client or PaytechClient()

    async def start_checkout(self, user_id: str, plan_type: PlanType) -> CheckoutResult:
        """
        Begin a purchase of `plan_type`.

        Returns:
            CheckoutResult with the PayTech redirect_url, or activated=True
            for a free plan

        Raises:
            PlanNotFound: Unknown or inactive plan
            PaymentProviderError: PayTech refused or is unreachable (the
                PENDING row is cancelled again)
        """
        ref_command = make_ref_command(user_id)

        async def begin(session: AsyncSession):
            plan = await PlanCatalog(session).get_plan(plan_type)
            machine = SubscriptionStateMachine(session)
            if plan.is_free:
                result = await machine.activate(
                    user_id, plan_type, payment_method=FREE_PAYMENT_METHOD
                )
                return plan, result.subscription
            return plan, await machine.start_checkout(user_id, plan, ref_command)

        plan, subscription = await run_in_transaction(
            self.session_factory, begin, operation="checkout"
        )
        if plan.is_free:
            logger.info(
                f"Free plan {plan_type.value} activated for user {user_id}",
                extra={"user_id": user_id, "subscription_id": subscription.id},
            )
            return CheckoutResult(subscription=subscription, activated=True)

        request = PaytechPaymentRequest(
            item_name=f"Abonnement {plan.name}",
            item_price=plan.price,
            currency=plan.currency,
            ref_command=ref_command,
            command_name=f"Abonnement {plan.name} - {plan.duration_days} jours",
            env=settings.PAYTECH_ENV,
            ipn_url=settings.PAYTECH_IPN_URL,
            success_url=settings.PAYTECH_SUCCESS_URL,
            cancel_url=settings.PAYTECH_CANCEL_URL,
            custom_field=json.dumps(
                {
                    "user_id": user_id,
                    "plan_type": plan_type.value,
                    "plan_name": plan.name,
                    "subscription": True,
                }
            ),
        )
        try:
            answer = await self.client.request_payment(request)
        except PaymentProviderError:

            async def abandon(session: AsyncSession):
                return await SubscriptionStateMachine(session).cancel_checkout(
                    user_id, ref_command
                )

            await run_in_transaction(self.session_factory, abandon, operation="checkout_abandon")
            raise

        return CheckoutResult(
            subscription=subscription,
            ref_command=ref_command,
            redirect_url=answer.redirect_url,
            token=answer.token,
        )
