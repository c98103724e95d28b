"""
PayTech API client.

WHAT: Creates hosted payment requests on PayTech for subscription checkouts.

WHY: Checkout hands the payer over to PayTech's payment page. The
notification (IPN) for that payment later comes back to /paytech/ipn carrying
the ref_command and custom_field we send here.

HOW: Uses httpx async client. Credentials travel in the API_KEY / API_SECRET
headers as PayTech expects. Any non-success answer becomes
PaymentProviderError.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from basketstats.core.config import settings
from basketstats.core.exceptions import PaymentProviderError
from basketstats.schemas.paytech import PaytechPaymentRequest, PaytechPaymentResponse

logger = logging.getLogger(__name__)

REQUEST_PAYMENT_PATH = "/payment/request-payment"


class PaytechClient:
    """
    Thin async client for the PayTech payment API.

    Attributes:
        base_url: API root, e.g. https://paytech.sn/api
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: PayTech API key (defaults to settings)
            api_secret: PayTech API secret (defaults to settings)
            base_url: API root (defaults to settings)
            timeout: HTTP timeout (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.api_key = api_key if api_key is not None else settings.PAYTECH_API_KEY
        self.api_secret = api_secret if api_secret is not None else settings.PAYTECH_API_SECRET
        self.base_url = (base_url or settings.PAYTECH_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYTECH_TIMEOUT_SECONDS
        self._transport = transport

    async def request_payment(self, request: PaytechPaymentRequest) -> PaytechPaymentResponse:
        """
        Create a hosted payment.

        Args:
            request: Payment request body

        Returns:
            Provider answer with token and redirect_url

        Raises:
            PaymentProviderError: Not configured, unreachable or refused
        """
        if not (self.api_key and self.api_secret):
            raise PaymentProviderError(message="PayTech credentials are not configured")

        headers = {
            "API_KEY": self.api_key,
            "API_SECRET": self.api_secret,
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    REQUEST_PAYMENT_PATH,
                    json=request.model_dump(exclude_none=True),
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            logger.error(f"PayTech request timed out for {request.ref_command}")
            raise PaymentProviderError(
                message="Payment provider timed out",
                ref_command=request.ref_command,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"PayTech request error for {request.ref_command}: {e}")
            raise PaymentProviderError(
                message="Failed to reach payment provider",
                ref_command=request.ref_command,
            ) from e

        try:
            answer = PaytechPaymentResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise PaymentProviderError(
                message="Unexpected payment provider response",
                response_status=response.status_code,
            ) from e

        if response.status_code >= 300 or answer.success != 1 or not answer.redirect_url:
            logger.error(
                f"PayTech refused payment request {request.ref_command}: {answer.message}",
                extra={"ref_command": request.ref_command},
            )
            raise PaymentProviderError(
                message=answer.message or "Payment provider refused the request",
                ref_command=request.ref_command,
                response_status=response.status_code,
            )

        return answer
