"""
PayTech webhook verifier.

WHAT: Authenticates an inbound IPN and turns it into a PaymentEvent.

WHY: Nothing reaches the state machine unless it is both authentic and
well formed:
- Authentication: the IPN carries sha256(api_key) and sha256(api_secret),
  and optionally hmac_compute = HMAC-SHA256(api_secret,
  "item_price|ref_command|api_key"). Mismatch -> AuthenticationFailed.
- Parsing: the form and its JSON custom_field are decoded into typed
  models. Anything missing or mistyped -> MalformedPayload.

HOW: Pure computation, no I/O. Digests are compared with
hmac.compare_digest. Authentication always runs before parsing, so an
unauthenticated caller learns nothing about which fields were wrong.
"""

import enum
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from basketstats.core.config import settings
from basketstats.core.exceptions import AuthenticationFailed, MalformedPayload
from basketstats.models.base import utcnow
from basketstats.models.webhook_event import WebhookEventKind
from basketstats.schemas.paytech import PaytechCustomField, PaytechNotification

logger = logging.getLogger(__name__)

# Minor-unit exponent per currency; CFA francs have no subdivision
CURRENCY_EXPONENTS: Dict[str, int] = {
    "XOF": 0,
    "XAF": 0,
    "EUR": 2,
    "USD": 2,
}
DEFAULT_CURRENCY_EXPONENT = 2

EVENT_KINDS: Dict[str, WebhookEventKind] = {
    "sale_complete": WebhookEventKind.SALE_COMPLETE,
    "sale_canceled": WebhookEventKind.SALE_CANCELLED,
    "sale_cancelled": WebhookEventKind.SALE_CANCELLED,
}


class PaymentIntent(str, enum.Enum):
    """What the payer was buying, from the custom_field subscription flag."""

    SUBSCRIBE = "SUBSCRIBE"
    ONE_OFF = "ONE_OFF"


@dataclass(frozen=True)
class PaymentEvent:
    """
    A verified, normalized payment notification.

    Attributes:
        transaction_id: Provider token, the idempotency key
        user_id: Payer, from custom_field
        plan_type: Catalog key of the tier bought, None for one-off purchases
        intent: SUBSCRIBE or ONE_OFF
        amount_minor_units: item_price in minor units of currency
        currency: ISO 4217 code
        occurred_at: When the notification was verified
        event_kind: SALE_COMPLETE or SALE_CANCELLED
        ref_command: Checkout correlation id
        payment_method: Provider payment method label, if sent
        item_name: Provider item label, if sent
    """

    transaction_id: str
    user_id: str
    plan_type: Optional[str]
    intent: PaymentIntent
    amount_minor_units: int
    currency: str
    occurred_at: datetime
    event_kind: WebhookEventKind
    ref_command: str
    payment_method: Optional[str] = None
    item_name: Optional[str] = None

    def digest(self) -> str:
        """
        sha256 over the canonical JSON of the normalized fields.

        WHY: Stored in the ledger so a later delivery of the same token with
        different content can be spotted during an investigation.
        occurred_at is excluded: it is receipt time, not payload content.
        """
        data = asdict(self)
        data.pop("occurred_at")
        canonical = json.dumps(data, sort_keys=True, default=_json_default)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Unserializable value: {type(value).__name__}")


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def compute_ipn_hmac(item_price: str, ref_command: str, api_key: str, api_secret: str) -> str:
    """
    HMAC-SHA256 signature PayTech sends as hmac_compute.

    Args:
        item_price: item_price exactly as received
        ref_command: Checkout correlation id
        api_key: Our PayTech API key
        api_secret: Our PayTech API secret (HMAC key)

    Returns:
        Lowercase hex digest
    """
    message = f"{item_price}|{ref_command}|{api_key}"
    return hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a decimal amount to integer minor units.

    Raises:
        MalformedPayload: The amount has more precision than the currency
    """
    exponent = CURRENCY_EXPONENTS.get(currency, DEFAULT_CURRENCY_EXPONENT)
    scaled = amount.scaleb(exponent)
    if scaled != scaled.to_integral_value():
        raise MalformedPayload(
            message=f"Amount {amount} has too many decimals for {currency}",
            currency=currency,
        )
    return int(scaled)


class PaytechWebhookVerifier:
    """
    Verifies and normalizes PayTech IPN payloads.

    Example:
        verifier = PaytechWebhookVerifier()
        event = verifier.verify(form_data)   # raises on failure
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        require_hmac: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            api_key: PayTech API key (defaults to settings)
            api_secret: PayTech API secret (defaults to settings)
            require_hmac: Reject IPNs without hmac_compute (defaults to settings)
            clock: Source of occurred_at, injectable for tests
        """
        self.api_key = api_key if api_key is not None else settings.PAYTECH_API_KEY
        self.api_secret = api_secret if api_secret is not None else settings.PAYTECH_API_SECRET
        self.require_hmac = (
            require_hmac if require_hmac is not None else settings.PAYTECH_REQUIRE_HMAC
        )
        self.clock = clock

    def verify(self, payload: Mapping[str, Any]) -> PaymentEvent:
        """
        Authenticate then parse an IPN.

        Raises:
            AuthenticationFailed: Credentials or signature do not match
            MalformedPayload: Authentic but unparseable
        """
        self.authenticate(payload)
        return self.parse(payload)

    def authenticate(self, payload: Mapping[str, Any]) -> None:
        """
        Check the credential digests and, when present or required, the HMAC.

        Raises:
            AuthenticationFailed: On any mismatch or missing field
        """
        if not (self.api_key and self.api_secret):
            # Fail closed rather than accept everything when unconfigured
            raise AuthenticationFailed(message="PayTech credentials are not configured")

        key_digest = payload.get("api_key_sha256")
        secret_digest = payload.get("api_secret_sha256")
        if not isinstance(key_digest, str) or not isinstance(secret_digest, str):
            raise AuthenticationFailed(message="Missing PayTech credential digests")

        key_ok = hmac.compare_digest(sha256_hex(self.api_key), key_digest.strip().lower())
        secret_ok = hmac.compare_digest(
            sha256_hex(self.api_secret), secret_digest.strip().lower()
        )
        if not (key_ok and secret_ok):
            raise AuthenticationFailed(ref_command=_safe_str(payload.get("ref_command")))

        signature = payload.get("hmac_compute")
        if signature in (None, ""):
            if self.require_hmac:
                raise AuthenticationFailed(message="Missing HMAC signature")
            return

        expected = compute_ipn_hmac(
            str(payload.get("item_price", "")),
            str(payload.get("ref_command", "")),
            self.api_key,
            self.api_secret,
        )
        if not isinstance(signature, str) or not hmac.compare_digest(
            expected, signature.strip().lower()
        ):
            raise AuthenticationFailed(
                message="Invalid HMAC signature",
                ref_command=_safe_str(payload.get("ref_command")),
            )

    def parse(self, payload: Mapping[str, Any]) -> PaymentEvent:
        """
        Decode an (already authenticated) IPN into a PaymentEvent.

        Raises:
            MalformedPayload: Missing fields, bad types, bad custom_field JSON
        """
        transaction_id = _safe_str(payload.get("token"))
        try:
            notification = PaytechNotification.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise MalformedPayload(
                message="Invalid PayTech notification fields",
                transaction_id=transaction_id,
                errors=_error_fields(e),
            ) from e

        try:
            raw_custom = json.loads(notification.custom_field)
        except ValueError as e:
            raise MalformedPayload(
                message="custom_field is not valid JSON",
                transaction_id=transaction_id,
            ) from e
        if not isinstance(raw_custom, dict):
            raise MalformedPayload(
                message="custom_field must be a JSON object",
                transaction_id=transaction_id,
            )

        try:
            custom = PaytechCustomField.model_validate(raw_custom)
        except PydanticValidationError as e:
            raise MalformedPayload(
                message="Invalid custom_field content",
                transaction_id=transaction_id,
                errors=_error_fields(e),
            ) from e

        return PaymentEvent(
            transaction_id=notification.token,
            user_id=custom.user_id,
            plan_type=custom.plan_type if custom.subscription else None,
            intent=PaymentIntent.SUBSCRIBE if custom.subscription else PaymentIntent.ONE_OFF,
            amount_minor_units=to_minor_units(notification.item_price, notification.currency),
            currency=notification.currency,
            occurred_at=self.clock(),
            event_kind=EVENT_KINDS[notification.type_event],
            ref_command=notification.ref_command,
            payment_method=notification.payment_method,
            item_name=notification.item_name,
        )


def _safe_str(value: Any) -> Optional[str]:
    return value[:255] if isinstance(value, str) and value else None


def _error_fields(error: PydanticValidationError) -> list:
    """Field paths that failed validation, without the offending values."""
    return [".".join(str(loc) for loc in item["loc"]) for item in error.errors()]
