"""
PayTech notification schemas.

WHAT: Typed decoding of the IPN form body and of its nested custom_field.

WHY: The provider posts a flat key/value form in which custom_field is itself
a JSON document that we authored at checkout. Decoding both once at the
boundary, with unknown keys in custom_field rejected, replaces ad hoc
dictionary access with a validated structure. Anything that fails here is a
MalformedPayload.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PaytechCustomField(BaseModel):
    """
    Checkout metadata round-tripped through the provider.

    Fields mirror what start_checkout() serializes:
    {"user_id": ..., "plan_type": ..., "plan_name": ..., "subscription": true}
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)
    # Resolved against the live catalog when applied, not here
    plan_type: Optional[str] = Field(default=None, min_length=1, max_length=32)
    plan_name: Optional[str] = None
    subscription: bool = False

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_numeric_user_id(cls, value):
        # Older checkouts serialized numeric ids
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="after")
    def plan_required_for_subscription(self) -> "PaytechCustomField":
        if self.subscription and self.plan_type is None:
            raise ValueError("plan_type is required for subscription payments")
        return self


class PaytechNotification(BaseModel):
    """
    The IPN body, minus the authentication fields.

    WHY: extra keys are ignored here (the provider adds informational fields
    over time) while custom_field, which we own, is strict.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    type_event: Literal["sale_complete", "sale_canceled", "sale_cancelled"]
    custom_field: str = Field(min_length=1)
    ref_command: str = Field(min_length=1, max_length=255)
    token: str = Field(min_length=1, max_length=255)
    item_price: Decimal
    currency: str = Field(default="XOF", min_length=3, max_length=3)
    item_name: Optional[str] = None
    command_name: Optional[str] = None
    env: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, max_length=50)
    client_phone: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("item_price")
    @classmethod
    def non_negative_price(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or value < 0:
            raise ValueError("item_price must be a non-negative number")
        return value


class PaytechPaymentRequest(BaseModel):
    """Body of the PayTech request-payment call."""

    item_name: str
    item_price: int
    currency: str = "XOF"
    ref_command: str
    command_name: str
    env: str
    custom_field: str
    ipn_url: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    target_payment: Optional[str] = None


class PaytechPaymentResponse(BaseModel):
    """Relevant part of the PayTech request-payment answer."""

    model_config = ConfigDict(extra="ignore")

    success: int
    token: Optional[str] = None
    redirect_url: Optional[str] = None
    message: Optional[str] = None
