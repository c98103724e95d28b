"""
Subscription schemas for API request/response validation.

WHAT: Pydantic schemas for plans, subscriptions, entitlements, checkout
and the administrative commands.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

HOW: Uses Pydantic v2 with Field validators and model_config. Status and
plan enums are the model enums, so API values match stored values.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from basketstats.models.plan import PlanType
from basketstats.models.subscription import SubscriptionStatus


# ============================================================================
# Plan Schemas
# ============================================================================


class PlanResponse(BaseModel):
    """
    A catalog plan.

    WHY: The frontend renders pricing pages and feature gates from this.
    """

    model_config = ConfigDict(from_attributes=True)

    type: PlanType
    name: str
    description: Optional[str] = None
    price: int = Field(description="Price in minor units of currency")
    currency: str
    duration_days: int = Field(description="0 means no expiry")
    features: Dict[str, Any]
    is_active: bool


class PlansResponse(BaseModel):
    plans: List[PlanResponse]


class PlanUpsertRequest(BaseModel):
    """Administrative create-or-replace of one plan."""

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    price: int = Field(ge=0)
    currency: str = Field(default="XOF", min_length=3, max_length=3)
    duration_days: int = Field(ge=0)
    features: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


# ============================================================================
# Subscription Schemas
# ============================================================================


class SubscriptionResponse(BaseModel):
    """
    One subscription row.

    WHY: Used by the account page and by every admin command response.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: SubscriptionStatus
    plan: PlanResponse
    start_date: datetime
    end_date: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    suspended_reason: Optional[str] = None
    restored_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    ref_command: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CurrentSubscriptionResponse(BaseModel):
    has_subscription: bool
    subscription: Optional[SubscriptionResponse] = None


class SubscriptionHistoryResponse(BaseModel):
    items: List[SubscriptionResponse]
    total: int


class AccessResponse(BaseModel):
    """
    Entitlement answer for the dashboard guard.

    WHY: One call tells the frontend whether to show the dashboard and which
    tier's features to unlock.
    """

    can_access_dashboard: bool
    plan_type: Optional[PlanType] = None
    features: Dict[str, Any] = Field(default_factory=dict)
    end_date: Optional[datetime] = None


class FeatureAccessResponse(BaseModel):
    feature: str
    allowed: bool
    limit: Optional[int] = Field(None, description="null = unlimited")


# ============================================================================
# Checkout Schemas
# ============================================================================


class CheckoutRequest(BaseModel):
    plan_type: PlanType


class CheckoutResponse(BaseModel):
    """
    Result of starting a checkout.

    redirect_url is the PayTech payment page; absent when a free plan was
    activated directly.
    """

    subscription_id: str
    status: SubscriptionStatus
    ref_command: Optional[str] = None
    redirect_url: Optional[str] = None
    token: Optional[str] = None
    activated: bool = False


# ============================================================================
# Admin Schemas
# ============================================================================


class SuspendRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ForceActivateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    plan_type: PlanType


class ReconciliationItemResponse(BaseModel):
    user_id: str
    kept_subscription_id: str
    cancelled_subscription_ids: List[str]


class ReconciliationReportResponse(BaseModel):
    dry_run: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    users_repaired: int
    cancelled_count: int
    items: List[ReconciliationItemResponse]


class SweepResponse(BaseModel):
    expired: int
    abandoned_checkouts: int


class UserSubscriptionsResponse(BaseModel):
    """Admin view of one user: current row plus full history."""

    user_id: str
    active: Optional[SubscriptionResponse] = None
    history: List[SubscriptionResponse]


class SubscriptionStatsResponse(BaseModel):
    counts: Dict[str, int]
    users_with_multiple_active: List[str]


# ============================================================================
# Webhook Schemas
# ============================================================================


class WebhookAckResponse(BaseModel):
    """
    Acknowledgment returned to PayTech.

    WHY: Any 2xx stops provider retries; the outcome is informational.
    """

    status: str = "ok"
    outcome: str = Field(description="applied, duplicate or rejected")
    transaction_id: Optional[str] = None
