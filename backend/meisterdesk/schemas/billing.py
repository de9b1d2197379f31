"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to open a provider checkout for the PRO plan."""

    billing_interval: Literal["monthly", "yearly"] = "monthly"
    source: str = "upgrade_modal"


class SubscriptionActionRequest(BaseModel):
    """Cancel or reactivate a subscription owned by the caller."""

    subscription_id: str  # provider subscription id
    account_id: uuid.UUID


class TrialRequest(BaseModel):
    """Start a provider-less trial."""

    plan: str = "pro"


# --- Response schemas ---


class PlanFeatureResponse(BaseModel):
    """A feature granted by a plan."""

    feature_key: str
    limit_value: int | None  # None = unlimited


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    description: str | None
    price_monthly: Decimal
    features: list[PlanFeatureResponse]


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """The account's current subscription row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: str | None
    provider_subscription_id: str | None
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_ends_at: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    scheduled_change: dict | None


class SubscriptionStatusResponse(BaseModel):
    """Subscription row plus the entitlement it resolves to."""

    plan: str
    is_active: bool
    is_paid: bool
    subscription: SubscriptionResponse | None


class CheckoutResponse(BaseModel):
    """Provider checkout URL returned to frontend."""

    provider: str
    checkout_url: str
    session_id: str


class SubscriptionActionResponse(BaseModel):
    """What the provider scheduled; ``status`` only changes with the confirming webhook."""

    subscription_id: str
    status: str
    cancel_at_period_end: bool
    scheduled_change: dict | None


class PortalResponse(BaseModel):
    """Provider-hosted account management URL."""

    portal_url: str
