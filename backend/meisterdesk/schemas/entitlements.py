"""Pydantic v2 response schemas for entitlement endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from meisterdesk.entitlements.resolver import Entitlement


class PlanSummary(BaseModel):
    name: str
    display_name: str
    price_monthly: Decimal


class EntitlementResponse(BaseModel):
    """Resolved entitlement for the authenticated account."""

    account_id: uuid.UUID
    plan: PlanSummary
    features: dict[str, int | None]
    status: str | None
    is_active: bool
    is_freemium: bool
    is_paid: bool
    is_in_trial: bool
    trial_days_remaining: int
    is_cancelled: bool
    is_expired: bool
    current_period_end: datetime | None
    trial_ends_at: datetime | None
    cancel_at_period_end: bool
    degraded: bool
    resolved_at: datetime

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementResponse":
        return cls(
            account_id=entitlement.account_id,
            plan=PlanSummary(
                name=entitlement.plan_name,
                display_name=entitlement.plan_display_name,
                price_monthly=entitlement.price_monthly,
            ),
            features=entitlement.features,
            status=entitlement.status,
            is_active=entitlement.is_active,
            is_freemium=entitlement.is_freemium,
            is_paid=entitlement.is_paid,
            is_in_trial=entitlement.is_in_trial,
            trial_days_remaining=entitlement.trial_days_remaining,
            is_cancelled=entitlement.is_cancelled,
            is_expired=entitlement.is_expired,
            current_period_end=entitlement.current_period_end,
            trial_ends_at=entitlement.trial_ends_at,
            cancel_at_period_end=entitlement.cancel_at_period_end,
            degraded=entitlement.degraded,
            resolved_at=entitlement.resolved_at,
        )


class FeatureAccessResponse(BaseModel):
    """Whether the account may use one feature, and its limit."""

    feature_key: str
    has_access: bool
    limit: int | None
    plan: str
