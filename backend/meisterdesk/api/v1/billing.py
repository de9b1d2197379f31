"""Billing API endpoints — plans, provider checkout, cancel/reactivate, and trials."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from meisterdesk.api.deps import (
    get_adapter_factory,
    get_current_account,
    get_db,
    get_entitlement_service,
)
from meisterdesk.billing.bridge import (
    BridgeResult,
    SubscriptionNotFoundError,
    cancel_subscription,
    find_account_subscription,
    reactivate_subscription,
)
from meisterdesk.billing.dependencies import AdapterFactory
from meisterdesk.billing.exceptions import ProviderAPIError, ProviderConfigurationError
from meisterdesk.billing.plans import price_id_for
from meisterdesk.billing.providers import CheckoutRequest as ProviderCheckoutRequest
from meisterdesk.config import settings
from meisterdesk.entitlements.service import EntitlementService
from meisterdesk.models.account import Account
from meisterdesk.models.subscription import Subscription
from meisterdesk.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    PlanFeatureResponse,
    PlanResponse,
    PlansListResponse,
    PortalResponse,
    SubscriptionActionRequest,
    SubscriptionActionResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    TrialRequest,
)
from meisterdesk.services.subscription_service import (
    TrialNotAllowedError,
    get_latest_subscription,
    list_plans,
    start_trial,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _provider_error(e: ProviderAPIError) -> HTTPException:
    """Surface the provider's own message with its status code (502 if it had none)."""
    code = e.status_code if e.status_code and 400 <= e.status_code < 600 else status.HTTP_502_BAD_GATEWAY
    return HTTPException(
        status_code=code,
        detail={"error": e.message, "provider": e.provider, "provider_status": e.status_code},
    )


def _configuration_error(e: ProviderConfigurationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "Payment provider is not configured", "provider": e.provider},
    )


@router.get("/plans", response_model=PlansListResponse)
async def get_plans(db: AsyncSession = Depends(get_db)) -> PlansListResponse:
    """List available plans (public — no auth required)."""
    plans = await list_plans(db)
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                description=p.description,
                price_monthly=p.price_monthly,
                features=[
                    PlanFeatureResponse(feature_key=f.feature_key, limit_value=f.limit_value)
                    for f in sorted(p.features, key=lambda f: f.feature_key)
                    if f.is_enabled
                ],
            )
            for p in plans
        ]
    )


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SubscriptionStatusResponse:
    """Current subscription row and the plan it resolves to."""
    subscription = await get_latest_subscription(db, current_account.id)
    entitlement = await service.get(current_account.id)
    return SubscriptionStatusResponse(
        plan=entitlement.plan_name,
        is_active=entitlement.is_active,
        is_paid=entitlement.is_paid,
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> CheckoutResponse:
    """Open a checkout with the configured provider for the PRO plan."""
    adapter = adapter_factory(None)

    # Reuse the provider customer when the account already has one
    latest = await get_latest_subscription(db, current_account.id)
    customer_id = None
    if latest is not None and latest.provider == adapter.provider.value:
        customer_id = latest.provider_customer_id

    request = ProviderCheckoutRequest(
        account_id=current_account.id,
        billing_interval=body.billing_interval,
        price_id=price_id_for(adapter.provider.value, body.billing_interval),
        email=current_account.email,
        provider_customer_id=customer_id,
        source=body.source,
    )
    try:
        session = await adapter.open_checkout(request)
    except ProviderConfigurationError as e:
        raise _configuration_error(e) from e
    except ProviderAPIError as e:
        raise _provider_error(e) from e

    return CheckoutResponse(
        provider=session.provider.value,
        checkout_url=session.checkout_url,
        session_id=session.session_id,
    )


async def _owned_subscription(
    db: AsyncSession, body: SubscriptionActionRequest, current_account: Account
) -> Subscription:
    if body.account_id != current_account.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Subscription does not belong to this account",
        )
    try:
        subscription = await find_account_subscription(db, body.subscription_id, current_account.id)
    except SubscriptionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        ) from None
    if subscription.provider is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Trial subscriptions are not managed by a payment provider.",
        )
    return subscription


def _action_response(result: BridgeResult) -> SubscriptionActionResponse:
    return SubscriptionActionResponse(
        subscription_id=result.provider_subscription_id,
        status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
        scheduled_change=result.scheduled_change,
    )


@router.post("/subscription/cancel", response_model=SubscriptionActionResponse)
async def cancel(
    body: SubscriptionActionRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SubscriptionActionResponse:
    """Cancel at period end. Access continues until ``current_period_end``."""
    subscription = await _owned_subscription(db, body, current_account)
    adapter = adapter_factory(subscription.provider)
    try:
        result = await cancel_subscription(db, adapter, subscription)
    except ProviderConfigurationError as e:
        raise _configuration_error(e) from e
    except ProviderAPIError as e:
        raise _provider_error(e) from e

    await db.commit()
    service.invalidate(current_account.id)
    return _action_response(result)


@router.post("/subscription/reactivate", response_model=SubscriptionActionResponse)
async def reactivate(
    body: SubscriptionActionRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SubscriptionActionResponse:
    """Withdraw a scheduled cancellation."""
    subscription = await _owned_subscription(db, body, current_account)
    adapter = adapter_factory(subscription.provider)
    try:
        result = await reactivate_subscription(db, adapter, subscription)
    except ProviderConfigurationError as e:
        raise _configuration_error(e) from e
    except ProviderAPIError as e:
        raise _provider_error(e) from e

    await db.commit()
    service.invalidate(current_account.id)
    return _action_response(result)


@router.get("/portal", response_model=PortalResponse)
async def get_portal(
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> PortalResponse:
    """Provider-hosted page for payment method and invoice management."""
    subscription = await get_latest_subscription(db, current_account.id)
    if subscription is None or subscription.provider is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No provider subscription found. Subscribe first.",
        )
    adapter = adapter_factory(subscription.provider)
    return PortalResponse(
        portal_url=adapter.account_management_url(
            subscription.provider_customer_id, subscription.provider_subscription_id
        )
    )


@router.post("/trial", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_trial(
    body: TrialRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SubscriptionResponse:
    """Start a trial for an account without any subscription history."""
    try:
        subscription = await start_trial(db, current_account.id, body.plan, settings.trial_days)
    except TrialNotAllowedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (LookupError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await db.commit()
    service.invalidate(current_account.id)
    return SubscriptionResponse.model_validate(subscription)
