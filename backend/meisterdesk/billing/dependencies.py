"""Entitlement gating dependencies — enforce feature access based on the resolved plan."""

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request, status

from meisterdesk.auth.dependencies import get_current_account
from meisterdesk.billing.providers import ProviderAdapter, get_provider_adapter
from meisterdesk.entitlements.resolver import Entitlement
from meisterdesk.entitlements.service import EntitlementService
from meisterdesk.models.account import Account

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str | None], ProviderAdapter]


def get_entitlement_service(request: Request) -> EntitlementService:
    """The application-wide entitlement service built in the lifespan."""
    return request.app.state.entitlements


def get_adapter_factory() -> AdapterFactory:
    """Build provider adapters by name (``None`` = configured checkout provider)."""
    return get_provider_adapter


async def get_current_entitlement(
    account: Account = Depends(get_current_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> Entitlement:
    """Resolve the authenticated account's entitlement (cached)."""
    return await service.get(account.id)


def require_feature(feature_key: str):
    """Dependency factory: raise 402 unless the account's plan grants ``feature_key``.

    Usage::

        @router.post("/invoices", dependencies=[Depends(require_feature("invoicing"))])
    """

    async def _check(entitlement: Entitlement = Depends(get_current_entitlement)) -> Entitlement:
        if not entitlement.has_feature_access(feature_key):
            logger.info(
                "Account %s denied feature %s on plan %s",
                entitlement.account_id,
                feature_key,
                entitlement.plan_name,
            )
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "message": f"{feature_key} is not included in the {entitlement.plan_display_name} plan. Upgrade to PRO to unlock it.",
                    "feature": feature_key,
                    "plan": entitlement.plan_name,
                    "upgrade_url": "/api/v1/billing/checkout",
                },
            )
        return entitlement

    return _check
