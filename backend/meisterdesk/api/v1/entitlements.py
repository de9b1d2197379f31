"""Entitlement API router.

GET /api/v1/entitlements/me                       — Resolved plan and features
GET /api/v1/entitlements/me/features/{key}        — Single feature check
GET /api/v1/entitlements/me/stream                — SSE: snapshot on connect and on every change

A just-paid marker on the URL (``?paddle_success=true``) forces a refresh past
the cache; the stream additionally runs the post-checkout refresh schedule.
The marker-free URL is returned in ``Content-Location``.
"""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse
from starlette.requests import Request

from meisterdesk.api.deps import get_current_account, get_db, get_entitlement_service, get_stream_account
from meisterdesk.config import settings
from meisterdesk.entitlements.markers import consume_checkout_marker
from meisterdesk.entitlements.service import EntitlementService
from meisterdesk.models.account import Account
from meisterdesk.schemas.entitlements import EntitlementResponse, FeatureAccessResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/entitlements", tags=["entitlements"])


def _consume_marker(request: Request, response: Response | None = None) -> bool:
    url = str(request.url)
    just_paid, clean_url = consume_checkout_marker(url, settings.checkout_marker_param)
    if response is not None and clean_url != url:
        response.headers["Content-Location"] = clean_url
    return just_paid


@router.get("/me", response_model=EntitlementResponse)
async def get_my_entitlements(
    request: Request,
    response: Response,
    refresh: bool = False,
    current_account: Account = Depends(get_current_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """Resolve the caller's entitlement (cached for a few seconds)."""
    just_paid = _consume_marker(request, response)
    if just_paid:
        logger.info("Checkout marker for account %s; forcing entitlement refresh", current_account.id)
    entitlement = await service.get(current_account.id, force_refresh=refresh or just_paid)
    return EntitlementResponse.from_entitlement(entitlement)


@router.get("/me/features/{feature_key}", response_model=FeatureAccessResponse)
async def check_feature(
    feature_key: str,
    current_account: Account = Depends(get_current_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> FeatureAccessResponse:
    """Whether the caller's plan grants ``feature_key``."""
    entitlement = await service.get(current_account.id)
    return FeatureAccessResponse(
        feature_key=feature_key,
        has_access=entitlement.has_feature_access(feature_key),
        limit=entitlement.get_plan_limit(feature_key),
        plan=entitlement.plan_name,
    )


@router.get("/me/stream")
async def stream_my_entitlements(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_stream_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EventSourceResponse:
    """Push entitlement snapshots for as long as the client stays connected."""
    just_paid = _consume_marker(request)
    account_id = current_account.id
    # Release the auth session's connection; the stream may stay open for hours
    await db.commit()

    async def event_generator():
        async with service.watch(account_id, just_paid=just_paid) as watch:
            logger.info("Entitlement stream opened for account %s (just_paid=%s)", account_id, just_paid)
            try:
                async for entitlement in watch.updates():
                    if await request.is_disconnected():
                        break
                    yield {
                        "event": "entitlement",
                        "data": EntitlementResponse.from_entitlement(entitlement).model_dump_json(),
                    }
            finally:
                logger.info("Entitlement stream closed for account %s", account_id)

    return EventSourceResponse(event_generator())
