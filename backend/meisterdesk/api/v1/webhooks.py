"""Payment provider webhook endpoints — authenticate, then apply subscription events.

Once a delivery is authenticated it is always acknowledged with 200, even when
individual events are skipped or fail; per-event outcomes are in the body.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meisterdesk.api.deps import get_session_factory
from meisterdesk.billing.events import split_envelope
from meisterdesk.billing.exceptions import AuthenticityError, MalformedEventError
from meisterdesk.billing.signatures import WebhookTrust, authenticate_fastspring, authenticate_paddle
from meisterdesk.billing.webhooks import process_events
from meisterdesk.config import settings
from meisterdesk.models.subscription import Provider
from meisterdesk.schemas.webhooks import WebhookEventResult, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _source_ip(request: Request) -> str | None:
    """Transport peer address; ``X-Forwarded-For`` is client-controlled and ignored here.

    Behind a proxy, run uvicorn with ``--proxy-headers --forwarded-allow-ips``
    naming only the trusted proxy so the peer is the real client.
    """
    return request.client.host if request.client else None


async def _process(
    provider: Provider,
    raw_body: bytes,
    trust: WebhookTrust,
    session_factory: async_sessionmaker[AsyncSession],
) -> WebhookResponse:
    def rejected(error: str) -> WebhookResponse:
        return WebhookResponse(
            success=False,
            provider=provider.value,
            processed=0,
            results=[],
            security=trust.as_dict(),
            error=error,
        )

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("Invalid %s webhook payload: not JSON", provider.value)
        return rejected("Invalid JSON payload")

    try:
        raw_events = split_envelope(provider, payload)
    except MalformedEventError as e:
        logger.warning("Invalid %s webhook envelope: %s", provider.value, e)
        return rejected(str(e))

    results = await process_events(session_factory, provider, raw_events)
    return WebhookResponse(
        success=True,
        provider=provider.value,
        processed=len(results),
        results=[
            WebhookEventResult(
                event_id=str(r.event_id) if r.event_id is not None else None,
                event_type=r.event_type,
                outcome=r.outcome.value,
                detail=r.detail,
            )
            for r in results
        ],
        security=trust.as_dict(),
    )


@router.post("/paddle", response_model=WebhookResponse)
async def paddle_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> WebhookResponse:
    """Receive a Paddle Billing notification."""
    # Raw bytes: the signature covers the body exactly as sent
    raw_body = await request.body()
    try:
        trust = authenticate_paddle(
            raw_body,
            request.headers.get("paddle-signature"),
            _source_ip(request),
            secret=settings.paddle_webhook_secret,
            allowed_ips=settings.paddle_allowed_ips,
            tolerance_seconds=settings.paddle_signature_tolerance_seconds,
        )
    except AuthenticityError as e:
        raise HTTPException(status_code=e.status_code, detail=e.reason) from e

    return await _process(Provider.PADDLE, raw_body, trust, session_factory)


@router.post("/fastspring", response_model=WebhookResponse)
async def fastspring_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> WebhookResponse:
    """Receive a FastSpring webhook batch (``{"events": [...]}``)."""
    raw_body = await request.body()
    try:
        trust = authenticate_fastspring(
            raw_body,
            request.headers.get("x-fs-signature"),
            secret=settings.fastspring_hmac_secret,
            test_mode=settings.fastspring_test_mode,
        )
    except AuthenticityError as e:
        raise HTTPException(status_code=e.status_code, detail=e.reason) from e

    return await _process(Provider.FASTSPRING, raw_body, trust, session_factory)
