"""Payment provider adapters, selected by configuration."""

import httpx

from meisterdesk.billing.providers.base import (
    CheckoutRequest,
    CheckoutSession,
    ProviderAdapter,
)
from meisterdesk.billing.providers.fastspring import FastSpringAdapter
from meisterdesk.billing.providers.paddle import PaddleAdapter
from meisterdesk.config import Settings, settings
from meisterdesk.models.subscription import Provider

ADAPTERS: dict[Provider, type[ProviderAdapter]] = {
    Provider.PADDLE: PaddleAdapter,
    Provider.FASTSPRING: FastSpringAdapter,
}


def get_provider_adapter(
    provider: Provider | str | None = None,
    config: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """Build the adapter for ``provider`` (default: ``settings.billing_provider``)."""
    config = config or settings
    key = Provider(provider or config.billing_provider)
    return ADAPTERS[key](config, transport=transport)


__all__ = [
    "ADAPTERS",
    "CheckoutRequest",
    "CheckoutSession",
    "FastSpringAdapter",
    "PaddleAdapter",
    "ProviderAdapter",
    "get_provider_adapter",
]
