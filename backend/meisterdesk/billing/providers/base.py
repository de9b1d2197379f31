"""Payment provider adapter interface."""

import abc
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from meisterdesk.billing.exceptions import ProviderAPIError, ProviderConfigurationError
from meisterdesk.config import Settings
from meisterdesk.models.subscription import Provider

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class CheckoutRequest:
    """What the caller wants to buy, and who for.

    ``account_id`` and ``billing_interval`` travel through the provider as
    opaque metadata and come back in the webhook payload; that round-trip is
    the only link between a checkout and its confirmation.
    """

    account_id: uuid.UUID
    billing_interval: str
    price_id: str
    email: str | None = None
    provider_customer_id: str | None = None
    source: str = "upgrade_modal"

    def metadata(self) -> dict[str, str]:
        return {
            "account_id": str(self.account_id),
            "billing_interval": self.billing_interval,
            "source": self.source,
        }


@dataclass(frozen=True)
class CheckoutSession:
    """A provider checkout the browser should be sent to."""

    provider: Provider
    checkout_url: str
    session_id: str
    metadata: dict[str, str] = field(default_factory=dict)


class ProviderAdapter(abc.ABC):
    """One payment provider behind a uniform interface.

    ``initialize`` and ``open_checkout`` report through optional success/error
    callbacks as well as their return value. ``cancel`` and ``reactivate`` raise
    :class:`ProviderAPIError` with the provider's message; both return the
    provider's *scheduled* change, which only becomes local state once the
    confirming webhook arrives.
    """

    provider: ClassVar[Provider]

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    # -- configuration --------------------------------------------------

    @abc.abstractmethod
    def missing_configuration(self) -> list[str]:
        """Names of required settings that are empty."""

    async def initialize(
        self,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> bool:
        """Validate configuration. Returns ``True`` when the adapter is usable."""
        missing = self.missing_configuration()
        if missing:
            error = ProviderConfigurationError(self.provider.value, missing)
            logger.error("%s", error)
            if on_error:
                on_error(error)
            return False
        logger.info("%s adapter initialized", self.provider.value)
        if on_success:
            on_success(self)
        return True

    def ensure_configured(self) -> None:
        """Raise :class:`ProviderConfigurationError` when settings are missing."""
        missing = self.missing_configuration()
        if missing:
            raise ProviderConfigurationError(self.provider.value, missing)

    # -- checkout -------------------------------------------------------

    async def open_checkout(
        self,
        request: CheckoutRequest,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> CheckoutSession | None:
        """Create a provider checkout for ``request``.

        With an ``on_error`` callback, failures are reported there and ``None``
        is returned; without one they are raised.
        """
        try:
            self.ensure_configured()
            session = await self._create_checkout(request)
        except (ProviderAPIError, ProviderConfigurationError) as e:
            logger.error("%s checkout failed for account %s: %s", self.provider.value, request.account_id, e)
            if on_error is None:
                raise
            on_error(e)
            return None

        logger.info(
            "Opened %s checkout %s for account %s (%s)",
            self.provider.value,
            session.session_id,
            request.account_id,
            request.billing_interval,
        )
        if on_success:
            on_success(session)
        return session

    def success_url(self, billing_interval: str) -> str:
        """Where the provider sends the browser after payment (carries the just-paid marker)."""
        marker = self.settings.checkout_marker_param
        return f"{self.settings.frontend_url}/dashboard?{marker}=true&plan={billing_interval}&welcome=pro"

    @abc.abstractmethod
    async def _create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Provider-specific checkout creation."""

    # -- subscription management ----------------------------------------

    @abc.abstractmethod
    async def cancel(self, provider_subscription_id: str) -> dict | None:
        """Schedule cancellation at the end of the current billing period."""

    @abc.abstractmethod
    async def reactivate(self, provider_subscription_id: str) -> dict | None:
        """Withdraw a scheduled cancellation."""

    @abc.abstractmethod
    def account_management_url(
        self, provider_customer_id: str | None, provider_subscription_id: str | None
    ) -> str:
        """Provider-hosted page where the customer manages payment details."""

    # -- HTTP helpers ---------------------------------------------------

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=15.0, transport=self._transport, **kwargs)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> dict:
        """Send a request and return its JSON body, raising ProviderAPIError on failure."""
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s API %s %s failed: %s", self.provider.value, method, url, e)
            raise ProviderAPIError(self.provider.value, str(e) or type(e).__name__) from e

        logger.info("%s API %s %s -> %s", self.provider.value, method, url, response.status_code)
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = None

        if response.is_success:
            if not isinstance(payload, dict):
                raise ProviderAPIError(
                    self.provider.value,
                    f"Unexpected response: {response.text[:300]}",
                    status_code=response.status_code,
                )
            return payload

        if isinstance(payload, dict):
            message = self._error_message(payload) or f"{self.provider.value} API error"
        else:
            message = response.text[:300] or f"{self.provider.value} API error"
        raise ProviderAPIError(
            self.provider.value,
            message,
            status_code=response.status_code,
            payload=payload if isinstance(payload, dict) else None,
        )

    def _error_message(self, payload: dict) -> str | None:
        """Extract the provider's human-readable error text."""
        return payload.get("error") if isinstance(payload.get("error"), str) else None
