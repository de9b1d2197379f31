"""Billing error taxonomy.

Unknown event types and events for unknown subscriptions are not errors;
they are reported as handler outcomes (see ``meisterdesk.billing.webhooks``).
"""


class BillingError(Exception):
    """Base class for all billing errors."""


class AuthenticityError(BillingError):
    """A webhook delivery failed signature (and, for Paddle, IP) verification."""

    def __init__(self, reason: str, status_code: int = 401) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class MalformedEventError(BillingError):
    """A webhook envelope or event payload could not be interpreted."""


class MissingMetadataError(BillingError):
    """Checkout metadata (the local account id) is missing or malformed."""


class ProviderConfigurationError(BillingError):
    """A provider adapter is missing required configuration."""

    def __init__(self, provider: str, missing: list[str]) -> None:
        super().__init__(f"{provider} is not configured: missing {', '.join(missing)}")
        self.provider = provider
        self.missing = missing


class ProviderAPIError(BillingError):
    """A provider REST call failed. ``message`` is the provider's own text."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        payload: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.payload = payload


class ResolutionError(BillingError):
    """Entitlement resolution could not read the canonical store."""
