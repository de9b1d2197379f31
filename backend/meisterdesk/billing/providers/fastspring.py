"""FastSpring adapter."""

import logging

import httpx

from meisterdesk.billing.exceptions import ProviderAPIError
from meisterdesk.billing.providers.base import CheckoutRequest, CheckoutSession, ProviderAdapter
from meisterdesk.models.subscription import Provider

logger = logging.getLogger(__name__)


class FastSpringAdapter(ProviderAdapter):
    """FastSpring REST API (HTTP basic auth) and popup storefront."""

    provider = Provider.FASTSPRING

    def missing_configuration(self) -> list[str]:
        required = {
            "FASTSPRING_USERNAME": self.settings.fastspring_username,
            "FASTSPRING_PASSWORD": self.settings.fastspring_password,
            "FASTSPRING_POPUP_URL": self.settings.fastspring_popup_url,
            "FASTSPRING_PRODUCT_MONTHLY": self.settings.fastspring_product_monthly,
            "FASTSPRING_PRODUCT_YEARLY": self.settings.fastspring_product_yearly,
        }
        return [name for name, value in required.items() if not value]

    def _api(self) -> httpx.AsyncClient:
        return self._client(
            base_url=self.settings.fastspring_api_url,
            auth=(self.settings.fastspring_username, self.settings.fastspring_password),
            headers={"Accept": "application/json"},
        )

    def _error_message(self, payload: dict) -> str | None:
        error = payload.get("error")
        if isinstance(error, dict):
            return "; ".join(str(v) for v in error.values()) or None
        return super()._error_message(payload)

    def _check_results(self, payload: dict, provider_subscription_id: str) -> dict:
        """FastSpring answers 200 with per-subscription results; surface item errors."""
        for item in payload.get("subscriptions") or []:
            if not isinstance(item, dict):
                continue
            if item.get("subscription") not in (None, provider_subscription_id):
                continue
            if item.get("result") == "error":
                message = self._error_message(item) or "FastSpring rejected the request"
                raise ProviderAPIError(self.provider.value, message, status_code=400, payload=payload)
            return item
        return {}

    async def _ensure_account(self, client: httpx.AsyncClient, request: CheckoutRequest) -> str:
        if request.provider_customer_id:
            return request.provider_customer_id
        if not request.email:
            raise ProviderAPIError(self.provider.value, "An email address is required for a new FastSpring account")
        local, _, _ = request.email.partition("@")
        payload = await self._request(
            client,
            "POST",
            "/accounts",
            json={
                "contact": {"email": request.email, "first": local, "last": local},
                "lookup": {"custom": str(request.account_id)},
            },
        )
        account = payload.get("account") or payload.get("id")
        if not account:
            raise ProviderAPIError(self.provider.value, "FastSpring did not return an account id", payload=payload)
        return str(account)

    async def _create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a session pre-filled with the product and tags, opened in the popup storefront."""
        async with self._api() as client:
            account = await self._ensure_account(client, request)
            payload = await self._request(
                client,
                "POST",
                "/sessions",
                json={
                    "account": account,
                    "items": [{"product": request.price_id, "quantity": 1}],
                    "tags": request.metadata(),
                },
            )

        session_id = payload.get("id")
        if not session_id:
            raise ProviderAPIError(self.provider.value, "FastSpring did not return a session id", payload=payload)
        popup = self.settings.fastspring_popup_url.rstrip("/")
        return CheckoutSession(
            provider=self.provider,
            checkout_url=f"{popup}/session/{session_id}",
            session_id=str(session_id),
            metadata=request.metadata(),
        )

    async def cancel(self, provider_subscription_id: str) -> dict | None:
        self.ensure_configured()
        async with self._api() as client:
            payload = await self._request(client, "DELETE", f"/subscriptions/{provider_subscription_id}")
        item = self._check_results(payload, provider_subscription_id)
        scheduled = {
            "action": "cancel",
            "effective_from": "next_billing_period",
            "effective_at": item.get("nextChargeDate") or payload.get("nextChargeDate"),
        }
        logger.info("FastSpring scheduled cancellation of %s", provider_subscription_id)
        return scheduled

    async def reactivate(self, provider_subscription_id: str) -> dict | None:
        self.ensure_configured()
        async with self._api() as client:
            payload = await self._request(
                client,
                "POST",
                "/subscriptions",
                json={"subscriptions": [{"subscription": provider_subscription_id, "deactivation": None}]},
            )
        self._check_results(payload, provider_subscription_id)
        logger.info("FastSpring removed deactivation of %s", provider_subscription_id)
        return None

    def account_management_url(
        self, provider_customer_id: str | None, provider_subscription_id: str | None
    ) -> str:
        return f"{self.settings.fastspring_popup_url.rstrip('/')}/account"
