"""Paddle Billing adapter."""

import logging

import httpx

from meisterdesk.billing.exceptions import ProviderAPIError
from meisterdesk.billing.providers.base import CheckoutRequest, CheckoutSession, ProviderAdapter
from meisterdesk.models.subscription import Provider

logger = logging.getLogger(__name__)


class PaddleAdapter(ProviderAdapter):
    """Paddle Billing REST API (bearer API key)."""

    provider = Provider.PADDLE

    def missing_configuration(self) -> list[str]:
        required = {
            "PADDLE_API_KEY": self.settings.paddle_api_key,
            "PADDLE_PRICE_ID_MONTHLY": self.settings.paddle_price_id_monthly,
            "PADDLE_PRICE_ID_YEARLY": self.settings.paddle_price_id_yearly,
        }
        return [name for name, value in required.items() if not value]

    def _api(self) -> httpx.AsyncClient:
        return self._client(
            base_url=self.settings.paddle_api_base_url,
            headers={
                "Authorization": f"Bearer {self.settings.paddle_api_key}",
                "Content-Type": "application/json",
            },
        )

    def _error_message(self, payload: dict) -> str | None:
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("detail") or error.get("message") or error.get("code")
        return super()._error_message(payload)

    async def _create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a transaction whose hosted checkout URL the browser is sent to."""
        body: dict = {
            "items": [{"price_id": request.price_id, "quantity": 1}],
            "custom_data": request.metadata(),
            "collection_mode": "automatic",
            "checkout": {"url": self.success_url(request.billing_interval)},
        }
        if request.provider_customer_id:
            body["customer_id"] = request.provider_customer_id

        async with self._api() as client:
            payload = await self._request(client, "POST", "/transactions", json=body)

        data = payload.get("data") or {}
        checkout_url = (data.get("checkout") or {}).get("url")
        if not checkout_url or not data.get("id"):
            raise ProviderAPIError(self.provider.value, "Paddle did not return a checkout URL", payload=payload)
        return CheckoutSession(
            provider=self.provider,
            checkout_url=checkout_url,
            session_id=data["id"],
            metadata=request.metadata(),
        )

    async def cancel(self, provider_subscription_id: str) -> dict | None:
        self.ensure_configured()
        async with self._api() as client:
            payload = await self._request(
                client,
                "POST",
                f"/subscriptions/{provider_subscription_id}/cancel",
                json={"effective_from": "next_billing_period"},
            )
        scheduled = (payload.get("data") or {}).get("scheduled_change")
        logger.info("Paddle scheduled cancellation of %s: %s", provider_subscription_id, scheduled)
        return scheduled

    async def reactivate(self, provider_subscription_id: str) -> dict | None:
        self.ensure_configured()
        async with self._api() as client:
            payload = await self._request(
                client,
                "PATCH",
                f"/subscriptions/{provider_subscription_id}",
                json={"scheduled_change": None},
            )
        scheduled = (payload.get("data") or {}).get("scheduled_change")
        logger.info("Paddle removed scheduled change of %s", provider_subscription_id)
        return scheduled

    def account_management_url(
        self, provider_customer_id: str | None, provider_subscription_id: str | None
    ) -> str:
        host = (
            "vendors.paddle.com"
            if self.settings.paddle_environment == "production"
            else "sandbox-vendors.paddle.com"
        )
        return f"https://{host}/customers/{provider_customer_id}/subscriptions/{provider_subscription_id}"
