"""Tests for feature gating — require_feature answers 402 below the required plan."""

from datetime import timedelta

import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from meisterdesk.api.deps import get_db, get_entitlement_service, require_feature
from meisterdesk.database import utcnow


@pytest_asyncio.fixture
async def gated_client(session_factory, entitlement_service):
    """A small app with one gated route, wired to the test database."""
    app = FastAPI()

    @app.post("/invoices", dependencies=[Depends(require_feature("invoicing"))])
    async def create_invoice() -> dict[str, str]:
        return {"status": "created"}

    @app.get("/customers")
    async def list_customers(entitlement=Depends(require_feature("customer_management"))) -> dict:
        return {"limit": entitlement.get_plan_limit("customer_management")}

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_entitlement_service] = lambda: entitlement_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


class TestRequireFeature:
    """Test require_feature."""

    async def test_freemium_blocked_with_402(self, gated_client, auth_headers):
        response = await gated_client.post("/invoices", headers=auth_headers)
        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["feature"] == "invoicing"
        assert detail["plan"] == "freemium"
        assert detail["upgrade_url"] == "/api/v1/billing/checkout"

    async def test_pro_allowed(self, gated_client, auth_headers, test_account, make_subscription):
        await make_subscription(test_account.id, plan="pro")
        response = await gated_client.post("/invoices", headers=auth_headers)
        assert response.status_code == 200

    async def test_cancelled_in_grace_allowed(self, gated_client, auth_headers, test_account, make_subscription):
        await make_subscription(
            test_account.id, status="cancelled", current_period_end=utcnow() + timedelta(days=2)
        )
        response = await gated_client.post("/invoices", headers=auth_headers)
        assert response.status_code == 200

    async def test_lapsed_blocked(self, gated_client, auth_headers, test_account, make_subscription):
        await make_subscription(test_account.id, current_period_end=utcnow() - timedelta(seconds=1))
        response = await gated_client.post("/invoices", headers=auth_headers)
        assert response.status_code == 402

    async def test_limit_exposed_to_route(self, gated_client, auth_headers):
        response = await gated_client.get("/customers", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"limit": 10}

    async def test_unauthenticated_is_401_not_402(self, gated_client):
        response = await gated_client.post("/invoices")
        assert response.status_code == 401
