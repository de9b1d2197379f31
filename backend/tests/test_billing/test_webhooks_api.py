"""Integration tests for the Paddle and FastSpring webhook endpoints."""

import base64
import hashlib
import hmac
import json
import time
import uuid

from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from meisterdesk.config import settings
from meisterdesk.main import app
from meisterdesk.models.subscription import Subscription


def _sign_paddle(body: bytes, secret: str | None = None) -> str:
    secret = secret or settings.paddle_webhook_secret
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + body, hashlib.sha256).hexdigest()
    return f"ts={ts};h1={digest}"


def _sign_fastspring(body: bytes) -> str:
    digest = hmac.new(settings.fastspring_hmac_secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def _paddle_body(account_id: uuid.UUID, event_type: str = "subscription.created", sub_id: str = "sub_api_01") -> bytes:
    return json.dumps(
        {
            "event_id": "evt_api_01",
            "event_type": event_type,
            "occurred_at": "2026-10-01T00:00:00Z",
            "data": {
                "id": sub_id,
                "status": "active",
                "customer_id": "ctm_api",
                "custom_data": {"account_id": str(account_id), "billing_interval": "monthly"},
                "items": [{"price": {"id": "pri_monthly_test"}}],
                "current_billing_period": {
                    "starts_at": "2026-10-01T00:00:00Z",
                    "ends_at": "2026-11-01T00:00:00Z",
                },
            },
        }
    ).encode()


async def _subscription(session_factory, sub_id: str) -> Subscription | None:
    async with session_factory() as session:
        result = await session.execute(
            select(Subscription).where(Subscription.provider_subscription_id == sub_id)
        )
        return result.scalar_one_or_none()


class TestPaddleWebhook:
    """POST /api/v1/webhooks/paddle"""

    async def test_signed_delivery_applied(self, client, session_factory, test_account):
        body = _paddle_body(test_account.id)
        response = await client.post(
            "/api/v1/webhooks/paddle",
            content=body,
            headers={"Paddle-Signature": _sign_paddle(body), "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["provider"] == "paddle"
        assert data["processed"] == 1
        assert data["results"][0]["outcome"] == "applied"
        assert data["security"]["signature"] == "valid"

        row = await _subscription(session_factory, "sub_api_01")
        assert row is not None
        assert row.status == "active"

    async def test_tampered_body_rejected_without_mutation(self, client, session_factory, test_account):
        body = _paddle_body(test_account.id)
        header = _sign_paddle(body)
        tampered = body.replace(b"sub_api_01", b"sub_api_02")

        response = await client.post("/api/v1/webhooks/paddle", content=tampered, headers={"Paddle-Signature": header})

        assert response.status_code == 401
        assert await _subscription(session_factory, "sub_api_01") is None
        assert await _subscription(session_factory, "sub_api_02") is None

    async def test_missing_signature_rejected(self, client, test_account):
        response = await client.post("/api/v1/webhooks/paddle", content=_paddle_body(test_account.id))
        assert response.status_code == 401

    async def test_allowlisted_peer_accepted_with_degraded_trust(self, client, session_factory, test_account):
        body = _paddle_body(test_account.id)
        # client fixture installs the dependency overrides; this one only changes the peer
        transport = ASGITransport(app=app, client=(settings.paddle_allowed_ips[0], 443))
        async with AsyncClient(transport=transport, base_url="http://testserver") as paddle:
            response = await paddle.post("/api/v1/webhooks/paddle", content=body)
        assert response.status_code == 200
        assert response.json()["security"] == {"signature": "invalid", "ip": "verified"}
        assert await _subscription(session_factory, "sub_api_01") is not None

    async def test_forwarded_for_header_not_trusted(self, client, session_factory, test_account):
        body = _paddle_body(test_account.id)
        response = await client.post(
            "/api/v1/webhooks/paddle",
            content=body,
            headers={
                "Paddle-Signature": "ts=1;h1=deadbeef",
                "X-Forwarded-For": settings.paddle_allowed_ips[0],
            },
        )
        assert response.status_code == 401
        assert await _subscription(session_factory, "sub_api_01") is None

    async def test_unknown_event_acknowledged(self, client):
        body = json.dumps({"event_id": "evt_x", "event_type": "address.created", "data": {"id": "add_01"}}).encode()
        response = await client.post("/api/v1/webhooks/paddle", content=body, headers={"Paddle-Signature": _sign_paddle(body)})
        assert response.status_code == 200
        assert response.json()["results"][0]["outcome"] == "ignored"

    async def test_invalid_json_after_auth_acknowledged(self, client):
        body = b"{not json"
        response = await client.post("/api/v1/webhooks/paddle", content=body, headers={"Paddle-Signature": _sign_paddle(body)})
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["processed"] == 0

    async def test_missing_metadata_acknowledged_and_skipped(self, client, session_factory):
        body = json.dumps(
            {
                "event_id": "evt_nometa",
                "event_type": "subscription.created",
                "data": {"id": "sub_nometa", "status": "active", "custom_data": None},
            }
        ).encode()
        response = await client.post("/api/v1/webhooks/paddle", content=body, headers={"Paddle-Signature": _sign_paddle(body)})
        assert response.status_code == 200
        assert response.json()["results"][0]["outcome"] == "skipped"
        assert await _subscription(session_factory, "sub_nometa") is None


class TestFastSpringWebhook:
    """POST /api/v1/webhooks/fastspring"""

    def _body(self, account_id: uuid.UUID) -> bytes:
        return json.dumps(
            {
                "events": [
                    {
                        "id": "fs_evt_1",
                        "type": "subscription.activated",
                        "data": {
                            "id": "fs_sub_api",
                            "state": "active",
                            "account": "fs_acct",
                            "product": "promeister-yearly",
                            "nextChargeDate": "2027-10-01T00:00:00Z",
                            "tags": {"account_id": str(account_id), "billing_interval": "yearly"},
                        },
                    },
                    {"id": "fs_evt_2", "type": "order.completed", "data": {"id": "order_1"}},
                    {
                        "id": "fs_evt_3",
                        "type": "subscription.canceled",
                        "data": {"id": "fs_sub_orphan", "state": "canceled"},
                    },
                ]
            }
        ).encode()

    async def test_batch_processed_per_event(self, client, session_factory, test_account):
        body = self._body(test_account.id)
        response = await client.post(
            "/api/v1/webhooks/fastspring", content=body, headers={"X-FS-Signature": _sign_fastspring(body)}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 3
        assert [r["outcome"] for r in data["results"]] == ["applied", "ignored", "noop"]

        row = await _subscription(session_factory, "fs_sub_api")
        assert row.provider == "fastspring"
        assert row.provider_customer_id == "fs_acct"

    async def test_bad_signature_rejected_with_403(self, client, session_factory, test_account):
        body = self._body(test_account.id)
        response = await client.post(
            "/api/v1/webhooks/fastspring", content=body, headers={"X-FS-Signature": "Zm9yZ2Vk"}
        )
        assert response.status_code == 403
        assert await _subscription(session_factory, "fs_sub_api") is None

    async def test_failing_event_still_acknowledged(self, client, session_factory, test_account):
        body = json.dumps(
            {
                "events": [
                    {"id": "fs_bad", "type": "subscription.activated", "data": "broken"},
                    json.loads(self._body(test_account.id))["events"][0],
                ]
            }
        ).encode()
        response = await client.post(
            "/api/v1/webhooks/fastspring", content=body, headers={"X-FS-Signature": _sign_fastspring(body)}
        )
        assert response.status_code == 200
        assert [r["outcome"] for r in response.json()["results"]] == ["skipped", "applied"]
        assert await _subscription(session_factory, "fs_sub_api") is not None

    async def test_out_of_range_timestamp_does_not_fail_batch(self, client, session_factory, test_account):
        good = json.loads(self._body(test_account.id))["events"][0]
        bad = json.loads(json.dumps(good))
        bad.update(id="fs_bad_ts", created=99999999999999999999)
        bad["data"].update(id="fs_sub_bad_ts", nextChargeDate=99999999999999999999)
        body = json.dumps({"events": [bad, good]}).encode()

        response = await client.post(
            "/api/v1/webhooks/fastspring", content=body, headers={"X-FS-Signature": _sign_fastspring(body)}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 2
        assert data["results"][1]["outcome"] == "applied"
        assert await _subscription(session_factory, "fs_sub_api") is not None
        bad_row = await _subscription(session_factory, "fs_sub_bad_ts")
        assert bad_row is None or bad_row.current_period_end is None
