"""Integration tests for the credits API.

Tests:
    - Balance, costs and usage history
    - Spending, including the 402 path
    - Checkout links and signed payment webhooks
"""

import json
from urllib.parse import urlparse

import pytest
from sqlalchemy import select

from authledger.auth.payments import sign_payload
from authledger.models import PaymentTransaction, User
from tests.utils.helpers import STRONG_PASSWORD, auth_header

WEBHOOK_SECRET = "test-webhook-secret"


async def signed_up(client, email="buyer@example.com") -> str:
    response = await client.post(
        "/auth/register", json={"email": email, "password": STRONG_PASSWORD}
    )
    assert response.status_code == 201
    return response.json()["accessToken"]


async def user_id_for(session_factory, email="buyer@example.com") -> str:
    async with session_factory() as session:
        return await session.scalar(select(User.id).where(User.email == email))


async def post_webhook(client, payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode()
    return await client.post(
        "/credits/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, secret),
        },
    )


@pytest.mark.integration
class TestBalanceAndCosts:
    """Tests for GET /credits/balance and /credits/costs."""

    @pytest.mark.asyncio
    async def test_costs_need_no_auth(self, test_client):
        response = await test_client.get("/credits/costs")
        assert response.status_code == 200
        assert response.json() == {"costs": {"chat_message": 1, "api_call": 1}}

    @pytest.mark.asyncio
    async def test_balance_requires_auth(self, test_client):
        response = await test_client.get("/credits/balance")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_new_user_balance(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.get("/credits/balance", headers=auth_header(token))
        assert response.status_code == 200
        assert response.json() == {"daily": 5, "purchased": 0, "total": 5}


@pytest.mark.integration
class TestSpend:
    """Tests for POST /credits/spend and GET /credits/usage."""

    @pytest.mark.asyncio
    async def test_spend_and_usage(self, test_client):
        token = await signed_up(test_client)

        response = await test_client.post(
            "/credits/spend",
            json={
                "actionType": "chat_message",
                "details": {"kind": "chat_message", "chat_id": "c-1"},
            },
            headers=auth_header(token),
        )
        assert response.status_code == 200
        assert response.json() == {
            "charged": 1,
            "credits": {"daily": 4, "purchased": 0, "total": 4},
        }

        usage = await test_client.get("/credits/usage", headers=auth_header(token))
        assert usage.status_code == 200
        records = usage.json()["usage"]
        assert len(records) == 1
        assert records[0]["actionType"] == "chat_message"
        assert records[0]["creditsDeducted"] == 1
        assert records[0]["creditTypeUsed"] == "daily"
        assert records[0]["metadata"]["chat_id"] == "c-1"

    @pytest.mark.asyncio
    async def test_exhausted_pools_answer_402(self, test_client):
        token = await signed_up(test_client)
        for _ in range(5):
            response = await test_client.post(
                "/credits/spend", json={"actionType": "api_call"}, headers=auth_header(token)
            )
            assert response.status_code == 200

        response = await test_client.post(
            "/credits/spend", json={"actionType": "api_call"}, headers=auth_header(token)
        )
        assert response.status_code == 402
        assert response.json() == {
            "error": "Insufficient credits",
            "detail": {"required": 1, "available": 0},
        }

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.post(
            "/credits/spend", json={"actionType": "teleport"}, headers=auth_header(token)
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_details_must_match_action(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.post(
            "/credits/spend",
            json={"actionType": "api_call", "details": {"kind": "chat_message"}},
            headers=auth_header(token),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_usage_limit_bounds(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.get(
            "/credits/usage", params={"limit": 0}, headers=auth_header(token)
        )
        assert response.status_code == 422


@pytest.mark.integration
class TestPurchase:
    """Tests for POST /credits/purchase and /credits/webhook."""

    @pytest.mark.asyncio
    async def test_checkout_link(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.post(
            "/credits/purchase",
            json={"productId": "pro_subscription"},
            headers=auth_header(token),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["credits"] == 100
        assert data["priceCents"] == 1999
        assert urlparse(data["checkoutUrl"]).path.endswith("/pro_subscription")

    @pytest.mark.asyncio
    async def test_unknown_product(self, test_client):
        token = await signed_up(test_client)
        response = await test_client.post(
            "/credits/purchase", json={"productId": "platinum"}, headers=auth_header(token)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_webhook_grants_once(self, test_client, session_factory):
        token = await signed_up(test_client)
        user_id = await user_id_for(session_factory)
        payload = {
            "event": "payment.succeeded",
            "data": {"payment_id": "pay_abc", "amount": 1999, "metadata": {"user_id": user_id}},
        }

        first = await post_webhook(test_client, payload)
        replay = await post_webhook(test_client, payload)

        assert first.status_code == replay.status_code == 200
        assert first.json() == {"success": True, "message": "Credits granted"}
        assert replay.json() == {"success": True, "message": "Already processed"}

        balance = await test_client.get("/credits/balance", headers=auth_header(token))
        assert balance.json() == {"daily": 5, "purchased": 100, "total": 105}

        async with session_factory() as session:
            rows = (await session.execute(select(PaymentTransaction))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self, test_client, session_factory):
        await signed_up(test_client)
        user_id = await user_id_for(session_factory)
        response = await post_webhook(
            test_client,
            {"event": "payment.succeeded", "data": {"payment_id": "p", "user_id": user_id}},
            secret="not-the-secret",
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid webhook signature"

    @pytest.mark.asyncio
    async def test_webhook_ignores_other_events(self, test_client):
        response = await post_webhook(
            test_client, {"event": "invoice.created", "data": {"payment_id": "p"}}
        )
        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Event ignored"}
