"""Unit tests for FastAPI application.

Tests for authledger/main.py - root, health and error envelopes.

Run with:
    pytest tests/unit/test_main.py -v
    pytest tests/unit/test_main.py -v -m fast
"""

import pytest


@pytest.mark.fast
class TestRootEndpoint:
    """Tests for root endpoint."""

    @pytest.mark.asyncio
    async def test_root_returns_info(self, test_client):
        response = await test_client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["name"] == "AuthLedger"
        assert "version" in data
        assert data["docs"] == "/docs"
        assert data["health"] == "/health"


@pytest.mark.fast
class TestHealthEndpoint:
    """Tests for health endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_status(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert "version" in data


@pytest.mark.fast
class TestErrorEnvelope:
    """Errors share the {"error", "detail"} shape."""

    @pytest.mark.asyncio
    async def test_missing_bearer_is_401(self, test_client):
        response = await test_client.get("/auth/me")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json() == {
            "error": "Missing or invalid Authorization header",
            "detail": None,
        }

    @pytest.mark.asyncio
    async def test_domain_error_rendered(self, test_client):
        response = await test_client.post(
            "/auth/register",
            json={"email": "not-an-email", "password": "Sup3rSecret"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid email address", "detail": None}

    @pytest.mark.asyncio
    async def test_weak_password_lists_violations(self, test_client):
        response = await test_client.post(
            "/auth/register",
            json={"email": "weak@example.com", "password": "weakpass"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Password does not meet requirements"
        assert len(body["detail"]) == 2
