"""Integration tests for the auth API.

Tests:
    - Register / login / me
    - Refresh cookie handling
    - Logout, password change and account deletion
    - Password reset and email verification
    - OAuth redirect, callback and unlink
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from authledger.api.auth import get_provider_factory
from authledger.auth.oauth import ExternalIdentity, GitHubProvider
from authledger.errors import IdentityProviderError
from authledger.main import app
from authledger.models import AuditEventType, AuditLog
from tests.utils.helpers import (
    STRONG_PASSWORD,
    auth_header,
    mock_http,
    refresh_cookie,
    refresh_cookie_header,
)


async def register(client, email="api@example.com", password=STRONG_PASSWORD, name="Api User"):
    return await client.post(
        "/auth/register",
        json={"email": email, "password": password, "name": name},
    )


async def login(client, email="api@example.com", password=STRONG_PASSWORD):
    return await client.post("/auth/login", json={"email": email, "password": password})


def cookie_header(token: str) -> dict[str, str]:
    return {"Cookie": f"refresh_token={token}"}


class StubProvider:
    name = "github"

    def __init__(self, identity=None, error=None):
        self.identity = identity
        self.error = error

    def authorization_url(self, state: str) -> str:
        return f"https://idp.test/authorize?state={state}"

    async def exchange(self, code: str) -> ExternalIdentity:
        if self.error is not None:
            raise self.error
        return self.identity


def use_provider(provider) -> None:
    app.dependency_overrides[get_provider_factory] = lambda: (lambda name, settings: provider)


def octo(verified: bool = True) -> ExternalIdentity:
    return ExternalIdentity(
        provider="github",
        provider_user_id="4242",
        email="octo@example.com",
        name="Octo Cat",
        email_verified=verified,
    )


@pytest.mark.integration
class TestRegisterAndLogin:
    """Tests for POST /auth/register and /auth/login."""

    @pytest.mark.asyncio
    async def test_register_returns_token_and_cookie(self, test_client):
        response = await register(test_client)
        assert response.status_code == 201

        data = response.json()
        assert data["tokenType"] == "bearer"
        assert data["expiresIn"] == 900
        assert data["accessToken"]
        assert "expiresAt" in data
        assert "refreshToken" not in data

        cookie = refresh_cookie_header(response)
        assert refresh_cookie(response)
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "path=/" in cookie

    @pytest.mark.asyncio
    async def test_register_duplicate_email(self, test_client):
        await register(test_client)
        response = await register(test_client, email="API@example.com")
        assert response.status_code == 409
        assert response.json()["error"] == "An account with this email already exists"

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, test_client):
        response = await test_client.post("/auth/register", json={"email": "a@b.co"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_login(self, test_client):
        await register(test_client)
        response = await login(test_client, email="Api@Example.com")
        assert response.status_code == 200
        assert response.json()["accessToken"]
        assert refresh_cookie(response)

    @pytest.mark.asyncio
    async def test_login_failure_is_generic(self, test_client):
        await register(test_client)
        wrong = await login(test_client, password="Wr0ngPassword")
        unknown = await login(test_client, email="ghost@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {
            "error": "Invalid email or password",
            "detail": None,
        }

    @pytest.mark.asyncio
    async def test_lockout_after_repeated_failures(self, test_client):
        await register(test_client)
        for _ in range(5):
            assert (await login(test_client, password="Wr0ngPassword")).status_code == 401

        response = await login(test_client)
        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_me(self, test_client):
        token = (await register(test_client)).json()["accessToken"]

        response = await test_client.get("/auth/me", headers=auth_header(token))
        assert response.status_code == 200

        data = response.json()
        assert data["user"]["email"] == "api@example.com"
        assert data["user"]["name"] == "Api User"
        assert data["user"]["emailVerified"] is False
        assert data["credits"] == {"daily": 5, "purchased": 0, "total": 5}

    @pytest.mark.asyncio
    async def test_me_rejects_garbage_token(self, test_client):
        response = await test_client.get("/auth/me", headers=auth_header("not-a-jwt"))
        assert response.status_code == 401


@pytest.mark.integration
class TestRefresh:
    """Tests for POST /auth/refresh."""

    @pytest.mark.asyncio
    async def test_refresh_with_cookie(self, test_client):
        registered = await register(test_client)
        token = refresh_cookie(registered)

        response = await test_client.post("/auth/refresh", headers=cookie_header(token))
        assert response.status_code == 200
        assert response.json()["accessToken"]
        assert refresh_cookie(response) == token

        me = await test_client.get(
            "/auth/me", headers=auth_header(response.json()["accessToken"])
        )
        assert me.status_code == 200

    @pytest.mark.asyncio
    async def test_refresh_without_cookie(self, test_client):
        test_client.cookies.clear()
        response = await test_client.post("/auth/refresh")
        assert response.status_code == 401
        assert "max-age=0" in refresh_cookie_header(response)

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_refresh_token(self, test_client):
        access = (await register(test_client)).json()["accessToken"]
        response = await test_client.post("/auth/refresh", headers=cookie_header(access))
        assert response.status_code == 401


@pytest.mark.integration
class TestSessionEndingActions:
    """Logout, password change and account deletion."""

    @pytest.mark.asyncio
    async def test_logout_kills_refresh(self, test_client):
        registered = await register(test_client)
        access = registered.json()["accessToken"]
        token = refresh_cookie(registered)

        response = await test_client.post("/auth/logout", headers=auth_header(access))
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out"
        assert "max-age=0" in refresh_cookie_header(response)

        refreshed = await test_client.post("/auth/refresh", headers=cookie_header(token))
        assert refreshed.status_code == 401
        assert refreshed.json()["error"] == "Session not found or expired"

        again = await test_client.post("/auth/logout", headers=auth_header(access))
        assert again.status_code == 401

    @pytest.mark.asyncio
    async def test_change_password(self, test_client):
        registered = await register(test_client)
        access = registered.json()["accessToken"]

        response = await test_client.post(
            "/auth/password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "N3wPassword"},
            headers=auth_header(access),
        )
        assert response.status_code == 200

        stale = await test_client.post(
            "/auth/refresh", headers=cookie_header(refresh_cookie(registered))
        )
        assert stale.status_code == 401
        assert (await login(test_client, password="N3wPassword")).status_code == 200

    @pytest.mark.asyncio
    async def test_change_password_wrong_current(self, test_client):
        access = (await register(test_client)).json()["accessToken"]
        response = await test_client.post(
            "/auth/password",
            json={"currentPassword": "Wr0ngPassword", "newPassword": "N3wPassword"},
            headers=auth_header(access),
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Current password is incorrect"

    @pytest.mark.asyncio
    async def test_delete_account(self, test_client):
        access = (await register(test_client)).json()["accessToken"]

        response = await test_client.delete("/auth/account", headers=auth_header(access))
        assert response.status_code == 200
        assert response.json()["message"] == "Account deleted"

        assert (await login(test_client)).status_code == 401
        me = await test_client.get("/auth/me", headers=auth_header(access))
        assert me.status_code == 401
        assert me.json()["error"] == "User not found"


@pytest.mark.integration
class TestPasswordResetAndVerification:
    """Tests for one-time token flows."""

    @pytest.mark.asyncio
    async def test_forgot_and_reset(self, test_client):
        await register(test_client)

        forgot = await test_client.post(
            "/auth/forgot-password", json={"email": "api@example.com"}
        )
        assert forgot.status_code == 200
        token = forgot.json()["token"]
        assert token

        reset = await test_client.post(
            "/auth/reset-password", json={"token": token, "password": "R3setPassword"}
        )
        assert reset.status_code == 200
        assert reset.json()["message"] == "Password has been reset"
        assert (await login(test_client, password="R3setPassword")).status_code == 200

        reused = await test_client.post(
            "/auth/reset-password", json={"token": token, "password": "Another1Pass"}
        )
        assert reused.status_code == 400

    @pytest.mark.asyncio
    async def test_forgot_unknown_email_looks_identical(self, test_client):
        response = await test_client.post(
            "/auth/forgot-password", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "If an account exists with this email, a reset link has been sent."
        assert data["token"] is None

    @pytest.mark.asyncio
    async def test_email_verification(self, test_client):
        access = (await register(test_client)).json()["accessToken"]

        requested = await test_client.post(
            "/auth/verify-email/request", headers=auth_header(access)
        )
        assert requested.status_code == 200

        verified = await test_client.post(
            "/auth/verify-email", json={"token": requested.json()["token"]}
        )
        assert verified.status_code == 200

        me = await test_client.get("/auth/me", headers=auth_header(access))
        assert me.json()["user"]["emailVerified"] is True


@pytest.mark.integration
class TestOAuth:
    """Tests for the OAuth redirect and callback."""

    async def _start(self, client, redirect="/dashboard") -> str:
        response = await client.get("/auth/oauth/github", params={"redirect": redirect})
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://idp.test/authorize")
        return parse_qs(urlparse(location).query)["state"][0]

    @pytest.mark.asyncio
    async def test_full_flow(self, test_client):
        use_provider(StubProvider(octo()))
        state = await self._start(test_client)

        response = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "abc", "state": state}
        )
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.path == "/dashboard"
        access = parse_qs(location.query)["token"][0]
        assert refresh_cookie(response)

        me = await test_client.get("/auth/me", headers=auth_header(access))
        assert me.json()["user"]["email"] == "octo@example.com"
        assert me.json()["user"]["emailVerified"] is True

    @pytest.mark.asyncio
    async def test_offsite_redirect_is_dropped(self, test_client):
        use_provider(StubProvider(octo()))
        state = await self._start(test_client, redirect="//evil.test/steal")

        response = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "abc", "state": state}
        )
        assert urlparse(response.headers["location"]).path == "/"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params,reason",
        [
            ({"error": "access_denied"}, "oauth_denied"),
            ({"state": "x"}, "oauth_missing_code"),
            ({"code": "abc", "state": "forged"}, "oauth_invalid_state"),
        ],
    )
    async def test_callback_failures_redirect(self, test_client, params, reason):
        use_provider(StubProvider(octo()))
        response = await test_client.get("/auth/oauth/callback/github", params=params)
        assert response.status_code in (302, 307)
        assert parse_qs(urlparse(response.headers["location"]).query)["error"] == [reason]

    @pytest.mark.asyncio
    async def test_provider_error_redirects(self, test_client):
        use_provider(StubProvider(error=IdentityProviderError("github token exchange failed")))
        state = await self._start(test_client)

        response = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "bad", "state": state}
        )
        assert parse_qs(urlparse(response.headers["location"]).query)["error"] == [
            "oauth_failed"
        ]

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, test_client):
        use_provider(StubProvider(octo()))
        state = await self._start(test_client)

        first = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "c1", "state": state}
        )
        replay = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "c2", "state": state}
        )

        assert "token" in parse_qs(urlparse(first.headers["location"]).query)
        replay_query = parse_qs(urlparse(replay.headers["location"]).query)
        assert replay_query["error"] == ["oauth_invalid_state"]
        assert "token" not in replay_query

    @pytest.mark.asyncio
    async def test_state_not_reusable_after_failed_exchange(self, test_client):
        use_provider(StubProvider(error=IdentityProviderError("github token exchange failed")))
        state = await self._start(test_client)
        await test_client.get(
            "/auth/oauth/callback/github", params={"code": "bad", "state": state}
        )

        use_provider(StubProvider(octo()))
        response = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "abc", "state": state}
        )
        assert parse_qs(urlparse(response.headers["location"]).query)["error"] == [
            "oauth_invalid_state"
        ]

    @pytest.mark.asyncio
    async def test_malformed_provider_reply_redirects(self, test_client, session_factory):
        use_provider(GitHubProvider("cid", "secret", "http://api.test/cb"))
        start = await test_client.get("/auth/oauth/github")
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

        def handler(request):
            return httpx.Response(200, text="<html>rate limited</html>")

        with mock_http(handler):
            response = await test_client.get(
                "/auth/oauth/callback/github", params={"code": "c", "state": state}
            )

        assert response.status_code in (302, 307)
        assert parse_qs(urlparse(response.headers["location"]).query)["error"] == [
            "oauth_failed"
        ]
        async with session_factory() as session:
            failures = await session.scalar(
                select(func.count(AuditLog.id)).where(
                    AuditLog.event_type == AuditEventType.FAILED_LOGIN
                )
            )
        assert failures == 1

    @pytest.mark.asyncio
    async def test_unverified_email_conflict(self, test_client):
        await register(test_client, email="octo@example.com")
        use_provider(StubProvider(octo(verified=False)))
        state = await self._start(test_client)

        response = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "abc", "state": state}
        )
        assert parse_qs(urlparse(response.headers["location"]).query)["error"] == [
            "oauth_conflict"
        ]

    @pytest.mark.asyncio
    async def test_unknown_provider(self, test_client):
        response = await test_client.get("/auth/oauth/myspace")
        assert response.status_code == 400
        assert response.json()["error"] == "Unsupported provider: myspace"

    @pytest.mark.asyncio
    async def test_unlink_only_method_forbidden(self, test_client):
        use_provider(StubProvider(octo()))
        state = await self._start(test_client)
        callback = await test_client.get(
            "/auth/oauth/callback/github", params={"code": "abc", "state": state}
        )
        access = parse_qs(urlparse(callback.headers["location"]).query)["token"][0]

        response = await test_client.delete("/auth/oauth/github", headers=auth_header(access))
        assert response.status_code == 403
        assert response.json()["error"] == "Cannot remove the only sign-in method"
