"""External identity providers (OAuth authorization-code flow).

Only the minimal contract is implemented: build the authorization URL, then
exchange a callback ``code`` for a verified profile. Supported providers:
GitHub and Google.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from authledger.auth.clock import utcnow
from authledger.config import Settings
from authledger.errors import IdentityProviderError, ValidationFailure

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("github", "google")


@dataclass(frozen=True)
class ExternalIdentity:
    """Profile returned by a provider after a successful code exchange."""

    provider: str
    provider_user_id: str
    email: str
    name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None


class IdentityProvider(Protocol):
    """Code-to-identity exchange contract."""

    name: str

    def authorization_url(self, state: str) -> str: ...

    async def exchange(self, code: str) -> ExternalIdentity: ...


class _HttpProvider:
    name = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def _check(self, response: httpx.Response, step: str) -> Any:
        if response.status_code != 200:
            logger.warning(
                f"{self.name} {step} failed with HTTP {response.status_code}"
            )
            raise IdentityProviderError(f"{self.name} {step} failed")
        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"{self.name} {step} returned a non-JSON body")
            raise IdentityProviderError(f"{self.name} {step} failed") from e
        if isinstance(data, dict) and data.get("error"):
            logger.warning(f"{self.name} {step} error: {data.get('error')}")
            raise IdentityProviderError(f"{self.name} {step} failed")
        return data


class GitHubProvider(_HttpProvider):
    name = "github"

    AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
    TOKEN_URL = "https://github.com/login/oauth/access_token"
    API_URL = "https://api.github.com"

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": "read:user user:email",
            "state": state,
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange(self, code: str) -> ExternalIdentity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                token_response = await client.post(
                    self.TOKEN_URL,
                    json={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
                tokens = self._check(token_response, "token exchange")
                access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
                if not access_token:
                    raise IdentityProviderError("github token exchange failed")

                headers = {
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github.v3+json",
                }
                profile = self._check(
                    await client.get(f"{self.API_URL}/user", headers=headers),
                    "profile lookup",
                )
                emails = self._check(
                    await client.get(f"{self.API_URL}/user/emails", headers=headers),
                    "email lookup",
                )
        except httpx.HTTPError as e:
            logger.warning(f"github request failed: {e}")
            raise IdentityProviderError("github is unreachable") from e

        if not isinstance(profile, dict) or not profile.get("id"):
            raise IdentityProviderError("GitHub profile is missing id")
        if not isinstance(emails, list):
            emails = []

        primary = next(
            (
                e
                for e in emails
                if isinstance(e, dict) and e.get("primary") and e.get("verified")
            ),
            None,
        )
        email = primary["email"] if primary else profile.get("email")
        if not email:
            raise IdentityProviderError("No verified email found in GitHub account")

        return ExternalIdentity(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            email=email,
            name=profile.get("name") or profile.get("login"),
            avatar_url=profile.get("avatar_url"),
            email_verified=primary is not None,
            access_token=access_token,
        )


class GoogleProvider(_HttpProvider):
    name = "google"

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange(self, code: str) -> ExternalIdentity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                token_response = await client.post(
                    self.TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": self.redirect_uri,
                    },
                )
                tokens = self._check(token_response, "token exchange")
                access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
                if not access_token:
                    raise IdentityProviderError("google token exchange failed")

                profile = self._check(
                    await client.get(
                        self.USERINFO_URL,
                        headers={"Authorization": f"Bearer {access_token}"},
                    ),
                    "profile lookup",
                )
        except httpx.HTTPError as e:
            logger.warning(f"google request failed: {e}")
            raise IdentityProviderError("google is unreachable") from e

        if not isinstance(profile, dict) or not profile.get("id") or not profile.get("email"):
            raise IdentityProviderError("Google profile is missing id or email")

        expires_in = tokens.get("expires_in")
        return ExternalIdentity(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            email=profile["email"],
            name=profile.get("name"),
            avatar_url=profile.get("picture"),
            email_verified=bool(profile.get("verified_email", False)),
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )


_PROVIDER_CLASSES: dict[str, type[_HttpProvider]] = {
    "github": GitHubProvider,
    "google": GoogleProvider,
}


def get_identity_provider(name: str, settings: Settings) -> IdentityProvider:
    """Build the provider called ``name`` from settings.

    Raises:
        ValidationFailure: If the provider is unknown or not configured.
    """
    provider_cls = _PROVIDER_CLASSES.get(name)
    if provider_cls is None:
        raise ValidationFailure(f"Unsupported provider: {name}")

    credentials = settings.oauth_credentials(name)
    if credentials is None:
        raise ValidationFailure(f"Provider {name} is not configured")

    client_id, client_secret = credentials
    redirect_uri = f"{settings.API_URL.rstrip('/')}/auth/oauth/callback/{name}"
    return provider_cls(client_id, client_secret, redirect_uri)
