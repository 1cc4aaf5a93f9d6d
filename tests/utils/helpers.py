"""Shared helpers for AuthLedger tests."""
import re
from unittest.mock import patch

import httpx

from authledger.auth.passwords import PasswordHasher

STRONG_PASSWORD = "Sup3rSecret"

# Cheapest parameters argon2 accepts; production cost is not under test here
FAST_HASHER = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


def refresh_cookie(response) -> str | None:
    """Value of the refresh_token cookie set by a response, if any."""
    for header in response.headers.get_list("set-cookie"):
        match = re.match(r'refresh_token="?([^";]*)"?', header)
        if match:
            return match.group(1) or None
    return None


def refresh_cookie_header(response) -> str:
    """The full Set-Cookie header for refresh_token, lower-cased."""
    for header in response.headers.get_list("set-cookie"):
        if header.startswith("refresh_token="):
            return header.lower()
    return ""


def auth_header(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


_RealAsyncClient = httpx.AsyncClient


def mock_http(handler):
    """Patch the identity providers' AsyncClient to route requests to ``handler``."""

    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return patch("authledger.auth.oauth.httpx.AsyncClient", side_effect=factory)
