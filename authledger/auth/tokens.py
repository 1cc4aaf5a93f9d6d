"""Signed token minting and verification.

Access tokens: HS256, short-lived (15 min default), payload
``{userId, email, name, sessionId, iat, exp}``.
Refresh tokens: same key and claims plus ``type="refresh"`` so an access token
can never be replayed as a refresh token (7 days default).
OAuth state: ``type="oauth_state"``, 10 minutes, binds the callback to the
provider that issued the redirect.

Verification is pure: no store lookup is needed to authorize a request.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import jwt

from authledger.auth.clock import utcnow
from authledger.errors import (
    InvalidConfig,
    InvalidSignature,
    InvalidToken,
    TokenExpired,
    WrongTokenType,
)

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

_TTL_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_ttl(value: str) -> int:
    """Parse a lifetime such as ``15m`` or ``7d`` into seconds.

    Args:
        value: Integer followed by one of ``s``, ``m``, ``h``, ``d``.

    Returns:
        Lifetime in seconds.

    Raises:
        InvalidConfig: If the format or unit is not recognized.
    """
    match = _TTL_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidConfig(f"Invalid token lifetime: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    OAUTH_STATE = "oauth_state"


@dataclass(frozen=True)
class TokenClaims:
    """Identity carried by access and refresh tokens."""

    user_id: str
    email: str
    session_id: str
    name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "name": self.name,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        user_id = payload.get("userId")
        session_id = payload.get("sessionId")
        if not user_id or not session_id:
            raise InvalidSignature("Token is missing required claims")
        return cls(
            user_id=user_id,
            email=payload.get("email") or "",
            session_id=session_id,
            name=payload.get("name"),
        )


@dataclass(frozen=True)
class OAuthState:
    provider: str
    redirect_path: str | None
    nonce: str


class TokenCodec:
    """Mint and verify HS256 tokens with a single symmetric key.

    Args:
        secret: Signing key. An empty key is a configuration error.
        access_ttl: Default access-token lifetime string.
        refresh_ttl: Default refresh-token lifetime string.
        state_ttl: OAuth state lifetime string.

    Raises:
        InvalidConfig: If the secret is missing or a lifetime is malformed.
    """

    def __init__(
        self,
        secret: str,
        access_ttl: str = "15m",
        refresh_ttl: str = "7d",
        state_ttl: str = "10m",
    ) -> None:
        if not secret:
            raise InvalidConfig("Token signing secret is not configured")
        self._secret = secret
        self.access_ttl = parse_ttl(access_ttl)
        self.refresh_ttl = parse_ttl(refresh_ttl)
        self.state_ttl = parse_ttl(state_ttl)

    def _encode(
        self,
        payload: dict[str, Any],
        ttl_seconds: int,
        now: datetime | None,
    ) -> str:
        issued = now or utcnow()
        body = {
            **payload,
            "iat": issued,
            "exp": issued + timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(body, self._secret, algorithm=ALGORITHM)

    def _decode(self, token: str, expected_type: TokenType) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token rejected: {e}")
            raise InvalidSignature()

        actual = payload.get("type", TokenType.ACCESS.value)
        if actual != expected_type.value:
            raise WrongTokenType(f"Expected {expected_type.value} token, got {actual}")
        return payload

    def mint_access(
        self,
        claims: TokenClaims,
        ttl: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Create a short-lived access token.

        Args:
            claims: Identity to embed.
            ttl: Lifetime override, e.g. ``"5m"``.
            now: Issue time override.

        Returns:
            Encoded JWT string.
        """
        seconds = parse_ttl(ttl) if ttl is not None else self.access_ttl
        return self._encode(claims.to_payload(), seconds, now)

    def mint_refresh(
        self,
        claims: TokenClaims,
        ttl: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Create a refresh token; same claims plus ``type="refresh"``."""
        seconds = parse_ttl(ttl) if ttl is not None else self.refresh_ttl
        payload = {**claims.to_payload(), "type": TokenType.REFRESH.value}
        return self._encode(payload, seconds, now)

    def verify(
        self,
        token: str,
        expected_type: TokenType = TokenType.ACCESS,
    ) -> TokenClaims:
        """Verify a token and return its claims.

        Args:
            token: The encoded JWT.
            expected_type: ``ACCESS`` or ``REFRESH``.

        Returns:
            The embedded TokenClaims.

        Raises:
            InvalidSignature: Forged, malformed or tampered token.
            TokenExpired: Token is past its ``exp``.
            WrongTokenType: Token is valid but of another type.
        """
        payload = self._decode(token, expected_type)
        return TokenClaims.from_payload(payload)

    def mint_state(
        self,
        provider: str,
        redirect_path: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """Create a signed OAuth state for a redirect to ``provider``.

        Args:
            provider: Identity provider the state is bound to.
            redirect_path: Same-site path to land on after login.
            nonce: Server-recorded nonce; a random one is used when omitted.
        """
        payload = {
            "type": TokenType.OAUTH_STATE.value,
            "provider": provider,
            "redirect": redirect_path,
            "nonce": nonce or secrets.token_urlsafe(16),
        }
        return self._encode(payload, self.state_ttl, None)

    def verify_state(self, token: str, provider: str) -> OAuthState:
        """Verify an OAuth state returned on the callback.

        Raises:
            InvalidToken: Bad signature, expired, or issued for another provider.
        """
        payload = self._decode(token, TokenType.OAUTH_STATE)
        if payload.get("provider") != provider:
            raise InvalidToken("OAuth state was issued for another provider")
        return OAuthState(
            provider=provider,
            redirect_path=payload.get("redirect"),
            nonce=payload.get("nonce", ""),
        )
