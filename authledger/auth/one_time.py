"""Single-use tokens: email verification, password reset and OAuth state.

Only a SHA-256 digest of each token is stored. Consumption is one conditional
UPDATE that flips ``used`` from false to true, so a token can succeed at most
once even under concurrent submissions.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.clock import utcnow
from authledger.errors import translate_db_errors
from authledger.models import AuthToken, AuthTokenType, OAuthStateNonce

logger = logging.getLogger(__name__)

TOKEN_LIFETIMES: dict[AuthTokenType, timedelta] = {
    AuthTokenType.PASSWORD_RESET: timedelta(minutes=15),
    AuthTokenType.EMAIL_VERIFICATION: timedelta(hours=24),
}


def _hash_token(token: str) -> str:
    """SHA-256 hash a token string."""
    return hashlib.sha256(token.encode()).hexdigest()


class OneTimeTokenStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @translate_db_errors
    async def issue(self, user_id: str, token_type: AuthTokenType) -> str:
        """Create a token and return the raw value (only its hash is stored)."""
        raw = secrets.token_urlsafe(32)
        self.session.add(
            AuthToken(
                user_id=user_id,
                token_hash=_hash_token(raw),
                token_type=token_type,
                expires_at=utcnow() + TOKEN_LIFETIMES[token_type],
            )
        )
        await self.session.flush()
        return raw

    @translate_db_errors
    async def consume(self, raw_token: str, token_type: AuthTokenType) -> str | None:
        """Mark a token used.

        Returns:
            The owning user id, or None if the token is unknown, expired,
            of another type, or already used.
        """
        token_hash = _hash_token(raw_token)
        result = await self.session.execute(
            update(AuthToken)
            .where(
                AuthToken.token_hash == token_hash,
                AuthToken.token_type == token_type,
                AuthToken.used.is_(False),
                AuthToken.expires_at > utcnow(),
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        owner = await self.session.execute(
            select(AuthToken.user_id).where(AuthToken.token_hash == token_hash)
        )
        return owner.scalar_one()

    @translate_db_errors
    async def purge_expired(self) -> int:
        result = await self.session.execute(
            delete(AuthToken)
            .where(or_(AuthToken.expires_at <= utcnow(), AuthToken.used.is_(True)))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class OAuthStateStore:
    """Server-side record of issued OAuth states.

    The signed state carries a nonce; the callback accepts it only if the
    nonce's row is still present, and deletes the row in the same statement.
    """

    def __init__(
        self, session: AsyncSession, lifetime: timedelta = timedelta(minutes=10)
    ) -> None:
        self.session = session
        self.lifetime = lifetime

    @translate_db_errors
    async def issue(self, provider: str) -> str:
        """Record a fresh nonce for ``provider`` and return it."""
        nonce = secrets.token_urlsafe(16)
        self.session.add(
            OAuthStateNonce(
                nonce_hash=_hash_token(nonce),
                provider=provider,
                expires_at=utcnow() + self.lifetime,
            )
        )
        await self.session.flush()
        return nonce

    @translate_db_errors
    async def consume(self, nonce: str, provider: str) -> bool:
        """Delete the nonce's row. False if unknown, expired or already used."""
        result = await self.session.execute(
            delete(OAuthStateNonce)
            .where(
                OAuthStateNonce.nonce_hash == _hash_token(nonce),
                OAuthStateNonce.provider == provider,
                OAuthStateNonce.expires_at > utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @translate_db_errors
    async def purge_expired(self) -> int:
        result = await self.session.execute(
            delete(OAuthStateNonce)
            .where(OAuthStateNonce.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
