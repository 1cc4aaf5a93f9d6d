"""FastAPI dependencies for request identity, sessions and the credit ledger.

Identity is passed explicitly into every handler; nothing about the caller is
kept in process-wide state. ``get_current_claims`` is DB-free (signature and
expiry only). Account-level actions additionally use ``require_live_session``
so a logged-out or revoked session cannot act even while its access token is
still within its lifetime.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.coordinator import AuthCoordinator
from authledger.auth.credits import CreditLedger
from authledger.auth.sessions import DeviceInfo, SessionStore
from authledger.auth.tokens import TokenClaims, TokenCodec, TokenType
from authledger.auth.users import UserStore
from authledger.config import get_settings
from authledger.database import get_db_session
from authledger.errors import InvalidToken
from authledger.models import User

logger = logging.getLogger(__name__)


@lru_cache
def get_token_codec() -> TokenCodec:
    settings = get_settings()
    return TokenCodec(
        settings.JWT_SECRET,
        access_ttl=settings.ACCESS_TOKEN_TTL,
        refresh_ttl=settings.REFRESH_TOKEN_TTL,
    )


def get_device(request: Request) -> DeviceInfo:
    """Client IP (first X-Forwarded-For hop, else the peer) and user agent."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return DeviceInfo(
        ip_address=ip_address or None,
        user_agent=request.headers.get("User-Agent"),
    )


async def get_coordinator(
    session: AsyncSession = Depends(get_db_session),
) -> AuthCoordinator:
    return AuthCoordinator(session, get_settings(), codec=get_token_codec())


async def get_ledger(
    session: AsyncSession = Depends(get_db_session),
) -> CreditLedger:
    return CreditLedger(session, daily_allotment=get_settings().DAILY_CREDIT_ALLOTMENT)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def bearer_token(request: Request) -> str:
    """Extract the bearer token from the Authorization header.

    Raises:
        HTTPException 401: If the header is missing or malformed.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise _unauthorized("Missing or invalid Authorization header")
    return auth_header[len("Bearer "):].strip()


async def get_current_claims(
    token: str = Depends(bearer_token),
    codec: TokenCodec = Depends(get_token_codec),
) -> TokenClaims:
    """Verify the access token without touching the store.

    Raises:
        HTTPException 401: If the token is invalid, expired or not an access token.
    """
    try:
        return codec.verify(token, TokenType.ACCESS)
    except InvalidToken as e:
        raise _unauthorized(e.message)


async def require_live_session(
    token: str = Depends(bearer_token),
    claims: TokenClaims = Depends(get_current_claims),
    session: AsyncSession = Depends(get_db_session),
) -> TokenClaims:
    """Like ``get_current_claims`` but also requires the session to exist.

    Raises:
        HTTPException 401: If the session was invalidated or has expired.
    """
    store = SessionStore(session)
    record = await store.find_by_token(token)
    if record is None or record.id != claims.session_id:
        raise _unauthorized("Session not found or expired")
    await store.touch(record.id)
    return claims


async def get_current_user(
    claims: TokenClaims = Depends(get_current_claims),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    """Load the calling user.

    Raises:
        HTTPException 401: If the user no longer exists.
    """
    user = await UserStore(session).find_by_id(claims.user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user
