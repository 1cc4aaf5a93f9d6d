"""Server-side login sessions.

A session anchors one login: it holds the current access/refresh pair, its
expiry and device metadata. Expired rows are invisible to every lookup, so
"expired" and "invalidated" look the same to callers.

State machine::

    created -> active -> (refreshed -> active)* -> invalidated | expired
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.clock import utcnow
from authledger.errors import translate_db_errors
from authledger.models import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    """Request metadata recorded with sessions and audit events."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class SessionStore:
    """Session persistence within the caller's DB session (caller commits)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @translate_db_errors
    async def create(
        self,
        user_id: str,
        tokens: TokenPair,
        expires_at: datetime,
        device: DeviceInfo | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Persist a new login.

        Args:
            user_id: Owner of the session.
            tokens: Access/refresh pair minted for this session.
            expires_at: Absolute expiry.
            device: Client IP and user agent.
            session_id: Pre-generated id (tokens embed it, so it is chosen
                before minting).

        Returns:
            The flushed Session.
        """
        device = device or DeviceInfo()
        now = utcnow()
        record = Session(
            user_id=user_id,
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=expires_at,
            created_at=now,
            last_activity=now,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
        )
        if session_id is not None:
            record.id = session_id
        self.session.add(record)
        await self.session.flush()
        logger.info(f"Session created: {record.id} for user {user_id}")
        return record

    @translate_db_errors
    async def find_by_id(self, session_id: str) -> Session | None:
        result = await self.session.execute(
            select(Session).where(Session.id == session_id, Session.expires_at > utcnow())
        )
        return result.scalar_one_or_none()

    @translate_db_errors
    async def find_by_token(self, token: str) -> Session | None:
        result = await self.session.execute(
            select(Session).where(Session.token == token, Session.expires_at > utcnow())
        )
        return result.scalar_one_or_none()

    @translate_db_errors
    async def find_by_refresh_token(self, refresh_token: str) -> Session | None:
        result = await self.session.execute(
            select(Session).where(
                Session.refresh_token == refresh_token,
                Session.expires_at > utcnow(),
            )
        )
        return result.scalar_one_or_none()

    @translate_db_errors
    async def rotate(
        self,
        session_id: str,
        new_access_token: str,
        new_expires_at: datetime,
    ) -> bool:
        """Swap in a new access token and extend the session.

        The refresh token and session id stay the same. ``expires_at`` never
        moves backwards: an earlier ``new_expires_at`` leaves it unchanged.

        Returns:
            False if the session no longer exists or has expired.
        """
        now = utcnow()
        result = await self.session.execute(
            update(Session)
            .where(Session.id == session_id, Session.expires_at > now)
            .values(
                token=new_access_token,
                expires_at=case(
                    (Session.expires_at < new_expires_at, new_expires_at),
                    else_=Session.expires_at,
                ),
                last_activity=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @translate_db_errors
    async def touch(self, session_id: str) -> None:
        await self.session.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(last_activity=utcnow())
            .execution_options(synchronize_session=False)
        )

    @translate_db_errors
    async def invalidate(self, session_id: str) -> bool:
        result = await self.session.execute(
            delete(Session)
            .where(Session.id == session_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Session invalidated: {session_id}")
        return result.rowcount > 0

    @translate_db_errors
    async def invalidate_all(self, user_id: str) -> int:
        """Delete every session of a user. Returns the number removed."""
        result = await self.session.execute(
            delete(Session)
            .where(Session.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Invalidated {result.rowcount} session(s) for user {user_id}")
        return result.rowcount

    @translate_db_errors
    async def list_for_user(self, user_id: str) -> list[Session]:
        result = await self.session.execute(
            select(Session)
            .where(Session.user_id == user_id, Session.expires_at > utcnow())
            .order_by(Session.last_activity.desc())
        )
        return list(result.scalars().all())

    @translate_db_errors
    async def purge_expired(self) -> int:
        """Sweep expired sessions. Returns the number removed."""
        result = await self.session.execute(
            delete(Session)
            .where(Session.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
