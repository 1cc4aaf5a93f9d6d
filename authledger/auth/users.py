"""User record access.

Emails are normalized (stripped, lower-cased) on every read and write so the
unique index enforces case-insensitive uniqueness.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.clock import next_utc_midnight, utcnow
from authledger.auth.oauth import ExternalIdentity
from authledger.errors import (
    EmailTaken,
    OAuthAccountConflict,
    ValidationFailure,
    translate_db_errors,
)
from authledger.models import Credit, CreditType, OAuthAccount, User

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Normalize and validate an email address.

    Raises:
        ValidationFailure: If the address is malformed.
    """
    normalized = normalize_email(email)
    if len(normalized) > 255 or not _EMAIL_PATTERN.match(normalized):
        raise ValidationFailure("Invalid email address")
    return normalized


class UserStore:
    """User lookups and mutations within the caller's session (caller commits)."""

    def __init__(self, session: AsyncSession, daily_allotment: int = 5) -> None:
        self.session = session
        self.daily_allotment = daily_allotment

    @translate_db_errors
    async def find_by_email(self, email: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    @translate_db_errors
    async def find_by_id(self, user_id: str) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    @translate_db_errors
    async def create(
        self,
        email: str,
        password_hash: str | None = None,
        name: str | None = None,
        avatar_url: str | None = None,
        email_verified: bool = False,
    ) -> User:
        """Insert a user and seed its daily credit pool.

        Args:
            email: Address; normalized before insert.
            password_hash: Hash from PasswordHasher, or None for external logins.
            name: Display name.
            avatar_url: Profile picture URL.
            email_verified: Whether the address is already confirmed.

        Returns:
            The flushed User.

        Raises:
            EmailTaken: If the address is already registered.
        """
        user = User(
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
            avatar_url=avatar_url,
            email_verified=email_verified,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(user)
                await self.session.flush()
                self.session.add(
                    Credit(
                        user_id=user.id,
                        credit_type=CreditType.DAILY,
                        amount=self.daily_allotment,
                        reset_date=next_utc_midnight(),
                    )
                )
                await self.session.flush()
        except IntegrityError:
            raise EmailTaken()

        logger.info(f"User created: {user.id}")
        return user

    @translate_db_errors
    async def set_password(self, user_id: str, password_hash: str) -> None:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(password_hash=password_hash, updated_at=utcnow())
        )

    @translate_db_errors
    async def mark_email_verified(self, user_id: str) -> None:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(email_verified=True, updated_at=utcnow())
        )

    @translate_db_errors
    async def update_profile(
        self,
        user: User,
        name: str | None = None,
        avatar_url: str | None = None,
    ) -> User:
        """Fill in missing profile fields from an external identity."""
        if name and not user.name:
            user.name = name
        if avatar_url and not user.avatar_url:
            user.avatar_url = avatar_url
        await self.session.flush()
        return user

    @translate_db_errors
    async def delete(self, user_id: str) -> bool:
        """Hard-delete a user; owned rows cascade in the store."""
        result = await self.session.execute(delete(User).where(User.id == user_id))
        return result.rowcount > 0


class OAuthAccountStore:
    """External identity links."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @translate_db_errors
    async def find(self, provider: str, provider_user_id: str) -> OAuthAccount | None:
        result = await self.session.execute(
            select(OAuthAccount).where(
                OAuthAccount.provider == provider,
                OAuthAccount.provider_user_id == provider_user_id,
            )
        )
        return result.scalar_one_or_none()

    @translate_db_errors
    async def list_for_user(self, user_id: str) -> list[OAuthAccount]:
        result = await self.session.execute(
            select(OAuthAccount)
            .where(OAuthAccount.user_id == user_id)
            .order_by(OAuthAccount.created_at)
        )
        return list(result.scalars().all())

    @translate_db_errors
    async def upsert(
        self,
        user_id: str,
        identity: ExternalIdentity,
    ) -> tuple[OAuthAccount, bool]:
        """Create or refresh the link for ``identity``.

        Returns:
            (account, created).

        Raises:
            OAuthAccountConflict: If the identity is linked to another user.
        """
        account = await self.find(identity.provider, identity.provider_user_id)
        if account is not None:
            if account.user_id != user_id:
                raise OAuthAccountConflict()
            account.access_token = identity.access_token
            account.refresh_token = identity.refresh_token
            account.expires_at = identity.expires_at
            account.updated_at = utcnow()
            await self.session.flush()
            return account, False

        account = OAuthAccount(
            user_id=user_id,
            provider=identity.provider,
            provider_user_id=identity.provider_user_id,
            access_token=identity.access_token,
            refresh_token=identity.refresh_token,
            expires_at=identity.expires_at,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(account)
                await self.session.flush()
        except IntegrityError:
            raise OAuthAccountConflict()
        return account, True

    @translate_db_errors
    async def delete(self, user_id: str, provider: str) -> bool:
        result = await self.session.execute(
            delete(OAuthAccount).where(
                OAuthAccount.user_id == user_id,
                OAuthAccount.provider == provider,
            )
        )
        return result.rowcount > 0
