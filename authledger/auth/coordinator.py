"""Registration, login, refresh and account-level security flows.

AuthCoordinator composes the token codec, password hasher, user and session
stores, the credit ledger and the audit trail around one request's DB
session. Routes commit on success. Security-relevant failures (bad password,
lockout, revoked session) are audited and committed here before the error is
raised, so the audit row survives the request rollback.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.audit import AuditRecorder
from authledger.auth.clock import as_utc, utcnow
from authledger.auth.events import (
    AccountDeletedDetails,
    EmailVerifiedDetails,
    FailedLoginDetails,
    LoginDetails,
    LogoutDetails,
    OAuthLinkedDetails,
    OAuthUnlinkedDetails,
    PasswordChangeDetails,
    PasswordResetDetails,
    RegisterDetails,
    SuspiciousActivityDetails,
)
from authledger.auth.oauth import IdentityProvider
from authledger.auth.one_time import OneTimeTokenStore
from authledger.auth.passwords import PasswordHasher, validate_password_strength
from authledger.auth.sessions import DeviceInfo, SessionStore, TokenPair
from authledger.auth.tokens import TokenClaims, TokenCodec, TokenType
from authledger.auth.users import (
    OAuthAccountStore,
    UserStore,
    normalize_email,
    validate_email,
)
from authledger.config import Settings
from authledger.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    EmailTaken,
    IdentityProviderError,
    InvalidCredentials,
    InvalidToken,
    OAuthAccountConflict,
    SessionNotFound,
    TooManyAttempts,
    UserNotFound,
    ValidationFailure,
    WeakPassword,
)
from authledger.models import AuditEventType, AuthTokenType, User

logger = logging.getLogger(__name__)

_DUMMY_PASSWORD = "Timing-Equalizer-0"


@dataclass(frozen=True)
class IssuedSession:
    """Outcome of a successful login, registration or refresh."""

    user: User
    session_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    access_expires_in: int


class AuthCoordinator:
    """Orchestrates authentication flows for one request.

    Args:
        session: The request's DB session (caller commits on success).
        settings: Application settings.
        codec: Token codec; built from settings when omitted.
        hasher: Password hasher; a shared default when omitted.
    """

    _default_hasher = PasswordHasher()
    _dummy_hash: str | None = None

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        codec: TokenCodec | None = None,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.codec = codec or TokenCodec(
            settings.JWT_SECRET,
            access_ttl=settings.ACCESS_TOKEN_TTL,
            refresh_ttl=settings.REFRESH_TOKEN_TTL,
        )
        self.hasher = hasher or self._default_hasher
        self.users = UserStore(session, daily_allotment=settings.DAILY_CREDIT_ALLOTMENT)
        self.oauth_accounts = OAuthAccountStore(session)
        self.sessions = SessionStore(session)
        self.audit = AuditRecorder(session)
        self.one_time = OneTimeTokenStore(session)

    # --- helpers ---

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, stored_hash: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, stored_hash)

    async def _burn_verify(self, password: str) -> None:
        """Spend the same hashing effort as a real check for unknown accounts."""
        cls = type(self)
        if cls._dummy_hash is None:
            cls._dummy_hash = await self._hash(_DUMMY_PASSWORD)
        await self._verify(password, cls._dummy_hash)

    async def _reject(self, error: AuthenticationFailure) -> None:
        """Persist the audit rows written so far, then raise ``error``."""
        await self.session.commit()
        raise error

    def _check_strength(self, password: str) -> None:
        errors = validate_password_strength(password)
        if errors:
            raise WeakPassword(errors)

    async def _issue(self, user: User, device: DeviceInfo | None) -> IssuedSession:
        session_id = str(uuid.uuid4())
        claims = TokenClaims(
            user_id=user.id,
            email=user.email,
            session_id=session_id,
            name=user.name,
        )
        tokens = TokenPair(
            access_token=self.codec.mint_access(claims),
            refresh_token=self.codec.mint_refresh(claims),
        )
        expires_at = utcnow() + timedelta(seconds=self.settings.session_ttl_seconds)
        await self.sessions.create(
            user.id, tokens, expires_at, device, session_id=session_id
        )
        return IssuedSession(
            user=user,
            session_id=session_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=expires_at,
            access_expires_in=self.codec.access_ttl,
        )

    async def _check_lockout(
        self,
        device: DeviceInfo,
        user_id: str | None = None,
    ) -> None:
        window = self.settings.LOCKOUT_WINDOW_MINUTES
        limit = self.settings.MAX_FAILED_LOGINS

        if user_id is None and device.ip_address:
            attempts = await self.audit.count_failed_logins(
                ip_address=device.ip_address, window_minutes=window
            )
            reason = "ip_lockout"
        elif user_id is not None:
            attempts = await self.audit.count_failed_logins(
                user_id=user_id, window_minutes=window
            )
            reason = "account_lockout"
        else:
            return

        if attempts >= limit:
            logger.warning(f"Login locked out ({reason}) after {attempts} failures")
            await self.audit.log(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                SuspiciousActivityDetails(reason=reason, failed_attempts=attempts),
                user_id=user_id,
                device=device,
            )
            await self._reject(TooManyAttempts())

    # --- flows ---

    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        device: DeviceInfo | None = None,
    ) -> IssuedSession:
        """Create a password account and log it in.

        Raises:
            ValidationFailure: Malformed email.
            WeakPassword: Password fails the strength policy.
            EmailTaken: Address already registered.
        """
        email = validate_email(email)
        self._check_strength(password)

        if await self.users.find_by_email(email) is not None:
            raise EmailTaken()

        password_hash = await self._hash(password)
        user = await self.users.create(
            email=email,
            password_hash=password_hash,
            name=name.strip() if name and name.strip() else None,
        )
        issued = await self._issue(user, device)
        await self.audit.log(
            AuditEventType.REGISTER,
            RegisterDetails(method="password"),
            user_id=user.id,
            device=device,
        )
        return issued

    async def login_password(
        self,
        email: str,
        password: str,
        device: DeviceInfo | None = None,
    ) -> IssuedSession:
        """Log in with email and password.

        Unknown accounts and wrong passwords fail identically.

        Raises:
            TooManyAttempts: Lockout threshold reached for the IP or account.
            InvalidCredentials: Unknown email or wrong password.
        """
        device = device or DeviceInfo()
        await self._check_lockout(device)

        user = await self.users.find_by_email(normalize_email(email))
        if user is not None:
            await self._check_lockout(device, user_id=user.id)

        if user is None or user.password_hash is None:
            await self._burn_verify(password)
            reason = "unknown_user" if user is None else "no_password"
            await self.audit.log(
                AuditEventType.FAILED_LOGIN,
                FailedLoginDetails(reason=reason),
                user_id=user.id if user is not None else None,
                device=device,
            )
            logger.warning(f"Failed login ({reason}) from {device.ip_address}")
            await self._reject(InvalidCredentials())

        if not await self._verify(password, user.password_hash):
            await self.audit.log(
                AuditEventType.FAILED_LOGIN,
                FailedLoginDetails(reason="invalid_password"),
                user_id=user.id,
                device=device,
            )
            logger.warning(f"Failed login (invalid_password) for user {user.id}")
            await self._reject(InvalidCredentials())

        issued = await self._issue(user, device)
        await self.audit.log(
            AuditEventType.LOGIN,
            LoginDetails(method="password", session_id=issued.session_id),
            user_id=user.id,
            device=device,
        )
        return issued

    async def login_external(
        self,
        provider: IdentityProvider,
        code: str,
        device: DeviceInfo | None = None,
    ) -> IssuedSession:
        """Log in (or sign up) through an external identity provider.

        Resolution order: existing link, then an existing user with the same
        verified email, then a new user. External users never get a password.

        Raises:
            IdentityProviderError: The code exchange failed.
            OAuthAccountConflict: The email belongs to an existing account but
                the provider did not verify it.
        """
        device = device or DeviceInfo()
        try:
            identity = await provider.exchange(code)
        except IdentityProviderError:
            await self.audit.log(
                AuditEventType.FAILED_LOGIN,
                FailedLoginDetails(reason="oauth_error", provider=provider.name),
                device=device,
            )
            await self.session.commit()
            raise

        created = False
        account = await self.oauth_accounts.find(
            identity.provider, identity.provider_user_id
        )
        if account is not None:
            user = await self.users.find_by_id(account.user_id)
            if user is None:
                raise UserNotFound()
        else:
            user = await self.users.find_by_email(identity.email)
            if user is None:
                user = await self.users.create(
                    email=identity.email,
                    name=identity.name,
                    avatar_url=identity.avatar_url,
                    email_verified=identity.email_verified,
                )
                created = True
            elif not identity.email_verified:
                logger.warning(
                    f"Refusing to link unverified {identity.provider} email to user {user.id}"
                )
                raise OAuthAccountConflict()

        _, linked = await self.oauth_accounts.upsert(user.id, identity)
        if linked:
            await self.audit.log(
                AuditEventType.OAUTH_LINKED,
                OAuthLinkedDetails(provider=identity.provider),
                user_id=user.id,
                device=device,
            )
        if not created:
            await self.users.update_profile(user, identity.name, identity.avatar_url)

        issued = await self._issue(user, device)
        if created:
            await self.audit.log(
                AuditEventType.REGISTER,
                RegisterDetails(method="oauth", provider=identity.provider),
                user_id=user.id,
                device=device,
            )
        else:
            await self.audit.log(
                AuditEventType.LOGIN,
                LoginDetails(
                    method="oauth",
                    provider=identity.provider,
                    session_id=issued.session_id,
                ),
                user_id=user.id,
                device=device,
            )
        return issued

    async def refresh(
        self,
        refresh_token: str,
        device: DeviceInfo | None = None,
    ) -> IssuedSession:
        """Mint a new access token for a live session.

        The refresh token itself is kept; the session expiry is extended.

        Raises:
            InvalidToken: Forged, expired or non-refresh token.
            SessionNotFound: Session was invalidated or has expired. Fatal for
                this request; callers must not retry.
        """
        try:
            claims = self.codec.verify(refresh_token, TokenType.REFRESH)
        except InvalidToken as e:
            logger.warning(f"Rejected refresh token: {e.message}")
            await self.audit.log(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                SuspiciousActivityDetails(reason="invalid_refresh_token"),
                device=device,
            )
            await self._reject(e)

        record = await self.sessions.find_by_refresh_token(refresh_token)
        if record is None or record.id != claims.session_id:
            logger.warning(f"Refresh against dead session {claims.session_id}")
            await self.audit.log(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                SuspiciousActivityDetails(reason="refresh_on_invalidated_session"),
                user_id=claims.user_id,
                device=device,
            )
            await self._reject(SessionNotFound())

        user = await self.users.find_by_id(record.user_id)
        if user is None:
            raise SessionNotFound()

        access_token = self.codec.mint_access(
            TokenClaims(
                user_id=user.id,
                email=user.email,
                session_id=record.id,
                name=user.name,
            )
        )
        new_expiry = utcnow() + timedelta(seconds=self.settings.session_ttl_seconds)
        previous_expiry = as_utc(record.expires_at)
        if not await self.sessions.rotate(record.id, access_token, new_expiry):
            raise SessionNotFound()

        return IssuedSession(
            user=user,
            session_id=record.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=max(previous_expiry, new_expiry),
            access_expires_in=self.codec.access_ttl,
        )

    async def logout(
        self,
        session_id: str,
        user_id: str,
        device: DeviceInfo | None = None,
    ) -> None:
        await self.sessions.invalidate(session_id)
        await self.audit.log(
            AuditEventType.LOGOUT,
            LogoutDetails(session_id=session_id),
            user_id=user_id,
            device=device,
        )

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        device: DeviceInfo | None = None,
    ) -> int:
        """Replace the password and sign out every session.

        Returns:
            Number of sessions invalidated.

        Raises:
            InvalidCredentials: ``current_password`` is wrong or unset.
            WeakPassword: New password fails the policy.
        """
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound()

        if user.password_hash is None or not await self._verify(
            current_password, user.password_hash
        ):
            await self.audit.log(
                AuditEventType.FAILED_LOGIN,
                FailedLoginDetails(
                    reason="no_password" if user.password_hash is None else "invalid_password"
                ),
                user_id=user.id,
                device=device,
            )
            await self._reject(InvalidCredentials("Current password is incorrect"))

        self._check_strength(new_password)
        await self.users.set_password(user.id, await self._hash(new_password))
        count = await self.sessions.invalidate_all(user.id)
        await self.audit.log(
            AuditEventType.PASSWORD_CHANGE,
            PasswordChangeDetails(via="change", sessions_invalidated=count),
            user_id=user.id,
            device=device,
        )
        return count

    async def request_password_reset(
        self,
        email: str,
        device: DeviceInfo | None = None,
    ) -> str | None:
        """Issue a reset token; returns None (silently) for unknown emails."""
        user = await self.users.find_by_email(email)
        if user is None:
            return None

        token = await self.one_time.issue(user.id, AuthTokenType.PASSWORD_RESET)
        await self.audit.log(
            AuditEventType.PASSWORD_RESET,
            PasswordResetDetails(),
            user_id=user.id,
            device=device,
        )
        return token

    async def complete_password_reset(
        self,
        token: str,
        new_password: str,
        device: DeviceInfo | None = None,
    ) -> None:
        """Set a new password from a reset token and sign out every session.

        Raises:
            WeakPassword: New password fails the policy (token not consumed).
            ValidationFailure: Token unknown, expired or already used.
        """
        self._check_strength(new_password)
        user_id = await self.one_time.consume(token, AuthTokenType.PASSWORD_RESET)
        if user_id is None:
            raise ValidationFailure("Invalid or expired reset token")

        await self.users.set_password(user_id, await self._hash(new_password))
        count = await self.sessions.invalidate_all(user_id)
        await self.audit.log(
            AuditEventType.PASSWORD_CHANGE,
            PasswordChangeDetails(via="reset", sessions_invalidated=count),
            user_id=user_id,
            device=device,
        )

    async def request_email_verification(self, user_id: str) -> str:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound()
        if user.email_verified:
            raise ValidationFailure("Email is already verified")
        return await self.one_time.issue(user.id, AuthTokenType.EMAIL_VERIFICATION)

    async def complete_email_verification(
        self,
        token: str,
        device: DeviceInfo | None = None,
    ) -> str:
        """Mark the token owner's email verified. Returns the user id."""
        user_id = await self.one_time.consume(token, AuthTokenType.EMAIL_VERIFICATION)
        if user_id is None:
            raise ValidationFailure("Invalid or expired verification token")

        await self.users.mark_email_verified(user_id)
        await self.audit.log(
            AuditEventType.EMAIL_VERIFIED,
            EmailVerifiedDetails(),
            user_id=user_id,
            device=device,
        )
        return user_id

    async def unlink_provider(
        self,
        user_id: str,
        provider: str,
        device: DeviceInfo | None = None,
    ) -> None:
        """Remove an external identity link.

        Raises:
            AuthorizationFailure: It is the last way to sign in.
            ValidationFailure: No such link.
        """
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound()

        links = await self.oauth_accounts.list_for_user(user_id)
        if not any(link.provider == provider for link in links):
            raise ValidationFailure(f"No {provider} account is linked")
        if user.password_hash is None and len(links) == 1:
            raise AuthorizationFailure("Cannot remove the only sign-in method")

        await self.oauth_accounts.delete(user_id, provider)
        await self.audit.log(
            AuditEventType.OAUTH_UNLINKED,
            OAuthUnlinkedDetails(provider=provider),
            user_id=user_id,
            device=device,
        )

    async def delete_account(
        self,
        user_id: str,
        device: DeviceInfo | None = None,
    ) -> None:
        """Hard-delete the user; owned rows cascade, audit rows are kept."""
        await self.audit.log(
            AuditEventType.ACCOUNT_DELETED,
            AccountDeletedDetails(former_user_id=user_id),
            user_id=user_id,
            device=device,
        )
        if not await self.users.delete(user_id):
            raise UserNotFound()
        logger.info(f"Account deleted: {user_id}")
