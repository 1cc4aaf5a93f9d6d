"""Auth API endpoints: registration, login, OAuth, refresh, logout, account.

Endpoints:
    POST   /auth/register              - Create a password account, start a session
    POST   /auth/login                 - Email/password login
    GET    /auth/oauth/{provider}      - Redirect to the identity provider
    GET    /auth/oauth/callback/{provider} - Complete external login, redirect with token
    DELETE /auth/oauth/{provider}      - Unlink an external identity
    POST   /auth/refresh               - New access token from the refresh cookie
    POST   /auth/logout                - End the current session
    GET    /auth/me                    - Current user and credit balance
    POST   /auth/forgot-password       - Issue a password reset token
    POST   /auth/reset-password        - Set a new password from a reset token
    POST   /auth/verify-email/request  - Issue an email verification token
    POST   /auth/verify-email          - Confirm an email verification token
    POST   /auth/password              - Change password (signs out every session)
    DELETE /auth/account               - Delete the account and all owned data

The refresh token is only ever sent as an HttpOnly cookie.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.coordinator import AuthCoordinator, IssuedSession
from authledger.auth.credits import CreditLedger
from authledger.auth.dependencies import (
    get_coordinator,
    get_current_claims,
    get_current_user,
    get_device,
    get_ledger,
    get_token_codec,
    require_live_session,
)
from authledger.auth.oauth import IdentityProvider, get_identity_provider
from authledger.auth.one_time import OAuthStateStore
from authledger.auth.schemas import (
    ChangePasswordRequest,
    CreditBalanceResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from authledger.auth.sessions import DeviceInfo
from authledger.auth.tokens import TokenClaims, TokenCodec, parse_ttl
from authledger.config import Settings, get_settings
from authledger.database import get_db_session
from authledger.errors import AuthenticationFailure, AuthLedgerError, InvalidToken
from authledger.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"


def get_provider_factory() -> Callable[[str, Settings], IdentityProvider]:
    return get_identity_provider


def set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=refresh_token,
        max_age=parse_ttl(settings.REFRESH_TOKEN_TTL),
        path="/",
        httponly=True,
        secure=settings.REFRESH_COOKIE_SECURE,
        samesite="lax",
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=settings.REFRESH_COOKIE_SECURE,
        samesite="lax",
    )


def _token_response(issued: IssuedSession) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        expires_at=issued.expires_at,
        expires_in=issued.access_expires_in,
    )


def _safe_redirect_path(path: str | None) -> str:
    """Only same-site absolute paths are allowed as post-login targets."""
    if not path or not path.startswith("/") or path.startswith("//"):
        return "/"
    return path


def _frontend_url(path: str, **params: str) -> str:
    base = get_settings().APP_URL.rstrip("/")
    query = f"?{urlencode(params)}" if params else ""
    return f"{base}{path}{query}"


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    response: Response,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> TokenResponse:
    """Create a password account and start a session."""
    issued = await coordinator.register(body.email, body.password, body.name, device)
    await coordinator.session.commit()

    set_refresh_cookie(response, issued.refresh_token)
    return _token_response(issued)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    response: Response,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> TokenResponse:
    """Email/password login. Failures are a generic 401 (429 when locked out)."""
    issued = await coordinator.login_password(body.email, body.password, device)
    await coordinator.session.commit()

    set_refresh_cookie(response, issued.refresh_token)
    return _token_response(issued)


@router.get("/oauth/{provider}")
async def oauth_start(
    provider: str,
    redirect: str | None = Query(default=None, description="Post-login path"),
    codec: TokenCodec = Depends(get_token_codec),
    provider_factory: Callable = Depends(get_provider_factory),
    session: AsyncSession = Depends(get_db_session),
) -> RedirectResponse:
    """Redirect to the provider's consent page with a signed, single-use state."""
    identity_provider = provider_factory(provider, get_settings())
    states = OAuthStateStore(session, timedelta(seconds=codec.state_ttl))
    nonce = await states.issue(provider)
    await session.commit()

    state = codec.mint_state(provider, _safe_redirect_path(redirect), nonce=nonce)
    return RedirectResponse(
        identity_provider.authorization_url(state),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/oauth/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
    provider_factory: Callable = Depends(get_provider_factory),
) -> RedirectResponse:
    """Complete an external login and redirect to the client with the access token.

    Every failure redirects to the client with ``?error=oauth_<reason>``.
    """
    if error or not code or not state:
        reason = "denied" if error else "missing_code"
        return RedirectResponse(_frontend_url("/", error=f"oauth_{reason}"))

    try:
        oauth_state = coordinator.codec.verify_state(state, provider)
    except InvalidToken:
        logger.warning(f"Invalid OAuth state for {provider}")
        return RedirectResponse(_frontend_url("/", error="oauth_invalid_state"))

    states = OAuthStateStore(
        coordinator.session, timedelta(seconds=coordinator.codec.state_ttl)
    )
    consumed = await states.consume(oauth_state.nonce, provider)
    await coordinator.session.commit()
    if not consumed:
        logger.warning(f"Replayed or unknown OAuth state for {provider}")
        return RedirectResponse(_frontend_url("/", error="oauth_invalid_state"))

    try:
        identity_provider = provider_factory(provider, get_settings())
        issued = await coordinator.login_external(identity_provider, code, device)
        await coordinator.session.commit()
    except AuthLedgerError as e:
        await coordinator.session.rollback()
        logger.warning(f"OAuth login via {provider} failed: {e.message}")
        reason = "conflict" if e.status_code == status.HTTP_409_CONFLICT else "failed"
        return RedirectResponse(_frontend_url("/", error=f"oauth_{reason}"))

    redirect = RedirectResponse(
        _frontend_url(
            _safe_redirect_path(oauth_state.redirect_path),
            token=issued.access_token,
        ),
        status_code=status.HTTP_302_FOUND,
    )
    set_refresh_cookie(redirect, issued.refresh_token)
    return redirect


@router.delete("/oauth/{provider}", response_model=MessageResponse)
async def oauth_unlink(
    provider: str,
    claims: TokenClaims = Depends(require_live_session),
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """Remove a linked external identity."""
    await coordinator.unlink_provider(claims.user_id, provider, device)
    await coordinator.session.commit()
    return MessageResponse(message=f"{provider} account unlinked")


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
):
    """Exchange the refresh cookie for a new access token.

    Any failure answers 401 and clears the cookie.
    """
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    try:
        if not refresh_token:
            raise InvalidToken("No refresh token")
        issued = await coordinator.refresh(refresh_token, device)
        await coordinator.session.commit()
    except AuthenticationFailure as e:
        failure = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": e.message, "detail": None},
        )
        clear_refresh_cookie(failure)
        return failure

    response = JSONResponse(
        content=_token_response(issued).model_dump(mode="json", by_alias=True)
    )
    set_refresh_cookie(response, issued.refresh_token)
    return response


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    claims: TokenClaims = Depends(require_live_session),
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """End the current session and clear the refresh cookie."""
    await coordinator.logout(claims.session_id, claims.user_id, device)
    await coordinator.session.commit()

    clear_refresh_cookie(response)
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=MeResponse)
async def me(
    user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
) -> MeResponse:
    """Return the current user's profile and credit balance."""
    await ledger.check_and_reset(user.id)
    balance = await ledger.balance(user.id)
    await session.commit()

    return MeResponse(
        user=UserResponse.model_validate(user),
        credits=CreditBalanceResponse(
            daily=balance.daily,
            purchased=balance.purchased,
            total=balance.total,
        ),
    )


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """Issue a reset token. The answer never reveals whether the account exists."""
    token = await coordinator.request_password_reset(body.email, device)
    await coordinator.session.commit()

    settings = get_settings()
    return MessageResponse(
        message="If an account exists with this email, a reset link has been sent.",
        token=token if token and not settings.is_production else None,
    )


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """Set a new password; every existing session is signed out."""
    await coordinator.complete_password_reset(body.token, body.password, device)
    await coordinator.session.commit()
    return MessageResponse(message="Password has been reset")


@router.post("/verify-email/request", response_model=MessageResponse)
async def request_email_verification(
    claims: TokenClaims = Depends(get_current_claims),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> MessageResponse:
    token = await coordinator.request_email_verification(claims.user_id)
    await coordinator.session.commit()

    settings = get_settings()
    return MessageResponse(
        message="Verification email sent",
        token=token if not settings.is_production else None,
    )


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    body: VerifyEmailRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    await coordinator.complete_email_verification(body.token, device)
    await coordinator.session.commit()
    return MessageResponse(message="Email verified")


@router.post("/password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    claims: TokenClaims = Depends(require_live_session),
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """Change password. Every session, including this one, is signed out."""
    await coordinator.change_password(
        claims.user_id, body.current_password, body.new_password, device
    )
    await coordinator.session.commit()

    clear_refresh_cookie(response)
    return MessageResponse(message="Password changed; please sign in again")


@router.delete("/account", response_model=MessageResponse)
async def delete_account(
    response: Response,
    claims: TokenClaims = Depends(require_live_session),
    coordinator: AuthCoordinator = Depends(get_coordinator),
    device: DeviceInfo = Depends(get_device),
) -> MessageResponse:
    """Hard-delete the account. Audit history is kept without the user link."""
    await coordinator.delete_account(claims.user_id, device)
    await coordinator.session.commit()

    clear_refresh_cookie(response)
    return MessageResponse(message="Account deleted")
