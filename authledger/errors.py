"""Error taxonomy for authentication and the credit ledger.

Every failure a caller can observe is an ``AuthLedgerError`` subclass carrying
the HTTP status it maps to and a public message. Store-level failures are
translated to ``PersistenceError`` before they leave a component, so SQL
detail never crosses the coordinator boundary.

Examples:
    >>> raise EmailTaken()
    Traceback (most recent call last):
    ...
    authledger.errors.EmailTaken: An account with this email already exists
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthLedgerError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


# --- Validation (400) ---


class ValidationFailure(AuthLedgerError):
    """Malformed input; always recoverable client-side."""

    status_code = 400
    message = "Invalid request"


class WeakPassword(ValidationFailure):
    """Password rejected by the strength policy."""

    message = "Password does not meet requirements"

    def __init__(self, errors: list[str]) -> None:
        super().__init__(detail=errors)
        self.errors = errors


class UnknownProduct(ValidationFailure):
    message = "Unknown product"


# --- Authentication (401) ---


class AuthenticationFailure(AuthLedgerError):
    """Bad credentials or an expired/forged token."""

    status_code = 401
    message = "Authentication failed"


class InvalidCredentials(AuthenticationFailure):
    message = "Invalid email or password"


class InvalidToken(AuthenticationFailure):
    message = "Invalid token"


class InvalidSignature(InvalidToken):
    message = "Invalid token signature"


class TokenExpired(InvalidToken):
    message = "Token has expired"


class WrongTokenType(InvalidToken):
    message = "Wrong token type"


class SessionNotFound(AuthenticationFailure):
    """Session was invalidated or has expired."""

    message = "Session not found or expired"


class IdentityProviderError(AuthenticationFailure):
    message = "External identity provider rejected the request"


class InvalidWebhookSignature(AuthenticationFailure):
    message = "Invalid webhook signature"


class TooManyAttempts(AuthenticationFailure):
    """Login locked out after repeated failures."""

    status_code = 429
    message = "Too many failed login attempts. Please try again later."


# --- Authorization (403) ---


class AuthorizationFailure(AuthLedgerError):
    status_code = 403
    message = "Forbidden"


# --- Not found (404) ---


class UserNotFound(AuthLedgerError):
    status_code = 404
    message = "User not found"


# --- Resource exhausted (402) ---


class InsufficientCredits(AuthLedgerError):
    """Soft failure: the user should be prompted to top up."""

    status_code = 402
    message = "Insufficient credits"

    def __init__(self, required: int, available: int | None = None) -> None:
        super().__init__(detail={"required": required, "available": available})
        self.required = required
        self.available = available


# --- Conflict (409) ---


class Conflict(AuthLedgerError):
    status_code = 409
    message = "Conflict"


class EmailTaken(Conflict):
    message = "An account with this email already exists"


class OAuthAccountConflict(Conflict):
    message = "External account is already linked to another user"


# --- Persistence (503) ---


class PersistenceError(AuthLedgerError):
    """Store unavailable or a write failed; retryable by the caller."""

    status_code = 503
    message = "Storage temporarily unavailable"


# --- Fatal / config (500) ---


class ConfigurationError(AuthLedgerError):
    status_code = 500
    message = "Service misconfigured"


class InvalidConfig(ConfigurationError):
    message = "Invalid configuration value"


def translate_db_errors(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Decorate an async store method so SQLAlchemy failures surface as PersistenceError."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.exception(f"Store operation {func.__qualname__} failed")
            raise PersistenceError() from e

    return wrapper
