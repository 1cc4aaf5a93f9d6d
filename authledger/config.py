"""Application configuration with Pydantic Settings.

Settings are loaded from environment variables and an optional .env file.
A missing or malformed signing secret or token lifetime fails validation, so
the service refuses to start rather than running with a degraded setup.

Examples:
    >>> from authledger.config import get_settings
    >>> get_settings().ACCESS_TOKEN_TTL
    '15m'

Tests:
    - tests/unit/test_config.py
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from authledger.auth.tokens import parse_ttl
from authledger.errors import InvalidConfig

MIN_PRODUCTION_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings.

    Attributes:
        DATABASE_URL: Database connection string (SQLite or PostgreSQL)
        JWT_SECRET: HS256 signing key shared by access and refresh tokens
        ACCESS_TOKEN_TTL: Access-token lifetime, e.g. ``15m``
        REFRESH_TOKEN_TTL: Refresh-token lifetime, e.g. ``7d``
        SESSION_TTL: Server-side session lifetime, extended on every refresh
        DAILY_CREDIT_ALLOTMENT: Daily pool size restored at UTC midnight
        MAX_FAILED_LOGINS: Failed logins tolerated inside the lockout window
        LOCKOUT_WINDOW_MINUTES: Sliding window for counting failed logins
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./authledger.db",
        description="Database connection string",
    )

    # Tokens
    JWT_SECRET: str = Field(
        description="Symmetric signing key for access and refresh tokens",
    )
    ACCESS_TOKEN_TTL: str = Field(default="15m", description="Access-token lifetime")
    REFRESH_TOKEN_TTL: str = Field(default="7d", description="Refresh-token lifetime")
    SESSION_TTL: str = Field(default="7d", description="Session lifetime")

    # Credits
    DAILY_CREDIT_ALLOTMENT: int = Field(
        default=5,
        ge=1,
        description="Credits restored to the daily pool each UTC day",
    )

    # Lockout
    MAX_FAILED_LOGINS: int = Field(default=5, ge=1)
    LOCKOUT_WINDOW_MINUTES: int = Field(default=15, ge=1)

    # Frontend / redirects
    APP_URL: str = Field(
        default="http://localhost:5173",
        description="Public base URL of the web client",
    )
    API_URL: str = Field(
        default="http://localhost:8000",
        description="Public base URL of this service, used for OAuth callbacks",
    )
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins",
    )

    # External identity providers
    OAUTH_GITHUB_CLIENT_ID: str | None = None
    OAUTH_GITHUB_CLIENT_SECRET: str | None = None
    OAUTH_GOOGLE_CLIENT_ID: str | None = None
    OAUTH_GOOGLE_CLIENT_SECRET: str | None = None

    # Payments
    PAYMENT_WEBHOOK_SECRET: str | None = Field(
        default=None,
        description="HMAC secret for payment webhooks; webhooks are rejected while unset",
    )
    PAYMENT_CHECKOUT_URL: str = Field(
        default="https://checkout.example.com",
        description="Base URL of the hosted checkout page",
    )

    # Application
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT)
    DEBUG: bool = Field(default=False)
    REFRESH_COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark the refresh cookie Secure",
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        valid_prefixes = ("sqlite", "postgresql", "postgres")
        if not any(v.startswith(prefix) for prefix in valid_prefixes):
            raise ValueError(f"DATABASE_URL must start with one of: {valid_prefixes}")
        return v

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("JWT_SECRET must not be empty")
        return v

    @field_validator("ACCESS_TOKEN_TTL", "REFRESH_TOKEN_TTL", "SESSION_TTL")
    @classmethod
    def validate_ttl(cls, v: str) -> str:
        try:
            parse_ttl(v)
        except InvalidConfig as e:
            raise ValueError(str(e)) from e
        return v

    @model_validator(mode="after")
    def validate_production_secret(self) -> "Settings":
        """Require a long signing secret outside development."""
        if self.is_production and len(self.JWT_SECRET) < MIN_PRODUCTION_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_PRODUCTION_SECRET_LENGTH} "
                "characters in production"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def session_ttl_seconds(self) -> int:
        return parse_ttl(self.SESSION_TTL)

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or [self.APP_URL]

    def oauth_credentials(self, provider: str) -> tuple[str, str] | None:
        """Get (client_id, client_secret) for a provider, or None if unconfigured."""
        pairs = {
            "github": (self.OAUTH_GITHUB_CLIENT_ID, self.OAUTH_GITHUB_CLIENT_SECRET),
            "google": (self.OAUTH_GOOGLE_CLIENT_ID, self.OAUTH_GOOGLE_CLIENT_SECRET),
        }
        client_id, client_secret = pairs.get(provider, (None, None))
        if not client_id or not client_secret:
            return None
        return client_id, client_secret


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: The application settings.
    """
    return Settings()
