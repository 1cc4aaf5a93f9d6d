"""
Pytest configuration and fixtures for AuthLedger tests.

Every test gets its own file-backed SQLite database (WAL, foreign keys on),
so concurrent sessions behave like separate connections in production.
"""
import os
from typing import AsyncGenerator

# Settings are cached on first use; configure the environment before importing the app
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only-000000"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["OAUTH_GITHUB_CLIENT_ID"] = "github-client"
os.environ["OAUTH_GITHUB_CLIENT_SECRET"] = "github-secret"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authledger.auth.coordinator import AuthCoordinator
from authledger.auth.tokens import TokenCodec
from authledger.auth.users import UserStore
from authledger.config import get_settings
from authledger.database import build_engine, build_session_factory, close_db, get_db_session
from authledger.main import app
from authledger.models import Base, User
from tests.utils.helpers import FAST_HASHER, STRONG_PASSWORD


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'authledger-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A test database session; tests commit explicitly."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ============================================
# Domain Fixtures
# ============================================

@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def codec(settings) -> TokenCodec:
    return TokenCodec(
        settings.JWT_SECRET,
        access_ttl=settings.ACCESS_TOKEN_TTL,
        refresh_ttl=settings.REFRESH_TOKEN_TTL,
    )


@pytest.fixture
def coordinator(db_session, settings, codec) -> AuthCoordinator:
    return AuthCoordinator(db_session, settings, codec=codec, hasher=FAST_HASHER)


@pytest.fixture
def make_user(db_session):
    """Factory creating a committed user with an optional password."""

    async def _make_user(
        email: str = "user@example.com",
        password: str | None = STRONG_PASSWORD,
        name: str | None = "Test User",
        daily_allotment: int = 5,
    ) -> User:
        store = UserStore(db_session, daily_allotment=daily_allotment)
        user = await store.create(
            email=email,
            password_hash=FAST_HASHER.hash(password) if password else None,
            name=name,
        )
        await db_session.commit()
        return user

    return _make_user


# ============================================
# HTTP Fixtures
# ============================================

@pytest.fixture
async def test_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app with the test database."""

    async def override_get_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_get_db_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
    await close_db()


# ============================================
# Pytest Configuration
# ============================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "fast: Fast unit tests (no external services)"
    )
    config.addinivalue_line(
        "markers", "integration: Tests that drive the HTTP API"
    )
