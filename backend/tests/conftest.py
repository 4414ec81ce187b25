"""
Pytest configuration and fixtures for audit trail tests.

Provides common fixtures for:
- Test database setup
- Session factory used by best-effort recording
- Test client with authentication
- Admin and non-admin tokens
"""

import os
import uuid
from typing import AsyncGenerator

# Test settings: no table auto-creation, detailed health errors
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from empanelment.audit.alerts import alert_rules
from empanelment.audit.integrity import verification_state
from empanelment.core.security import create_access_token
from empanelment.db.session import Base, get_db, get_session_factory
from empanelment.main import app

# =============================================================================
# Database Fixtures
# =============================================================================


# Use SQLite for tests (faster, no external dependencies)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """Override the get_db dependency for tests."""

    async def _override():
        yield db_session

    return _override


@pytest.fixture(autouse=True)
def reset_process_state():
    """Verification state and alert rules are process-wide; isolate each test."""
    verification_state.reset()
    alert_rules.reset()
    yield
    verification_state.reset()
    alert_rules.reset()


# =============================================================================
# Test Client Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def client(override_get_db, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database overrides.

    Runs the app in the test's event loop; background tasks finish before
    each response is returned.
    """
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Authentication Fixtures
# =============================================================================


@pytest.fixture
def admin_user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def admin_token(admin_user_id) -> str:
    """Access token for an ADMIN officer."""
    return create_access_token(
        subject=admin_user_id,
        additional_claims={"role": "ADMIN", "sid": "session-admin-1"},
    )


@pytest.fixture
def admin_headers(admin_token) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def applicant_headers() -> dict:
    """Auth headers for a non-admin portal user."""
    token = create_access_token(
        subject=str(uuid.uuid4()),
        additional_claims={"role": "OEM"},
    )
    return {"Authorization": f"Bearer {token}"}
