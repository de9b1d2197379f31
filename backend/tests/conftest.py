"""Shared test configuration and fixtures.

Every test gets a fresh database for full isolation:
- a file-backed SQLite database under ``tmp_path`` (aiosqlite), or
- the database at ``TEST_DATABASE_URL`` (tables dropped and re-created).
Tables come from the model metadata and the plan catalogue is seeded.
"""

import os

# Provider configuration for the whole suite; must be set before settings load.
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-the-test-suite-only")
os.environ.setdefault("PADDLE_API_KEY", "pdl_test_apikey")
os.environ.setdefault("PADDLE_WEBHOOK_SECRET", "pdl_ntfset_test_secret")
os.environ.setdefault("PADDLE_PRICE_ID_MONTHLY", "pri_monthly_test")
os.environ.setdefault("PADDLE_PRICE_ID_YEARLY", "pri_yearly_test")
os.environ.setdefault("FASTSPRING_USERNAME", "fs_user")
os.environ.setdefault("FASTSPRING_PASSWORD", "fs_pass")
os.environ.setdefault("FASTSPRING_HMAC_SECRET", "fs_hmac_test_secret")
os.environ.setdefault("FASTSPRING_POPUP_URL", "https://meisterdesk.test.onfastspring.com/popup-meisterdesk")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from meisterdesk.auth.jwt import create_account_token  # noqa: E402
from meisterdesk.billing.dependencies import get_entitlement_service  # noqa: E402
from meisterdesk.database import Base, get_db, get_session_factory, utcnow  # noqa: E402
from meisterdesk.entitlements.service import EntitlementService  # noqa: E402
from meisterdesk.main import app  # noqa: E402
from meisterdesk.models.account import Account  # noqa: E402
from meisterdesk.models.subscription import Subscription  # noqa: E402
from meisterdesk.services.plan_service import sync_plan_catalogue  # noqa: E402
from meisterdesk.services.subscription_service import get_plan_by_name  # noqa: E402

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Engine bound to a fresh database with all tables created."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"
    engine = create_async_engine(url, echo=False)
    async with engine.begin() as conn:
        if TEST_DATABASE_URL:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for the test database, with the plan catalogue seeded."""
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await sync_plan_catalogue(session)
        await session.commit()
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session on the test database. Commit before calling the API."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def entitlement_service(session_factory) -> AsyncGenerator[EntitlementService, None]:
    service = EntitlementService(session_factory, ttl_seconds=5.0)
    yield service
    await service.aclose()


@pytest_asyncio.fixture
async def client(session_factory, entitlement_service) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_entitlement_service] = lambda: entitlement_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: accounts and subscriptions
# ---------------------------------------------------------------------------


@pytest.fixture
def make_account(session_factory):
    """Factory: insert and commit an account."""

    async def _make(email: str | None = None, is_active: bool = True) -> Account:
        unique = uuid.uuid4().hex[:8]
        async with session_factory() as session:
            account = Account(
                email=email or f"meister-{unique}@test.de",
                name="Test Meister",
                is_active=is_active,
            )
            session.add(account)
            await session.commit()
            return account

    return _make


@pytest.fixture
def make_subscription(session_factory):
    """Factory: insert and commit a subscription row for an account."""

    async def _make(
        account_id: uuid.UUID,
        plan: str = "pro",
        status: str = "active",
        provider: str | None = "paddle",
        provider_subscription_id: str | None = None,
        current_period_end: datetime | None = None,
        **values,
    ) -> Subscription:
        now = utcnow()
        async with session_factory() as session:
            plan_row = await get_plan_by_name(session, plan)
            subscription = Subscription(
                account_id=account_id,
                plan_id=plan_row.id,
                status=status,
                provider=provider,
                provider_subscription_id=(
                    provider_subscription_id
                    if provider_subscription_id is not None or provider is None
                    else f"sub_{uuid.uuid4().hex[:12]}"
                ),
                current_period_start=now - timedelta(days=1),
                current_period_end=current_period_end or now + timedelta(days=29),
                **values,
            )
            session.add(subscription)
            await session.commit()
            return subscription

    return _make


@pytest_asyncio.fixture
async def test_account(make_account) -> Account:
    return await make_account()


@pytest.fixture
def auth_headers(test_account: Account) -> dict[str, str]:
    """Return Authorization headers for the test account."""
    return {"Authorization": f"Bearer {create_account_token(str(test_account.id))}"}


def headers_for(account: Account) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_account_token(str(account.id))}"}


@pytest.fixture
def account_headers():
    """Factory: Authorization headers for any account."""
    return headers_for
