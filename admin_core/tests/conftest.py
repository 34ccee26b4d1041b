"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from admin_core.app.main import create_app
from admin_core.app.container import build_services
from admin_core.app.core.clock import FrozenClock
from admin_core.app.core.config import Settings
from admin_core.app.core.jwt import create_access_token
from admin_core.app.core.token_revocation import RedisSessionRevoker
from admin_core.app.db.session import Base
from admin_core.app.models.enums import Role
from admin_core.app.models.user import User
from admin_core.app.services.notification_service import SecurityNotifier

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

START = datetime(2026, 3, 10, 12, 0, 0)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class RecordingNotifier(SecurityNotifier):
    def __init__(self):
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(
        admin_rate_limit_requests=100,
        admin_rate_limit_window_seconds=60,
        admin_ip_allowlist=[],
        aggregation_enabled=False,
    )


@pytest.fixture
def redis_client():
    return MockRedis()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def revoker(redis_client):
    return RedisSessionRevoker(redis_client, ttl_seconds=1800)


@pytest.fixture
async def services(clock, settings, redis_client, notifier, revoker):
    services = build_services(
        session_factory=TestingSessionLocal,
        engine=engine,
        redis=redis_client,
        settings=settings,
        clock=clock,
        notifier=notifier,
        sessions=revoker,
    )
    yield services
    await services.events.stop()


@pytest.fixture
def app(services):
    return create_app(services)


@pytest.fixture
async def client(app):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def session_factory():
    return TestingSessionLocal


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def make_user(db_session, clock):
    """Factory that inserts a user and returns it."""
    async def _make_user(username: str, role: Role = Role.BUYER, **fields) -> User:
        user = User(
            email=f"{username}@test.com",
            username=username,
            role=role,
            created_at=clock(),
            updated_at=clock(),
            **fields,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


def token_for(user: User) -> str:
    return create_access_token(data={"sub": user.username, "user_id": user.id, "role": user.role.value})


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def auth():
    """Bearer headers for a user, as the upstream issuer would produce them."""
    return auth_headers
