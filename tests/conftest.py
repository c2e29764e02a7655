"""Shared test fixtures for the healthsync test suite."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from healthsync.core.database import Base
# Import all models so their metadata is registered on Base
import healthsync.models  # noqa: F401
from healthsync.services.local_config import LocalConfig
from healthsync.services.local_store import LocalStore
from healthsync.services.remote import RemoteSyncService


class FakeClock:
    """Controllable clock; call it to get the current time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InProcessRemote:
    """Remote transport that calls the server service directly on a test session."""

    def __init__(self, service: RemoteSyncService, session: AsyncSession, user_id: str):
        self.service = service
        self.session = session
        self.user_id = user_id
        self.pull_calls = 0
        self.push_batches = []

    async def pull(self, request):
        self.pull_calls += 1
        return await self.service.pull(self.session, self.user_id, request.cursor, request.limit)

    async def push(self, request):
        self.push_batches.append(list(request.changes))
        return await self.service.push(self.session, self.user_id, request.changes)


def weight_payload(weight: float = 180.0, **extra) -> dict:
    payload = {"datetime": "2024-01-01T08:00:00Z", "weight": weight, "notes": None, "user_id": "user-1"}
    payload.update(extra)
    return payload


@pytest.fixture
def server_clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def device_clock(server_clock):
    """Devices share the server clock unless a test needs skew."""
    return server_clock


@pytest_asyncio.fixture
async def async_session():
    """
    Provide an in-memory SQLite async session for the server database.

    Creates all tables before the test, drops them after. Each test gets
    a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


async def _make_local_store(clock) -> LocalStore:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    store = LocalStore(engine, clock=clock)
    await store.init()
    return store


@pytest_asyncio.fixture
async def local_store(device_clock):
    """A fresh in-memory device store driven by ``device_clock``."""
    store = await _make_local_store(device_clock)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def other_local_store(device_clock):
    """A second device sharing the same clock."""
    store = await _make_local_store(device_clock)
    yield store
    await store.close()


@pytest.fixture
def remote_service(server_clock):
    return RemoteSyncService(clock=server_clock)


@pytest.fixture
def local_config(tmp_path):
    return LocalConfig(str(tmp_path / "config"), default_server_url="http://sync.test")
