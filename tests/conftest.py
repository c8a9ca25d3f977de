import os

os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

# Import Base + all models so metadata is complete
from app.models.base import Base
from app.models.outbox import OutboxMessage, OutboxStatus

from app.core.db import get_db, make_session_factory
from app.core.errors import PublishError
from app.main import app


def _test_db_url(tmp_path) -> str:
    # Postgres when DATABASE_URL_TEST is set, a throwaway SQLite file otherwise
    return os.getenv("DATABASE_URL_TEST") or f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}"


def naive(dt: datetime | None) -> datetime | None:
    """SQLite hands timestamps back without tzinfo; compare in naive UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(_test_db_url(tmp_path), pool_pre_ping=True)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return make_session_factory(async_engine)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def add_message(session_factory):
    """
    Insert committed outbox rows with explicit created_at so ordering
    tests don't depend on clock resolution.
    """
    base = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    async def _add(
        routing_key: str = "messages.created",
        *,
        exchange_name: str = "messages.events",
        payload: dict | None = None,
        offset: float = 0,
        status: str = OutboxStatus.READY,
        **extra,
    ) -> uuid.UUID:
        row = OutboxMessage(
            id=uuid.uuid4(),
            exchange_name=exchange_name,
            routing_key=routing_key,
            payload=payload if payload is not None else {"n": offset},
            status=status,
            created_at=base + timedelta(seconds=offset),
            **extra,
        )
        async with session_factory() as db:
            db.add(row)
            await db.commit()
        return row.id

    return _add


@pytest.fixture
def load_message(session_factory):
    async def _load(message_id: uuid.UUID) -> OutboxMessage | None:
        async with session_factory() as db:
            return await db.get(OutboxMessage, message_id)
    return _load


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class RecordingPublisher:
    """
    In-memory BrokerPublisher. `fail_keys` makes publishes to those routing
    keys fail (retryable unless listed in `permanent_keys`); `before_publish`
    lets a test interleave work while a publish is in flight.
    """

    def __init__(self) -> None:
        self.attempts: list[tuple[str, str, dict, str | None]] = []
        self.published: list[tuple[str, str, dict, str | None]] = []
        self.fail_keys: set[str] = set()
        self.permanent_keys: set[str] = set()
        self.raise_unexpected = False
        self.before_publish = None
        self.published_event = asyncio.Event()

    async def publish(self, exchange_name, routing_key, payload, *, message_id=None) -> None:
        call = (exchange_name, routing_key, payload, message_id)
        self.attempts.append(call)
        if self.before_publish is not None:
            await self.before_publish(call)
        if self.raise_unexpected:
            raise RuntimeError("connection reset by peer")
        if routing_key in self.permanent_keys:
            raise PublishError("payload rejected", retryable=False, error_code="REJECTED")
        if routing_key in self.fail_keys:
            raise PublishError("broker unreachable", error_code="BROKER_UNAVAILABLE")
        self.published.append(call)
        self.published_event.set()

    def published_ids(self) -> list[str]:
        return [c[3] for c in self.published]


@pytest.fixture
def publisher():
    return RecordingPublisher()


class FakeListener:
    def __init__(self) -> None:
        self.callbacks = []

    async def ensure_connected(self) -> bool:
        return True

    def subscribe(self, callback) -> None:
        self.callbacks.append(callback)

    def fire(self, notification=None) -> None:
        for callback in self.callbacks:
            callback(notification)


@pytest.fixture
def listener():
    return FakeListener()


@pytest.fixture
async def client(db_session: AsyncSession):
    """
    HTTP client that uses the test DB session via dependency override.
    """
    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
