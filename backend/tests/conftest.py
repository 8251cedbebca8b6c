"""
Pytest configuration and shared test fixtures.

Every test gets its own SQLite database file (through aiosqlite) with the
full schema, so conditional updates, check constraints and concurrent claims
run against a real database engine. Settings are pinned through environment
variables before any application module is imported.
"""

import os

os.environ["APP_ENVIRONMENT"] = "test"
os.environ["APP_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_SECRET_KEY"] = "test-secret-key-for-the-order-lifecycle-suite"
os.environ["APP_RATE_LIMIT_ENABLED"] = "false"
os.environ["APP_NOTIFICATION_BACKEND"] = "log"
os.environ["APP_LOG_LEVEL"] = "WARNING"

import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.api.deps import get_dispatcher
from src.core.security import PrincipalRole, create_access_token
from src.database.connection import create_engine, get_db
from src.database.models import Base, Order
from src.main import app
from src.services.orders.events import OrderEvent
from src.services.orders.repository import OrderRepository


class RecordingDispatcher:
    """Notification dispatcher that keeps every event it receives."""

    def __init__(self):
        self.events: list[OrderEvent] = []

    async def dispatch(self, event: OrderEvent) -> None:
        self.events.append(event)


class FailingDispatcher:
    """Notification dispatcher whose broker is always down."""

    def __init__(self):
        self.calls = 0

    async def dispatch(self, event: OrderEvent) -> None:
        self.calls += 1
        raise ConnectionError("broker unavailable")


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    return tmp_path / "orders.db"


@pytest.fixture
async def engine(database_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a file-backed SQLite engine with the full schema.

    A file rather than ``:memory:`` lets several sessions (and so several
    connections) see the same data, which the concurrency tests rely on.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{database_path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def verify_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Independent session for reading back what other sessions committed."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Domain Fixtures
# ============================================================================


@pytest.fixture
def customer_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def driver_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_driver_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def location() -> dict[str, float]:
    return {"lat": 52.5200, "lng": 13.4050}


@pytest.fixture
def pickup_location() -> dict[str, Any]:
    return {"address": "Alexanderplatz 1, Berlin", "lat": 52.5219, "lng": 13.4132}


@pytest.fixture
def dropoff_location() -> dict[str, Any]:
    return {"address": "Kurfuerstendamm 21, Berlin"}


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
    customer_id: uuid.UUID,
    pickup_location: dict[str, Any],
    dropoff_location: dict[str, Any],
) -> Callable[..., Awaitable[Order]]:
    """
    Factory inserting a committed ``available`` order.

    Example:
        order = await make_order(price=Decimal("100.00"))
    """

    async def _make_order(
        price: Decimal = Decimal("100.00"),
        customer: uuid.UUID | None = None,
    ) -> Order:
        async with session_factory() as session:
            order = await OrderRepository(session).create_order(
                customer_id=customer or customer_id,
                pickup_location=pickup_location,
                dropoff_location=dropoff_location,
                price=price,
            )
            await session.commit()
            return order

    return _make_order


# ============================================================================
# Identity Fixtures
# ============================================================================


def bearer(principal_id: uuid.UUID, role: PrincipalRole) -> dict[str, str]:
    """Authorization header for a principal."""
    token = create_access_token(principal_id, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> Callable[[uuid.UUID, PrincipalRole], dict[str, str]]:
    return bearer


@pytest.fixture
def failing_dispatcher() -> FailingDispatcher:
    return FailingDispatcher()


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: RecordingDispatcher,
) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client for the application, bound to the per-test database.

    The event dispatcher is the recording one, so API tests can assert on the
    events emitted by each request.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
