"""
Pytest fixtures: per-test database, hold store, payment provider stubs and client.

Each test gets a fresh SQLite file under tmp_path (or TEST_DATABASE_URL)
with NullPool, so concurrent tasks really use separate connections and
the database's own locking decides races.
"""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_paystack")
os.environ.setdefault("PAYSTACK_BASE_URL", "https://paystack.test")
os.environ.setdefault("OPAY_SECRET_KEY", "opay_test_secret")
os.environ.setdefault("OPAY_PUBLIC_KEY", "opay_test_public")
os.environ.setdefault("OPAY_MERCHANT_ID", "256000000000001")
os.environ.setdefault("OPAY_BASE_URL", "https://opay.test")
os.environ.setdefault("TICKET_SIGNING_SECRET", "ticket-test-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from eventpass.api.dependencies import get_hold_manager, get_renderer, get_request_notifier  # noqa: E402
from eventpass.db.base import Base  # noqa: E402
from eventpass.db.session import get_db  # noqa: E402
from eventpass.domain.state_machine import EventStatus  # noqa: E402
from eventpass.infrastructure.payment_providers import (  # noqa: E402
    OpayProvider,
    PaystackProvider,
    register_provider,
    reset_providers,
)
from eventpass.infrastructure.ticket_renderer import SignedTicketRenderer  # noqa: E402
from eventpass.main import app  # noqa: E402
from eventpass.models.event import Event  # noqa: E402
from eventpass.services.hold_service import HoldManager  # noqa: E402

from helpers import (  # noqa: E402
    OPAY_MERCHANT,
    OPAY_PUBLIC,
    OPAY_SECRET,
    PAYSTACK_SECRET,
    TICKET_SECRET,
    InMemoryHoldStore,
    PaystackStub,
    RecordingNotifier,
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'eventpass.db'}"
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    test_engine = create_async_engine(url, poolclass=NullPool, connect_args=connect_args)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def hold_store() -> InMemoryHoldStore:
    return InMemoryHoldStore()


@pytest.fixture
def holds(hold_store) -> HoldManager:
    return HoldManager(hold_store, timeout=0.5)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def renderer() -> SignedTicketRenderer:
    return SignedTicketRenderer(TICKET_SECRET)


@pytest.fixture
def paystack_api() -> PaystackStub:
    return PaystackStub()


@pytest.fixture
def paystack(paystack_api):
    provider = PaystackProvider(
        PAYSTACK_SECRET,
        "https://paystack.test",
        timeout=1.0,
        transport=httpx.MockTransport(paystack_api.handler),
    )
    register_provider(provider)
    yield provider
    reset_providers()


@pytest.fixture
def opay():
    provider = OpayProvider(
        OPAY_SECRET,
        OPAY_PUBLIC,
        OPAY_MERCHANT,
        "https://opay.test",
        timeout=1.0,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    register_provider(provider)
    yield provider
    reset_providers()


@pytest_asyncio.fixture
async def client(session_factory, holds, renderer, notifier, paystack, opay) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the store, hold manager and collaborators swapped for test doubles."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_hold_manager] = lambda: holds
    app.dependency_overrides[get_renderer] = lambda: renderer
    app.dependency_overrides[get_request_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_event(session_factory):
    async def _make_event(
        capacity: int = 10,
        available: Optional[int] = None,
        price: Decimal = Decimal("5000.00"),
        starts_in: timedelta = timedelta(days=30),
        lasts: timedelta = timedelta(hours=4),
        status: EventStatus = EventStatus.ACTIVE,
        title: str = "Afrobeats Live",
    ) -> Event:
        start = datetime.now(timezone.utc) + starts_in
        async with session_factory() as session:
            event = Event(
                title=title,
                capacity=capacity,
                available=capacity if available is None else available,
                price=price,
                start_date=start,
                end_date=start + lasts,
                status=status,
            )
            session.add(event)
            await session.commit()
            await session.refresh(event)
            return event

    return _make_event


@pytest_asyncio.fixture
async def test_event(make_event) -> Event:
    """An upcoming event with 10 tickets at 5000.00."""
    return await make_event(capacity=10)


@pytest_asyncio.fixture
async def sold_out_event(make_event) -> Event:
    return await make_event(capacity=50, available=0, title="Sold Out Show")


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user-a"}


@pytest.fixture
def operator_headers():
    return {"X-User-Id": "ops", "X-User-Role": "ADMIN"}
