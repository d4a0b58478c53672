"""Pytest configuration and fixtures."""

import os
from datetime import time

# Must be set before orderflow modules build their settings and engine
os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RESET_RUNNER", "disabled")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from orderflow.database import build_session_maker, get_db, init_db
from orderflow.main import app
from orderflow.models import Order, Staff, StaffRole
from orderflow.services.assignment import AssignmentService, get_assignment_service
from orderflow.services.notifications.fanout import NotificationFanout
from orderflow.services.notifications.mock import MockNotificationTransport
from orderflow.services.notifications.websocket import ConnectionManager
from orderflow.services.orders import OrderService, get_order_service
from orderflow.services.scheduler import DailyWindow, ResetScheduler, get_reset_scheduler

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed database; every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest_asyncio.fixture
async def db_session(session_maker):
    """Create a test database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def connections() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
def transport(connections) -> MockNotificationTransport:
    return MockNotificationTransport(connections=connections)


@pytest_asyncio.fixture
async def fanout(transport):
    fanout = NotificationFanout(transport)
    yield fanout
    await fanout.drain()


@pytest.fixture
def service(fanout) -> AssignmentService:
    return AssignmentService(fanout, assignable_roles=("waiter",), default_capacity=20)


@pytest.fixture
def order_service(service) -> OrderService:
    return OrderService(service)


@pytest.fixture
def make_staff(service, db_session):
    """Factory: register a staff member (default: waiter in h1/b1 under m1)."""
    async def _make(
        name: str = "Waiter",
        hotel_id: str = "h1",
        branch_id: str = "b1",
        capacity: int = 20,
        role: StaffRole = StaffRole.WAITER,
        manager_id: str = "m1",
        is_available: bool = True,
    ) -> Staff:
        return await service.directory.create_staff(
            db_session,
            name=name,
            hotel_id=hotel_id,
            branch_id=branch_id,
            role=role,
            manager_id=manager_id,
            max_orders_capacity=capacity,
            is_available=is_available,
        )
    return _make


@pytest.fixture
def make_order(order_service, db_session):
    """Factory: place an unassigned pending order."""
    async def _make(hotel_id: str = "h1", branch_id: str = "b1", table_number: str = "T1") -> Order:
        placement = await order_service.create_order(
            db_session,
            hotel_id=hotel_id,
            branch_id=branch_id,
            table_number=table_number,
            items=[{"name": "Dosa", "quantity": 1, "unit_price": 4.5}],
            total_amount=4.5,
            auto_assign=False,
        )
        return placement.order
    return _make


@pytest.fixture
def refetch(db_session):
    """Fetch a fresh copy of a row (rollbacks expire loaded instances)."""
    async def _refetch(model, pk):
        return await db_session.get(model, pk, populate_existing=True)
    return _refetch


@pytest.fixture
def scheduler(session_maker, service) -> ResetScheduler:
    window = DailyWindow(start=time(5, 0), minutes=60, tz_name="Asia/Kolkata")
    return ResetScheduler(session_maker, window, reset=service.reset_round_robin, seed=7)


@pytest_asyncio.fixture
async def client(session_maker, service, order_service, scheduler):
    """Create a test client with database and service overrides."""
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_assignment_service] = lambda: service
    app.dependency_overrides[get_order_service] = lambda: order_service
    app.dependency_overrides[get_reset_scheduler] = lambda: scheduler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
