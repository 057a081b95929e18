"""Pytest configuration and fixtures."""

import random
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tableside.api.deps import get_payment_provider, get_publisher
from tableside.core.security import create_access_token
from tableside.db.base import Base
from tableside.db.session import enable_sqlite_foreign_keys, get_db
from tableside.main import app
# Import all models to ensure they're registered with Base.metadata
from tableside.models import *
from tableside.services.alias_service import AliasGenerator
from tableside.services.notification_service import NotificationPublisher
from tableside.services.payment_providers import SandboxProvider
from tableside.services.session_coordinator import SessionCoordinator
from tableside.services.split_payment_service import SplitPaymentService
from tableside.services.waiter_call_service import WaiterCallService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


class RecordingPublisher(NotificationPublisher):
    """Keeps every published event for assertions."""

    def __init__(self):
        self.events = []

    def publish(self, topic, event_type, payload):
        self.events.append((topic, event_type, payload))

    def types(self, topic=None):
        return [e for t, e, _ in self.events if topic is None or t == topic]

    def payloads(self, event_type):
        return [p for _, e, p in self.events if e == event_type]


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def provider() -> SandboxProvider:
    return SandboxProvider(timeout_seconds=1.0)


@pytest.fixture
def coordinator(db_session: Session, publisher: RecordingPublisher) -> SessionCoordinator:
    return SessionCoordinator(db_session, publisher, alias_generator=AliasGenerator(rng=random.Random(7)))


@pytest.fixture
def calls(db_session: Session, publisher: RecordingPublisher) -> WaiterCallService:
    return WaiterCallService(db_session, publisher)


@pytest.fixture
def splits(db_session: Session, publisher: RecordingPublisher, provider: SandboxProvider) -> SplitPaymentService:
    return SplitPaymentService(db_session, provider, publisher)


@pytest.fixture
def make_table(db_session: Session):
    """Factory for tables at location 1."""

    def _make(number: str = "5", capacity: int = 4, location_id: int = 1, active: bool = True) -> Table:
        table = Table(location_id=location_id, number=number, capacity=capacity, active=active)
        db_session.add(table)
        db_session.commit()
        db_session.refresh(table)
        return table

    return _make


@pytest.fixture
def add_order(db_session: Session):
    """Factory for orders the bill and leave checks read."""

    def _add(session_id: int, participant_id, total, status: str = "delivered") -> Order:
        order = Order(
            session_id=session_id,
            participant_id=participant_id,
            status=status,
            subtotal=Decimal(str(total)),
            tax_amount=Decimal("0"),
            total_amount=Decimal(str(total)),
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _add


@pytest.fixture
def seated(coordinator: SessionCoordinator, make_table):
    """A table at location 1 with three diners checked in."""
    table = make_table(number="12", capacity=6)
    first = coordinator.check_in(1, "12")
    second = coordinator.check_in(1, "12")
    third = coordinator.check_in(1, "12")
    return table, first.session_id, [first.participant_id, second.participant_id, third.participant_id]


def _token(sub: int, role: str, location_id=None) -> str:
    data = {"sub": str(sub), "role": role}
    if location_id is not None:
        data["location_id"] = location_id
    return create_access_token(data=data)


@pytest.fixture
def staff_headers() -> dict:
    """Waiter 7."""
    return {"Authorization": f"Bearer {_token(7, 'staff')}"}


@pytest.fixture
def other_staff_headers() -> dict:
    """Waiter 8."""
    return {"Authorization": f"Bearer {_token(8, 'staff')}"}


@pytest.fixture
def elsewhere_staff_headers() -> dict:
    """Waiter 9, whose token is only valid at location 2."""
    return {"Authorization": f"Bearer {_token(9, 'staff', location_id=2)}"}


@pytest.fixture
def manager_headers() -> dict:
    return {"Authorization": f"Bearer {_token(1, 'manager')}"}


@pytest.fixture(scope="function")
def client(db_session: Session, publisher: RecordingPublisher, provider: SandboxProvider) -> Generator[TestClient, None, None]:
    """Create a test client with database, provider and publisher overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_payment_provider] = lambda: provider
    # Disable rate limiters during tests to avoid flaky failures
    from tableside.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()
