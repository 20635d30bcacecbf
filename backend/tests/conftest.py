"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from cryptography.fernet import Fernet

# Settings are read at import time, so the environment goes first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["RUN_BACKGROUND_TASKS"] = "false"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renewal_engine.core.config import settings
from renewal_engine.db.session import get_db
from renewal_engine.main import app
from renewal_engine.models import Base, Subscription
from renewal_engine.services.container import BillingServices, build_services
from renewal_engine.services.gateways import GatewayRegistry
from renewal_engine.services.subscription_service import create_subscription

from fakes import NOW, FakeGateway

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Redis stand-in for locks, delayed tasks and pub/sub"""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def services(mock_redis, fake_gateway) -> BillingServices:
    """Billing services wired to fakeredis and the fake gateway"""
    registry = GatewayRegistry()
    registry.register(fake_gateway)
    return build_services(settings, redis_client=mock_redis, gateways=registry, publish_to_redis=False)


@pytest.fixture(scope="function")
def grace_services(mock_redis, fake_gateway) -> BillingServices:
    """Billing services with a 7 day grace period"""
    registry = GatewayRegistry()
    registry.register(fake_gateway)
    return build_services(
        settings.model_copy(update={"GRACE_DAYS": 7}),
        redis_client=mock_redis, gateways=registry, publish_to_redis=False,
    )


@pytest.fixture(scope="function")
def notifications(services):
    """Every notification published on the bus, in order"""
    received = []
    services.bus.subscribe_all(received.append)
    return received


@pytest.fixture(scope="function")
def make_subscription(db_session: Session, services: BillingServices):
    """Factory for active subscriptions due at NOW, optionally with a vaulted card"""
    counter = {"order": 1000}

    def _make(
        with_payment_method: bool = True,
        next_date: datetime = NOW,
        status: str = None,
        **overrides
    ) -> Subscription:
        counter["order"] += 1
        params = {
            "owner_id": "user-1",
            "price": Decimal("19.99"),
            "parent_order_id": counter["order"],
            "start_date": datetime(2023, 12, 1, 12, 0, tzinfo=timezone.utc),
        }
        params.update(overrides)
        subscription = create_subscription(db_session, services.state_machine, **params)
        subscription.next_date = next_date
        if status is not None:
            subscription.status = status
        db_session.commit()
        if with_payment_method:
            services.vault.save(db_session, subscription.id, "fake", "tok_visa_4242", customer_id="cust-1")
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture(scope="function")
def client(db_session: Session, services: BillingServices) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and fake services"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch("renewal_engine.main.initialize_otel", return_value=False):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()
        app.state.services = None
