"""
Test fixtures for coursepay tests.

Provides an in-memory database, the in-memory Stripe gateway and an API
client wired to both.
"""

from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from coursepay.core.config import Settings
from coursepay.core.jwt import SubjectIdentity, create_access_token
from coursepay.models import Course, Entitlement, SubscriptionRecord
from coursepay.services.event_log import EventLog
from coursepay.services.notifications import NotificationProcessor
from coursepay.services.store import EntitlementStore

from tests.factories import (
    ADMIN_SUBJECT,
    LIVE_WEBHOOK_SECRET,
    TEST_WEBHOOK_SECRET,
    FakeStripeGateway,
)

# Use in-memory SQLite for tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test-signing-key-with-enough-length-for-hs256",
        SITE_URL="https://learn.example.com",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET_TEST=TEST_WEBHOOK_SECRET,
        STRIPE_WEBHOOK_SECRET_LIVE=LIVE_WEBHOOK_SECRET,
        STRIPE_EXTRA_WEBHOOK_SECRETS="",
        JWT_AUDIENCE="",
        FALLBACK_PRICE_CENTS=1999,
        DELETED_SUBSCRIPTION_POLICY="retain",
        ADMIN_SUBJECT_IDS=ADMIN_SUBJECT,
        CHECKOUT_RATE_LIMIT_PER_MINUTE=5,
        SENTRY_DSN="",
    )


@pytest.fixture(autouse=True)
def clear_rate_limiters():
    """Clear rate limiters before each test to prevent 429 errors."""
    from coursepay.core.rate_limit import checkout_rate_limiter

    checkout_rate_limiter.clear()
    yield


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def store(test_session: Session) -> EntitlementStore:
    return EntitlementStore(test_session)


@pytest.fixture
def event_log(test_session: Session) -> EventLog:
    return EventLog(test_session)


@pytest.fixture
def processor(settings, store, event_log, gateway) -> NotificationProcessor:
    return NotificationProcessor(settings, store, event_log, gateway)


@pytest.fixture
def subject() -> SubjectIdentity:
    return SubjectIdentity(subject_id="u1", email="u1@example.com")


@pytest.fixture
def one_time_course(test_session: Session) -> Course:
    course = Course(id="c1", title="Intro to Pottery", price_cents=4900, currency="gbp")
    test_session.add(course)
    test_session.commit()
    test_session.refresh(course)
    return course


@pytest.fixture
def subscription_course(test_session: Session) -> Course:
    course = Course(
        id="c2",
        title="Pottery Club",
        price_cents=999,
        currency="gbp",
        billing_interval="month",
        stripe_product_id="prod_club",
        stripe_price_id="price_club_monthly",
    )
    test_session.add(course)
    test_session.commit()
    test_session.refresh(course)
    return course


@pytest.fixture
def fetch(test_engine):
    """
    Read rows through a fresh session so assertions see what the API
    committed, not the test session's identity map.
    """

    class Fetcher:
        def entitlement(self, subject_id: str, course_id: str) -> Optional[Entitlement]:
            with Session(test_engine) as session:
                return EntitlementStore(session).get_entitlement(subject_id, course_id)

        def subscription(self, subscription_ref: str) -> Optional[SubscriptionRecord]:
            with Session(test_engine) as session:
                return EntitlementStore(session).get_subscription(subscription_ref)

        def log_entry(self, event_id: str):
            with Session(test_engine) as session:
                return EventLog(session).get(event_id)

        def log_entries(self):
            with Session(test_engine) as session:
                return EventLog(session).list_entries(limit=1000)

    return Fetcher()


@pytest.fixture
def client(test_engine, settings, gateway) -> Generator[TestClient, None, None]:
    """API client on the test database and the fake gateway."""
    from coursepay.api.deps import get_gateway, get_settings
    from coursepay.db import get_session
    from coursepay.main import app

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(settings):
    """Factory for bearer headers of a given subject."""

    def _headers(subject_id: str = "u1", email: Optional[str] = "u1@example.com") -> dict[str, str]:
        token = create_access_token(settings, subject_id, email=email)
        return {"Authorization": f"Bearer {token}"}

    return _headers
