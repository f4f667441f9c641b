import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import get_db
from app.core.errors import ProviderError, SignatureError
from app.core.limiter import limiter
from app.models import Base
from app.services.payment_provider import (
    CheckoutSession,
    ProviderSubscription,
    SessionInfo,
    WebhookEvent,
    get_payment_provider,
)
from app.services.webhook_cache import get_webhook_cache
from factories import VALID_SIGNATURE, next_id

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakePaymentProvider:
    """In-memory stand-in for StripePaymentProvider."""

    def __init__(self):
        self.sessions = {}
        self.subscriptions = {}
        self.failing_cancels = set()
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name,) + args)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    # --- helpers for tests -------------------------------------------------

    def add_subscription(self, ref, status="active", period_start=None, period_end=None, customer_ref="cus_test",
                         metadata=None) -> ProviderSubscription:
        start = period_start or datetime.utcnow().replace(microsecond=0)
        sub = ProviderSubscription(
            ref=ref,
            status=status,
            customer_ref=customer_ref,
            period_start=start,
            period_end=period_end or start + timedelta(days=30),
            item_id=f"si_{ref}",
            price_ref=f"price_{ref}",
            product_ref="prod_thumbnails",
            metadata=metadata or {},
        )
        self.subscriptions[ref] = sub
        return sub

    def add_paid_session(self, session_id, user_id, plan_type, subscription_ref,
                         payment_status="paid", customer_ref="cus_test") -> SessionInfo:
        if subscription_ref not in self.subscriptions:
            self.add_subscription(subscription_ref, customer_ref=customer_ref)
        metadata = {"userId": str(user_id)}
        if plan_type is not None:
            metadata["planType"] = plan_type
        session = SessionInfo(
            session_id=session_id,
            payment_status=payment_status,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            metadata=metadata,
        )
        self.sessions[session_id] = session
        return session

    # --- provider protocol ---------------------------------------------------

    def create_customer(self, email, user_id):
        self._record("create_customer", email, user_id)
        return f"cus_{user_id}"

    def create_checkout_session(self, customer_ref, plan, success_url, cancel_url, metadata):
        self._record("create_checkout_session", customer_ref, plan.id, success_url, cancel_url, metadata)
        session_id = f"cs_test_{next_id()}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}")

    def retrieve_session(self, session_id):
        self._record("retrieve_session", session_id)
        if session_id not in self.sessions:
            raise ProviderError("Payment provider error during retrieve_session", code="resource_missing")
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_ref):
        self._record("retrieve_subscription", subscription_ref)
        if subscription_ref not in self.subscriptions:
            raise ProviderError("Payment provider error during retrieve_subscription", code="resource_missing")
        return self.subscriptions[subscription_ref]

    def cancel_subscription(self, subscription_ref):
        self._record("cancel_subscription", subscription_ref)
        if subscription_ref in self.failing_cancels:
            raise ProviderError("Payment provider error during cancel_subscription", code="resource_missing")
        sub = self.subscriptions.get(subscription_ref) or self.add_subscription(subscription_ref)
        sub.status = "canceled"
        return sub

    def update_subscription(self, subscription_ref, cancel_at_period_end=None, items=None, metadata=None):
        self._record("update_subscription", subscription_ref, cancel_at_period_end, items, metadata)
        sub = self.subscriptions.get(subscription_ref) or self.add_subscription(subscription_ref)
        if cancel_at_period_end is not None:
            sub.cancel_at_period_end = cancel_at_period_end
        if metadata is not None:
            sub.metadata = dict(metadata)
        return sub

    def plan_item(self, item_id, plan, product_ref):
        return {"id": item_id, "plan": plan.id, "product": product_ref}

    def verify_webhook_signature(self, payload, signature_header):
        if signature_header != VALID_SIGNATURE:
            raise SignatureError()
        event = json.loads(payload)
        return WebhookEvent(id=event["id"], type=event["type"], data_object=event["data"]["object"])


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture(autouse=True)
def webhook_cache():
    cache = get_webhook_cache()
    cache.clear()
    yield cache
    cache.clear()


@pytest.fixture(scope="function")
def client(db_session, provider, monkeypatch):
    """Create a test client with overridden dependencies."""

    # Override get_db
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    monkeypatch.setattr(limiter, "enabled", False)

    with TestClient(app) as c:
        yield c

    app.dependency_overrides = {}

