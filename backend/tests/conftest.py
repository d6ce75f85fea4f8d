from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from certlab.api.deps import get_billing_provider, get_db, get_lock_manager, get_retry_queue
from certlab.api.errors import NotFound, ProviderUnavailable
from certlab.core.config import settings
from certlab.core.security import create_access_token
from certlab.integrations.polar import (
    CheckoutSession,
    ProductPrice,
    ProviderCustomer,
    ProviderSubscription,
)
from certlab.main import app
from certlab.models import Subscription, User, utc_now
from certlab.services.subscription_lock import SubscriptionLockManager
from certlab.services.webhook_retry import WebhookRetryQueue

PRO_PRODUCT = "prod_pro"
ENTERPRISE_PRODUCT = "prod_enterprise"


class FakeProvider:
    """
    In-memory billing provider.

    - customers: email -> ProviderCustomer
    - subscriptions: customer id -> list of ProviderSubscription
    - fail_reads / fail_writes: raise ProviderUnavailable
    - cancel_gate: when set, cancel_subscription blocks until the event fires
    """

    configured = True

    def __init__(self) -> None:
        self.customers: dict[str, ProviderCustomer] = {}
        self.subscriptions: dict[str, list[ProviderSubscription]] = {}
        self.sessions: dict[str, CheckoutSession] = {}
        self.prices: dict[str, list[ProductPrice]] = {}
        self.calls: list[str] = []
        self.fail_reads = False
        self.fail_writes = False
        self.cancel_gate: threading.Event | None = None
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _read(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_reads:
            raise ProviderUnavailable("Billing provider returned 503")

    def _write(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_writes:
            raise ProviderUnavailable("Billing provider returned 503")

    # seeding helpers

    def add_customer(self, email: str, customer_id: str) -> ProviderCustomer:
        customer = ProviderCustomer(id=customer_id, email=email)
        self.customers[email] = customer
        self.subscriptions.setdefault(customer_id, [])
        return customer

    def add_subscription(self, subscription: ProviderSubscription) -> ProviderSubscription:
        self.subscriptions.setdefault(subscription.customer_id or "", []).append(subscription)
        return subscription

    def _update(self, subscription_id: str, **changes: Any) -> ProviderSubscription:
        for items in self.subscriptions.values():
            for i, subscription in enumerate(items):
                if subscription.id == subscription_id:
                    items[i] = replace(subscription, **changes)
                    return items[i]
        raise NotFound(f"Billing provider resource not found: /subscriptions/{subscription_id}")

    # BillingProvider

    def get_customer_by_email(self, email: str) -> ProviderCustomer | None:
        self._read("get_customer_by_email")
        return self.customers.get(email)

    def create_or_get_customer(self, email: str, name: str | None = None) -> ProviderCustomer:
        self._write("create_or_get_customer")
        if email in self.customers:
            return self.customers[email]
        return self.add_customer(email, self._next("cus"))

    def get_subscriptions(self, customer_id: str) -> list[ProviderSubscription]:
        self._read("get_subscriptions")
        return list(self.subscriptions.get(customer_id, []))

    def create_checkout_session(
        self,
        *,
        product_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: str,
        customer_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckoutSession:
        self._write("create_checkout_session")
        session_id = self._next("cs")
        session = CheckoutSession(
            id=session_id,
            url=f"https://sandbox.polar.sh/checkout/{session_id}",
            status="open",
            customer_id=customer_id,
            product_id=product_id,
            metadata=dict(metadata or {}),
        )
        self.sessions[session_id] = session
        return session

    def get_checkout_session(self, session_id: str) -> CheckoutSession:
        self._read("get_checkout_session")
        if session_id not in self.sessions:
            raise NotFound(f"Billing provider resource not found: /checkouts/{session_id}")
        return self.sessions[session_id]

    def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> ProviderSubscription:
        self._write("cancel_subscription")
        if self.cancel_gate is not None:
            self.cancel_gate.wait(timeout=5)
        if immediate:
            return self._update(subscription_id, status="canceled", ended_at=utc_now())
        return self._update(subscription_id, cancel_at_period_end=True)

    def resume_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._write("resume_subscription")
        return self._update(subscription_id, status="active", cancel_at_period_end=False, canceled_at=None)

    def switch_subscription_plan(
        self,
        *,
        subscription_id: str,
        new_product_id: str,
        price_id: str | None = None,
        switch_at_period_end: bool = False,
    ) -> ProviderSubscription:
        self._write("switch_subscription_plan")
        if switch_at_period_end:
            return self._update(subscription_id)
        return self._update(subscription_id, product_id=new_product_id, price_id=price_id)

    def get_product_prices(self, product_id: str) -> list[ProductPrice]:
        self._read("get_product_prices")
        return list(self.prices.get(product_id, []))

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        return signature == "valid"


@pytest.fixture(autouse=True)
def polar_settings(monkeypatch):
    monkeypatch.setattr(settings, "POLAR_API_KEY", "polar_test_key")
    monkeypatch.setattr(settings, "POLAR_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "POLAR_PRO_PRODUCT_ID", PRO_PRODUCT)
    monkeypatch.setattr(settings, "POLAR_ENTERPRISE_PRODUCT_ID", ENTERPRISE_PRODUCT)
    monkeypatch.setattr(settings, "APP_URL", "https://certlab.test")
    monkeypatch.setattr(settings, "WEBHOOK_RETRY_ENABLED", False)


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # children first
        session.exec(delete(Subscription))
        session.exec(delete(User))
        session.commit()


@pytest.fixture
def now() -> datetime:
    return utc_now().replace(microsecond=0)


@pytest.fixture
def clock(now) -> Callable[[], datetime]:
    return lambda: now


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def lock_manager() -> Generator[SubscriptionLockManager, None, None]:
    manager = SubscriptionLockManager(max_wait_ms=50, poll_interval_ms=10)
    yield manager
    manager.clear_all_locks()


@pytest.fixture
def retry_queue() -> WebhookRetryQueue:
    return WebhookRetryQueue(lambda event: None)


@pytest.fixture
def make_user(db) -> Callable[..., User]:
    counter = iter(range(1, 10_000))

    def _make(**fields: Any) -> User:
        n = next(counter)
        fields.setdefault("id", f"user_{n}")
        fields.setdefault("email", f"learner{n}@example.com")
        user = User(**fields)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def provider_subscription(now) -> Callable[..., ProviderSubscription]:
    def _make(**fields: Any) -> ProviderSubscription:
        fields.setdefault("id", "sub_1")
        fields.setdefault("status", "active")
        fields.setdefault("customer_id", "cus_1")
        fields.setdefault("product_id", PRO_PRODUCT)
        fields.setdefault("recurring_interval", "month")
        fields.setdefault("current_period_start", now - timedelta(days=3))
        fields.setdefault("current_period_end", now + timedelta(days=27))
        return ProviderSubscription(**fields)

    return _make


@pytest.fixture
def client(engine, provider, lock_manager, retry_queue) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    app.dependency_overrides[get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[get_retry_queue] = lambda: retry_queue
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(user_id: str) -> dict[str, str]:
    token = create_access_token(user_id, timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers() -> Callable[[str], dict[str, str]]:
    return auth_headers
