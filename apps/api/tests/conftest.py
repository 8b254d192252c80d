"""Pytest configuration and fixtures."""

import threading
from collections.abc import Iterator
from typing import Optional

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ent_api.billing.classifier import EventClassifier
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.billing.stripe_client import StripeClient
from ent_api.db.engine import build_engine, build_sessionmaker
from ent_api.db.models import Base
from ent_api.main import create_app
from factories import MEDIUM_PRICE, PREMIUM_PRICE, WEBHOOK_SECRET

ADMIN_TOKEN = "admin-test-token"


@pytest.fixture(autouse=True)
def billing_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Deterministic billing configuration for every test."""
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_MEDIUM_PRICE_ID", MEDIUM_PRICE)
    monkeypatch.setenv("STRIPE_PREMIUM_PRICE_ID", PREMIUM_PRICE)
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("LEDGER_RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("LEDGER_RETRY_BASE_DELAY_SECONDS", "30")
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def memory_engine() -> Iterator[Engine]:
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(memory_engine: Engine) -> Iterator[Session]:
    """Fresh database session for unit tests."""
    session = build_sessionmaker(memory_engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path) -> Iterator[Engine]:
    """File-backed SQLite (WAL) for tests that need real concurrent connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ent_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine: Engine) -> sessionmaker[Session]:
    return build_sessionmaker(file_engine)


# ============================================================================
# Domain services
# ============================================================================


@pytest.fixture
def classifier() -> EventClassifier:
    return EventClassifier({MEDIUM_PRICE: "medium", PREMIUM_PRICE: "premium"})


@pytest.fixture
def reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine()


# ============================================================================
# Fakes for external collaborators
# ============================================================================


class FakeStripe:
    """In-memory processor subscriptions API behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict] = {}
        self.fail_with: Optional[int] = None
        self.requests: list[httpx.Request] = []

    def put(self, subscription: dict) -> None:
        self.subscriptions[subscription["id"]] = subscription

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"message": "boom"}})

        path = request.url.path
        if path.startswith("/v1/subscriptions/"):
            sub = self.subscriptions.get(path.rsplit("/", 1)[-1])
            if sub is None:
                return httpx.Response(404, json={"error": {"code": "resource_missing"}})
            return httpx.Response(200, json=sub)
        if path == "/v1/subscriptions":
            customer = request.url.params.get("customer")
            data = [s for s in self.subscriptions.values() if s.get("customer") == customer]
            return httpx.Response(200, json={"object": "list", "data": data})
        return httpx.Response(404, json={})

    def client(self) -> StripeClient:
        return StripeClient(
            secret_key="sk_test_fake",
            base_url="https://stripe.test",
            transport=httpx.MockTransport(self.handler),
        )


class FakeRedis:
    """Thread-safe subset of the redis-py API used by the rate limit store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, int] = {}
        self._ttl: dict[str, int] = {}

    def incr(self, key: str) -> int:
        with self._lock:
            self._data[key] = self._data.get(key, 0) + 1
            return self._data[key]

    def decr(self, key: str) -> int:
        with self._lock:
            self._data[key] = self._data.get(key, 0) - 1
            return self._data[key]

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            self._ttl[key] = seconds
            return True

    def ttl(self, key: str) -> int:
        return self._ttl.get(key, -1)

    def get(self, key: str) -> Optional[str]:
        value = self._data.get(key)
        return None if value is None else str(value)

    def ping(self) -> bool:
        return True


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ============================================================================
# Application
# ============================================================================


@pytest.fixture
def app(file_engine: Engine, session_factory: sessionmaker[Session], fake_stripe: FakeStripe) -> FastAPI:
    return create_app(
        engine=file_engine,
        session_factory=session_factory,
        stripe_client=fake_stripe.client(),
        rate_limit_backend="db",
    )


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
