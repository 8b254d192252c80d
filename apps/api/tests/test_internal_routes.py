"""Internal endpoints consumed by feature code, plus health."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ent_api.billing.errors import TransientStoreFailure
from ent_api.main import create_app
from ent_api.ratelimit import SqlRateLimitStore
from ent_api.utils.timeutil import utcnow
from factories import seed_user


@pytest.fixture
def seeded(session_factory):
    def _seed(user_id: str = "user_1", **kwargs):
        with session_factory() as db:
            seed_user(db, user_id, **kwargs)

    return _seed


# ============================================================================
# Signup hook
# ============================================================================


def test_signup_creates_free_record_once(client: TestClient) -> None:
    first = client.post("/internal/users/new_user/subscription")
    second = client.post("/internal/users/new_user/subscription")

    assert (first.status_code, first.json()) == (201, {"user_id": "new_user", "created": True})
    assert (second.status_code, second.json()) == (200, {"user_id": "new_user", "created": False})

    entitlements = client.get("/internal/entitlements/new_user").json()
    assert entitlements["max_post_length"] == 500


def test_signup_store_failure_is_503(client: TestClient, app) -> None:
    with patch.object(app.state.reconciliation_engine, "ensure_record", side_effect=TransientStoreFailure("down")):
        response = client.post("/internal/users/u/subscription")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"


# ============================================================================
# Entitlements
# ============================================================================


def test_entitlements_for_premium_user(client: TestClient, seeded) -> None:
    seeded(tier="premium")
    body = client.get("/internal/entitlements/user_1").json()

    assert body["user_id"] == "user_1"
    assert body["max_post_length"] == -1
    assert body["max_videos"] == 3
    assert all(body["actions"].values())


def test_entitlements_for_past_due_user_are_free(client: TestClient, seeded) -> None:
    seeded(tier="premium", status="past_due")
    body = client.get("/internal/entitlements/user_1").json()

    assert body["max_post_length"] == 500
    assert not any(body["actions"].values())


def test_canceled_user_keeps_access_until_period_end(client: TestClient, seeded) -> None:
    seeded("still_paid", tier="medium", status="canceled", period_end=utcnow() + timedelta(days=3))
    seeded("lapsed", tier="medium", status="canceled", period_end=utcnow() - timedelta(seconds=1), customer="cus_2")

    assert client.get("/internal/entitlements/still_paid").json()["max_post_length"] == 1000
    assert client.get("/internal/entitlements/lapsed").json()["max_post_length"] == 500


def test_post_limits_reports_violations(client: TestClient, seeded) -> None:
    seeded()
    response = client.post(
        "/internal/entitlements/user_1/post-limits",
        json={"text_length": 800, "images": 2},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["allowed"] is False
    assert body["violations"] == [{"limit": "max_post_length", "allowed": 500, "requested": 800}]


def test_post_limits_rejects_negative_counts(client: TestClient) -> None:
    response = client.post("/internal/entitlements/user_1/post-limits", json={"text_length": -1})
    assert response.status_code == 422
    assert response.json()["title"] == "Request Validation Failed"


# ============================================================================
# Rate limits
# ============================================================================


def test_preset_rate_limit_allows_then_denies(client: TestClient) -> None:
    payload = {"user_id": "user_1", "action": "contact_form"}
    allowed = [client.post("/internal/rate-limit/check", json=payload) for _ in range(3)]
    denied = client.post("/internal/rate-limit/check", json=payload)

    assert [r.status_code for r in allowed] == [200, 200, 200]
    assert [r.json()["remaining"] for r in allowed] == [2, 1, 0]

    assert denied.status_code == 429
    assert denied.headers["content-type"].startswith("application/problem+json")
    assert int(denied.headers["Retry-After"]) >= 1
    body = denied.json()
    assert body["type"] == "urn:ent:problem:rate-limit-exceeded"
    assert body["violated-policies"] == [
        {"policy": "contact_form", "limit": 3, "current": 3, "window_seconds": 3600}
    ]


def test_explicit_limit_and_window(client: TestClient) -> None:
    payload = {"user_id": "user_1", "action": "custom", "limit": 1, "window_seconds": 3600}

    assert client.post("/internal/rate-limit/check", json=payload).status_code == 200
    assert client.post("/internal/rate-limit/check", json=payload).status_code == 429


def test_limit_without_window_is_400(client: TestClient) -> None:
    response = client.post("/internal/rate-limit/check", json={"user_id": "u", "action": "custom", "limit": 5})
    assert response.status_code == 400


def test_unknown_preset_is_400(client: TestClient) -> None:
    response = client.post("/internal/rate-limit/check", json={"user_id": "u", "action": "launch_rockets"})
    assert response.status_code == 400


def test_store_outage_is_503(client: TestClient) -> None:
    with patch.object(SqlRateLimitStore, "check_and_increment", side_effect=TransientStoreFailure("down")):
        response = client.post("/internal/rate-limit/check", json={"user_id": "u", "action": "reactions"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"


def test_redis_backend_is_wired(file_engine, session_factory, fake_redis) -> None:
    app = create_app(
        engine=file_engine,
        session_factory=session_factory,
        redis_client=fake_redis,
        rate_limit_backend="redis",
    )
    with TestClient(app) as client:
        payload = {"user_id": "user_1", "action": "custom", "limit": 2, "window_seconds": 60}
        codes = [client.post("/internal/rate-limit/check", json=payload).status_code for _ in range(3)]
        health = client.get("/health").json()

    assert codes == [200, 200, 429]
    assert health["services"] == {"database": "up", "redis": "up"}


# ============================================================================
# Health
# ============================================================================


def test_health_reports_dependencies(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["services"] == {"database": "up", "redis": "skipped"}


def test_health_degrades_when_redis_is_down(file_engine, session_factory) -> None:
    broken = MagicMock()
    broken.ping.side_effect = ConnectionError("refused")
    app = create_app(
        engine=file_engine,
        session_factory=session_factory,
        redis_client=broken,
        rate_limit_backend="redis",
    )
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["services"]["redis"].startswith("down")


def test_unknown_route_is_problem_json(client: TestClient) -> None:
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json()["type"] == "urn:ent:problem:http-404"
