"""Rate limit store: atomic fixed-window counters (SQL and Redis backends)."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import redis
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ent_api.billing.errors import TransientStoreFailure
from ent_api.db.models import RateLimitCounter
from ent_api.ratelimit import (
    PRESETS,
    RedisRateLimitStore,
    SqlRateLimitStore,
    build_rate_limit_store,
    check_rate_limit,
    window_bounds,
)
from ent_api.utils.timeutil import utcnow

NOW = datetime(2026, 3, 1, 12, 30, 15, tzinfo=timezone.utc)


def fire_concurrently(store, calls: int, limit: int, workers: int = 10) -> list[bool]:
    def attempt(_):
        return store.check_and_increment("user_1", "post_creation", limit, 3600, now=NOW).allowed

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(attempt, range(calls)))


# ============================================================================
# Windows
# ============================================================================


def test_window_bounds_align_to_epoch() -> None:
    start, end = window_bounds(NOW, 3600)
    assert start == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)

    start, end = window_bounds(NOW, 900)
    assert start == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert end - start == timedelta(minutes=15)


def test_window_bounds_reject_non_positive_window() -> None:
    with pytest.raises(ValueError):
        window_bounds(NOW, 0)


# ============================================================================
# SQL backend
# ============================================================================


def test_fifty_concurrent_calls_allow_exactly_limit(session_factory) -> None:
    results = fire_concurrently(SqlRateLimitStore(session_factory), calls=50, limit=10)

    assert results.count(True) == 10
    assert results.count(False) == 40

    with session_factory() as db:
        count = db.execute(select(RateLimitCounter.count)).scalar_one()
    assert count == 10


def test_sql_decision_reports_remaining_and_reset(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)

    first = store.check_and_increment("user_1", "comment_creation", 3, 3600, now=NOW)
    store.check_and_increment("user_1", "comment_creation", 3, 3600, now=NOW)
    third = store.check_and_increment("user_1", "comment_creation", 3, 3600, now=NOW)
    fourth = store.check_and_increment("user_1", "comment_creation", 3, 3600, now=NOW)

    assert (first.allowed, first.remaining) == (True, 2)
    assert (third.allowed, third.remaining) == (True, 0)
    assert (fourth.allowed, fourth.remaining) == (False, 0)
    assert fourth.reset_at == datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)


def test_sql_counters_are_per_user_action_and_window(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    assert store.check_and_increment("user_1", "reactions", 1, 60, now=NOW).allowed
    assert not store.check_and_increment("user_1", "reactions", 1, 60, now=NOW).allowed

    assert store.check_and_increment("user_2", "reactions", 1, 60, now=NOW).allowed
    assert store.check_and_increment("user_1", "follow_actions", 1, 60, now=NOW).allowed
    assert store.check_and_increment("user_1", "reactions", 1, 60, now=NOW + timedelta(minutes=1)).allowed


def test_zero_limit_denies_without_writing(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    assert store.check_and_increment("user_1", "contact_form", 0, 3600, now=NOW).allowed is False

    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(RateLimitCounter)).scalar_one() == 0


def test_lock_contention_retries_then_fails_transiently(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    locked = OperationalError("INSERT INTO rate_limit_counters", {}, Exception("database is locked"))

    with patch.object(SqlRateLimitStore, "_upsert", side_effect=locked) as upsert, patch(
        "ent_api.ratelimit.sql_store.time.sleep"
    ):
        with pytest.raises(TransientStoreFailure):
            store.check_and_increment("user_1", "post_creation", 10, 3600, now=NOW)

    assert upsert.call_count == 3


def test_purge_removes_only_ended_windows(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    store.check_and_increment("user_1", "api_general", 100, 60, now=NOW - timedelta(minutes=5))
    store.check_and_increment("user_1", "api_general", 100, 60, now=NOW)
    store.check_and_increment("user_1", "post_creation", 10, 3600, now=NOW - timedelta(hours=2))
    store.check_and_increment("user_1", "post_creation", 10, 3600, now=NOW)

    assert store.purge_expired(now=NOW) == 2

    with session_factory() as db:
        remaining = db.execute(select(RateLimitCounter.action, RateLimitCounter.window_start)).all()
    assert sorted(remaining) == [
        ("api_general", window_bounds(NOW, 60)[0]),
        ("post_creation", window_bounds(NOW, 3600)[0]),
    ]


# ============================================================================
# Redis backend
# ============================================================================


def test_redis_fifty_concurrent_calls_allow_exactly_limit(fake_redis) -> None:
    results = fire_concurrently(RedisRateLimitStore(fake_redis), calls=50, limit=10)

    assert results.count(True) == 10
    assert results.count(False) == 40


def test_redis_key_expires_with_window(fake_redis) -> None:
    store = RedisRateLimitStore(fake_redis)
    store.check_and_increment("user_1", "auth_attempts", 5, 900, now=NOW)

    start, _ = window_bounds(NOW, 900)
    key = f"rl:user_1:auth_attempts:900:{int(start.timestamp())}"
    assert fake_redis.get(key) == "1"
    assert fake_redis.ttl(key) == 900


def test_redis_denial_rolls_back_increment(fake_redis) -> None:
    store = RedisRateLimitStore(fake_redis)
    for _ in range(5):
        store.check_and_increment("user_1", "pack_creation", 2, 3600, now=NOW)

    start, _ = window_bounds(NOW, 3600)
    assert fake_redis.get(f"rl:user_1:pack_creation:3600:{int(start.timestamp())}") == "2"


def test_redis_outage_is_transient_failure() -> None:
    client = MagicMock()
    client.incr.side_effect = redis.ConnectionError("connection refused")

    with pytest.raises(TransientStoreFailure):
        RedisRateLimitStore(client).check_and_increment("user_1", "reactions", 100, 3600, now=NOW)


def test_redis_purge_is_a_no_op(fake_redis) -> None:
    assert RedisRateLimitStore(fake_redis).purge_expired() == 0


# ============================================================================
# Presets and backend selection
# ============================================================================


def test_presets_cover_platform_actions() -> None:
    assert PRESETS["post_creation"] == (10, 3600)
    assert PRESETS["auth_attempts"] == (5, 900)
    assert PRESETS["api_general"] == (100, 60)


def test_check_rate_limit_uses_preset(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    decisions = [check_rate_limit(store, "user_1", "contact_form", now=NOW) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[-1].limit == 3


def test_check_rate_limit_rejects_unknown_action(session_factory) -> None:
    with pytest.raises(ValueError):
        check_rate_limit(SqlRateLimitStore(session_factory), "user_1", "launch_rockets")


def test_retry_after_is_at_least_one_second(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    now = utcnow()
    store.check_and_increment("user_1", "api_general", 1, 60, now=now)
    decision = store.check_and_increment("user_1", "api_general", 1, 60, now=now)

    assert decision.allowed is False
    assert 1 <= decision.retry_after_seconds <= 60
    assert decision.reset_at > utcnow()


def test_build_rate_limit_store(session_factory, fake_redis) -> None:
    assert isinstance(build_rate_limit_store("db", session_factory), SqlRateLimitStore)
    assert isinstance(build_rate_limit_store("redis", session_factory, lambda: fake_redis), RedisRateLimitStore)

    with pytest.raises(ValueError):
        build_rate_limit_store("redis", session_factory)
    with pytest.raises(ValueError):
        build_rate_limit_store("memcached", session_factory)
