"""Rate limit store: atomic fixed-window check-and-increment counters."""

from typing import Callable, Optional

import redis
from sqlalchemy.orm import Session, sessionmaker

from ent_api.ratelimit.presets import PRESETS, RateLimitPreset, check_rate_limit
from ent_api.ratelimit.redis_store import RedisRateLimitStore
from ent_api.ratelimit.sql_store import SqlRateLimitStore
from ent_api.ratelimit.store import Decision, RateLimitStore, window_bounds


def build_rate_limit_store(
    backend: str,
    session_factory: sessionmaker[Session],
    redis_factory: Optional[Callable[[], redis.Redis]] = None,
) -> RateLimitStore:
    """Build the configured backend ("db" or "redis").

    Raises:
        ValueError: Unknown backend, or "redis" without a client factory
    """
    if backend == "db":
        return SqlRateLimitStore(session_factory)
    if backend == "redis":
        if redis_factory is None:
            raise ValueError("Redis rate limit backend requires a Redis client")
        return RedisRateLimitStore(redis_factory())
    raise ValueError(f"Unknown rate limit backend: {backend!r}")


__all__ = [
    "PRESETS",
    "RateLimitPreset",
    "check_rate_limit",
    "build_rate_limit_store",
    "Decision",
    "RateLimitStore",
    "RedisRateLimitStore",
    "SqlRateLimitStore",
    "window_bounds",
]
