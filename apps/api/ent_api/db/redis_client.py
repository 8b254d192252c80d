"""Redis client construction."""

import os
from urllib.parse import urlparse

import redis


def build_redis_client(redis_url: str | None = None) -> redis.Redis:
    """
    Build a Redis client.

    - Priority: explicit url, then REDIS_URL, then redis://localhost:6379/0
    - REDIS_PASSWORD: applied only if the URL carries no password

    Returns:
        redis.Redis: Redis client (connects lazily)
    """
    url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_password = os.getenv("REDIS_PASSWORD")

    parsed = urlparse(url)

    kwargs = {
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "health_check_interval": 30,
    }

    if not parsed.password and redis_password:
        kwargs["password"] = redis_password

    return redis.from_url(url, **kwargs)
