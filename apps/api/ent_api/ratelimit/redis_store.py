"""Redis rate limit backend (INCR-first).

    new = INCR key            (atomic)
    new == 1  → EXPIRE key window_seconds
    new > limit → DECR key (rollback) and deny

Keys expire with their window, so no purge is needed.
"""

import logging
from datetime import datetime
from typing import Optional

import redis

from ent_api.billing.errors import TransientStoreFailure
from ent_api.ratelimit.store import Decision, denied, window_bounds

logger = logging.getLogger(__name__)


class RedisRateLimitStore:
    """Rate limit store backed by Redis counters."""

    def __init__(self, client: redis.Redis, key_prefix: str = "rl"):
        self.redis = client
        self.key_prefix = key_prefix

    def _key(self, user_id: str, action: str, window_seconds: int, window_start: datetime) -> str:
        return f"{self.key_prefix}:{user_id}:{action}:{window_seconds}:{int(window_start.timestamp())}"

    def check_and_increment(
        self,
        user_id: str,
        action: str,
        limit: int,
        window_seconds: int,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Count one call against the window.

        Raises:
            TransientStoreFailure: Redis unavailable
        """
        window_start, reset_at = window_bounds(now, window_seconds)
        if limit <= 0:
            return denied(limit, window_seconds, reset_at)

        key = self._key(user_id, action, window_seconds, window_start)
        try:
            new_count = self.redis.incr(key)
            if new_count == 1:
                self.redis.expire(key, window_seconds)

            if new_count > limit:
                # Exceeded - rollback
                self.redis.decr(key)
                logger.info(
                    "RATE_LIMIT_DENIED",
                    extra={"user_id": user_id, "action": action, "limit": limit, "window_seconds": window_seconds},
                )
                return denied(limit, window_seconds, reset_at)
        except redis.RedisError as e:
            raise TransientStoreFailure(f"Rate limit store unavailable: {type(e).__name__}") from e

        return Decision(
            allowed=True,
            limit=limit,
            remaining=max(limit - new_count, 0),
            window_seconds=window_seconds,
            reset_at=reset_at,
        )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return 0
