"""Durable rate limit counters in the ``rate_limit_counters`` table.

One statement per check:

    INSERT ... VALUES (user, action, window_start, count=1)
    ON CONFLICT (user_id, action, window_start)
    DO UPDATE SET count = count + 1 WHERE count < :limit
    RETURNING count

A returned row means the increment happened (Allow); no row means the
guarded update was skipped because the window is full (Deny). The database
serializes conflicting upserts on the primary key, so no read-then-write
window exists.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ent_api.billing.errors import TransientStoreFailure
from ent_api.db.models import RateLimitCounter
from ent_api.db.upsert import dialect_insert
from ent_api.ratelimit.store import Decision, denied, window_bounds
from ent_api.utils.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

LOCK_RETRY_ATTEMPTS = 3


class SqlRateLimitStore:
    """Rate limit store backed by the relational database.

    Each call runs in its own short session so callers on any thread can
    share one store.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def check_and_increment(
        self,
        user_id: str,
        action: str,
        limit: int,
        window_seconds: int,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Atomically count one call against the window.

        Raises:
            TransientStoreFailure: Database unavailable
        """
        window_start, reset_at = window_bounds(now, window_seconds)
        if limit <= 0:
            return denied(limit, window_seconds, reset_at)

        for attempt in range(1, LOCK_RETRY_ATTEMPTS + 1):
            with self.session_factory() as db:
                try:
                    count = self._upsert(db, user_id, action, window_start, window_seconds, limit)
                    db.commit()
                except OperationalError as e:
                    db.rollback()
                    if attempt == LOCK_RETRY_ATTEMPTS:
                        raise TransientStoreFailure(f"Rate limit store unavailable: {type(e).__name__}") from e
                    time.sleep(0.01 * attempt)
                    continue
                except SQLAlchemyError as e:
                    db.rollback()
                    raise TransientStoreFailure(f"Rate limit store unavailable: {type(e).__name__}") from e
            break

        if count is None:
            logger.info(
                "RATE_LIMIT_DENIED",
                extra={"user_id": user_id, "action": action, "limit": limit, "window_seconds": window_seconds},
            )
            return denied(limit, window_seconds, reset_at)

        return Decision(
            allowed=True,
            limit=limit,
            remaining=max(limit - count, 0),
            window_seconds=window_seconds,
            reset_at=reset_at,
        )

    @staticmethod
    def _upsert(
        db: Session,
        user_id: str,
        action: str,
        window_start: datetime,
        window_seconds: int,
        limit: int,
    ) -> Optional[int]:
        stmt = dialect_insert(db, RateLimitCounter).values(
            user_id=user_id,
            action=action,
            window_start=window_start,
            window_seconds=window_seconds,
            count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "action", "window_start"],
            set_={"count": RateLimitCounter.count + 1},
            where=RateLimitCounter.count < limit,
        ).returning(RateLimitCounter.count)
        row = db.execute(stmt).fetchone()
        return row[0] if row is not None else None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete counters whose window has ended. Maintenance sweep only.

        Returns:
            Number of rows deleted
        """
        current = as_utc(now) or utcnow()
        deleted = 0
        with self.session_factory() as db:
            window_lengths = db.execute(select(RateLimitCounter.window_seconds).distinct()).scalars().all()
            for window_seconds in window_lengths:
                cutoff, _ = window_bounds(current, window_seconds)
                result = db.execute(
                    delete(RateLimitCounter).where(
                        RateLimitCounter.window_seconds == window_seconds,
                        RateLimitCounter.window_start < cutoff,
                    )
                )
                deleted += result.rowcount or 0
            db.commit()
        if deleted:
            logger.info("RATE_LIMIT_WINDOWS_PURGED", extra={"deleted": deleted})
        return deleted
