"""Rate limit decision type and store contract.

Windows are fixed, not sliding: ``window_start = floor(now / window) * window``.
A burst straddling a boundary can see up to 2 × limit in one window length;
that approximation is accepted in exchange for a single-row atomic update.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict

from ent_api.utils.timeutil import as_utc, utcnow


class Decision(BaseModel):
    """Outcome of one check-and-increment. Deny is a value, not an error."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    limit: int
    remaining: int
    window_seconds: int
    reset_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(1, int((self.reset_at - utcnow()).total_seconds()))


def window_bounds(now: Optional[datetime], window_seconds: int) -> tuple[datetime, datetime]:
    """(window_start, window_end) of the fixed window containing ``now``."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    current = as_utc(now) or utcnow()
    epoch = int(current.timestamp())
    start = datetime.fromtimestamp(epoch - epoch % window_seconds, tz=timezone.utc)
    return start, start + timedelta(seconds=window_seconds)


def denied(limit: int, window_seconds: int, reset_at: datetime) -> Decision:
    return Decision(allowed=False, limit=limit, remaining=0, window_seconds=window_seconds, reset_at=reset_at)


class RateLimitStore(Protocol):
    """Contract shared by the SQL and Redis backends.

    Under N concurrent calls for one (user_id, action) inside one window,
    at most ``limit`` receive ``allowed=True``.
    """

    def check_and_increment(
        self,
        user_id: str,
        action: str,
        limit: int,
        window_seconds: int,
        now: Optional[datetime] = None,
    ) -> Decision: ...

    def purge_expired(self, now: Optional[datetime] = None) -> int: ...
