"""Rate-window purge: delete counters whose fixed window has ended.

Kept off the check-and-increment hot path; expired rows are never read
(their window_start no longer matches), so a slow purge costs only space.
"""

import logging
import threading
from typing import Optional

from ent_api.ratelimit.sql_store import SqlRateLimitStore
from ent_sweeper.loops import shutdown_event

logger = logging.getLogger(__name__)


def window_loop(
    store: SqlRateLimitStore,
    interval_seconds: int = 300,
    stop_after_one_iteration: bool = False,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Periodically purge expired rate-limit windows.

    Args:
        store: SQL rate limit store
        interval_seconds: Sleep interval between purges (default 300)
        stop_after_one_iteration: For testing only - exit after one purge
        stop_event: Shutdown event (defaults to the process-wide one)
    """
    stop = stop_event or shutdown_event
    logger.info(f"Window purge loop started (interval={interval_seconds}s)")

    total_deleted = 0
    while not stop.is_set():
        try:
            total_deleted += store.purge_expired()
        except Exception as e:
            logger.error(f"Window purge error: {e}", exc_info=True)

        if stop_after_one_iteration:
            break

        stop.wait(interval_seconds)

    logger.info("Window purge loop stopped gracefully", extra={"total_deleted": total_deleted})
