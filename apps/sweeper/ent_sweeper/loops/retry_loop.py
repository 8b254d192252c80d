"""Ledger retry sweep.

- Scan: outcome IS NULL AND (next_attempt_at <= NOW() OR never attempted
  and older than the grace period)
- Reprocess: stored payload through the same ingestion path as webhooks
- Exhausted attempts end as ``dead_lettered``
- Interval: 30 seconds (configurable)
"""

import logging
import threading
import time
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from ent_api.billing import ledger
from ent_api.billing.errors import TransientStoreFailure
from ent_api.billing.ingestion import EventIngestor
from ent_sweeper.loops import shutdown_event

logger = logging.getLogger(__name__)


def sweep_once(
    db: Session,
    ingestor: EventIngestor,
    *,
    grace_seconds: int,
    limit: int = 100,
) -> dict[str, int]:
    """Run one pass over the due pending entries.

    Returns:
        Counts by result: processed, dead_lettered, failed
    """
    counts = {"processed": 0, "dead_lettered": 0, "failed": 0}
    due = ledger.find_retryable(db, grace_seconds=grace_seconds, limit=limit)
    if due:
        logger.info("RETRY_SWEEP_FOUND", extra={"due_count": len(due), "scan_limit": limit})

    for entry in due:
        try:
            result = ingestor.process_entry(db, entry)
        except TransientStoreFailure as e:
            # Still failing; attempts and next_attempt_at were bumped
            counts["failed"] += 1
            logger.warning(
                "RETRY_SWEEP_STILL_FAILING",
                extra={"external_event_id": entry.external_event_id, "error_type": type(e).__name__},
            )
            continue
        except Exception as e:
            counts["failed"] += 1
            db.rollback()
            logger.error(
                f"Retry sweep unexpected error for {entry.external_event_id}: {e}",
                exc_info=True,
                extra={"external_event_id": entry.external_event_id},
            )
            continue

        if result.status == "dead_lettered":
            counts["dead_lettered"] += 1
        else:
            counts["processed"] += 1

    return counts


def retry_loop(
    session_factory: sessionmaker[Session],
    ingestor: EventIngestor,
    interval_seconds: int = 30,
    grace_seconds: int = 60,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Periodically reprocess pending ledger entries.

    Args:
        session_factory: Builds one session per iteration
        ingestor: Shared ingestion pipeline
        interval_seconds: Sleep interval between scans (default 30)
        grace_seconds: Age before a never-attempted entry is due (default 60)
        limit_per_scan: Max entries per iteration (default 100)
        stop_after_one_iteration: For testing only - exit after one scan
        stop_event: Shutdown event (defaults to the process-wide one)
    """
    stop = stop_event or shutdown_event
    logger.info(f"Retry loop started (interval={interval_seconds}s, limit={limit_per_scan})")

    iteration = 0
    while not stop.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            with session_factory() as db:
                counts = sweep_once(db, ingestor, grace_seconds=grace_seconds, limit=limit_per_scan)
            if any(counts.values()):
                logger.info(
                    f"Retry iteration {iteration}: {counts['processed']} processed, "
                    f"{counts['dead_lettered']} dead-lettered, {counts['failed']} still failing",
                    extra={
                        "iteration": iteration,
                        **counts,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception as e:
            logger.error(f"Retry loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            break

        # Interruptible sleep - allows immediate shutdown on signal
        stop.wait(interval_seconds)

    logger.info(f"Retry loop stopped gracefully after {iteration} iterations")
