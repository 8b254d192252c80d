"""Sweeper main entry point.

Two independent loops in separate threads:

1. Retry Loop:
   - Scan: pending ledger entries that are due
   - Reprocess through the ingestion pipeline; dead-letter after max attempts
   - Interval: RETRY_SWEEP_INTERVAL_SEC (30 seconds)

2. Window Loop (SQL rate-limit backend only):
   - Delete rate_limit_counters rows whose window has ended
   - Interval: WINDOW_PURGE_INTERVAL_SEC (300 seconds)
"""

import logging
import os
import signal
import threading

from ent_api.billing.classifier import EventClassifier
from ent_api.billing.ingestion import EventIngestor
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.config.env import (
    get_database_url,
    get_price_tier_map,
    get_rate_limit_backend,
    get_retry_base_delay_seconds,
    get_retry_grace_seconds,
    get_retry_max_attempts,
    get_webhook_tolerance_seconds,
)
from ent_api.db.engine import build_engine, build_sessionmaker
from ent_api.ratelimit.sql_store import SqlRateLimitStore
from ent_api.utils import configure_json_logging
from ent_sweeper.loops import shutdown_event
from ent_sweeper.loops.retry_loop import retry_loop
from ent_sweeper.loops.window_loop import window_loop

# Same structured JSON logging as the API
configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
    shutdown_event.set()


def main() -> None:
    """Run both sweeps until SIGTERM/SIGINT."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    retry_interval_sec = int(os.getenv("RETRY_SWEEP_INTERVAL_SEC", "30"))
    retry_scan_limit = int(os.getenv("RETRY_SWEEP_SCAN_LIMIT", "100"))
    purge_interval_sec = int(os.getenv("WINDOW_PURGE_INTERVAL_SEC", "300"))

    # Database engine (shared, using the same engine builder as the API)
    engine = build_engine(get_database_url())
    SessionLocal = build_sessionmaker(engine)

    ingestor = EventIngestor(
        EventClassifier(get_price_tier_map()),
        ReconciliationEngine(),
        tolerance_seconds=get_webhook_tolerance_seconds(),
        max_attempts=get_retry_max_attempts(),
        base_delay_seconds=get_retry_base_delay_seconds(),
    )

    threads = [
        threading.Thread(
            target=retry_loop,
            kwargs={
                "session_factory": SessionLocal,
                "ingestor": ingestor,
                "interval_seconds": retry_interval_sec,
                "grace_seconds": get_retry_grace_seconds(),
                "limit_per_scan": retry_scan_limit,
            },
            name="RetryLoop",
            daemon=False,
        )
    ]

    if get_rate_limit_backend() == "db":
        threads.append(
            threading.Thread(
                target=window_loop,
                kwargs={"store": SqlRateLimitStore(SessionLocal), "interval_seconds": purge_interval_sec},
                name="WindowLoop",
                daemon=False,
            )
        )
    else:
        logger.info("Window Loop: DISABLED (Redis keys expire on their own)")

    logger.info(f"Starting sweeper with {len(threads)} loops...")
    try:
        for thread in threads:
            thread.start()
        # Wait for all threads to complete (blocks until SIGTERM/SIGINT)
        for thread in threads:
            thread.join()
    except KeyboardInterrupt:
        logger.info("Sweeper stopped by user (KeyboardInterrupt)")
        shutdown_event.set()
    finally:
        engine.dispose()
        logger.info("Sweeper shutdown complete")


if __name__ == "__main__":
    main()
