"""Idempotency ledger: atomic INSERT ON CONFLICT keyed by external event id.

Design:
  1. INSERT ... ON CONFLICT (external_event_id) DO NOTHING RETURNING id
       → row returned : first delivery → process
       → no row       : already known → look at the stored outcome
  2. Stored outcome applied | no_op | rejected | dead_lettered → acknowledge,
     zero side effects. Stored outcome NULL (pending, a previous attempt
     crashed or failed transiently) → process again; the engine's ordering
     rule and per-user CAS make a second pass harmless.

The UNIQUE constraint guarantees exactly one INSERT wins under concurrent
redelivery. Outcome writes only ever touch processed_at / outcome and the
retry bookkeeping columns.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from ent_api.db.models import OUTCOMES, BillingEventLedger
from ent_api.db.upsert import dialect_insert
from ent_api.utils.sanitize import sanitize_str
from ent_api.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

FINAL_OUTCOMES = frozenset(OUTCOMES)


def try_record_event(
    db: Session,
    external_event_id: str,
    payload_digest: str,
    *,
    provider_type: Optional[str] = None,
    payload: Optional[dict] = None,
) -> tuple[bool, BillingEventLedger]:
    """Insert a pending ledger row unless the event id is already known.

    Returns:
        (inserted, entry): inserted is True only for the first delivery.
    """
    stmt = (
        dialect_insert(db, BillingEventLedger)
        .values(
            external_event_id=external_event_id,
            provider_type=provider_type,
            received_at=utcnow(),
            raw_payload_digest=payload_digest,
            payload=payload,
            attempts=0,
        )
        .on_conflict_do_nothing(index_elements=["external_event_id"])
        .returning(BillingEventLedger.id)
    )
    row = db.execute(stmt).fetchone()
    db.commit()

    entry = get_entry(db, external_event_id)
    if row is not None:
        logger.debug("LEDGER_RECORDED", extra={"external_event_id": external_event_id})
        return True, entry

    logger.info(
        "LEDGER_DUPLICATE",
        extra={"external_event_id": external_event_id, "outcome": entry.outcome if entry else None},
    )
    return False, entry


def get_entry(db: Session, external_event_id: str) -> Optional[BillingEventLedger]:
    return db.execute(
        select(BillingEventLedger).where(BillingEventLedger.external_event_id == external_event_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def mark_outcome(
    db: Session,
    external_event_id: str,
    outcome: str,
    *,
    canonical_type: Optional[str] = None,
    user_id: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Record a final outcome. Only pending rows are updated."""
    if outcome not in FINAL_OUTCOMES:
        raise ValueError(f"Unknown ledger outcome: {outcome!r}")

    values: dict = {"outcome": outcome, "processed_at": utcnow(), "next_attempt_at": None}
    if canonical_type is not None:
        values["canonical_type"] = canonical_type
    if user_id is not None:
        values["user_id"] = user_id
    if error is not None:
        values["last_error"] = sanitize_str(error)[:500]

    db.execute(
        update(BillingEventLedger)
        .where(
            BillingEventLedger.external_event_id == external_event_id,
            BillingEventLedger.outcome.is_(None),
        )
        .values(**values)
    )
    db.commit()

    log = logger.warning if outcome in {"rejected", "dead_lettered"} else logger.info
    log(
        f"LEDGER_{outcome.upper()}",
        extra={"external_event_id": external_event_id, "canonical_type": canonical_type},
    )


def record_rejected(db: Session, external_event_id: str, payload_digest: str, reason: str) -> bool:
    """Write a forensic ``rejected`` entry for a malformed, signed body.

    An id that is already in the ledger is left as it is.

    Returns:
        True if a new rejected entry was written.
    """
    inserted, _ = try_record_event(db, external_event_id, payload_digest)
    if inserted:
        mark_outcome(db, external_event_id, "rejected", error=reason)
    return inserted


def backoff_delay(attempt: int, base_delay_seconds: int) -> timedelta:
    """Exponential backoff: base * 2^(attempt-1), capped at one hour."""
    return timedelta(seconds=min(base_delay_seconds * (2 ** max(attempt - 1, 0)), 3600))


def record_failure(
    db: Session,
    external_event_id: str,
    error: str,
    *,
    max_attempts: int,
    base_delay_seconds: int,
) -> bool:
    """Count a failed processing attempt.

    Returns:
        True if the entry was dead-lettered (attempts exhausted), False if it
        stays pending for the retry sweep.
    """
    entry = get_entry(db, external_event_id)
    if entry is None or entry.outcome is not None:
        return False

    attempts = entry.attempts + 1
    if attempts >= max_attempts:
        db.execute(
            update(BillingEventLedger)
            .where(BillingEventLedger.id == entry.id)
            .values(attempts=attempts)
        )
        db.commit()
        mark_outcome(db, external_event_id, "dead_lettered", error=error)
        return True

    db.execute(
        update(BillingEventLedger)
        .where(BillingEventLedger.id == entry.id, BillingEventLedger.outcome.is_(None))
        .values(
            attempts=attempts,
            last_error=sanitize_str(error)[:500],
            next_attempt_at=utcnow() + backoff_delay(attempts, base_delay_seconds),
        )
    )
    db.commit()
    logger.warning(
        "LEDGER_ATTEMPT_FAILED",
        extra={"external_event_id": external_event_id, "attempts": attempts, "max_attempts": max_attempts},
    )
    return False


def find_retryable(
    db: Session,
    *,
    grace_seconds: int,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> list[BillingEventLedger]:
    """Pending entries due for another attempt.

    A never-attempted entry (crash between insert and hand-off) becomes due
    once it is older than grace_seconds; a failed one once next_attempt_at
    has passed.
    """
    current = now or utcnow()
    stmt = (
        select(BillingEventLedger)
        .where(
            BillingEventLedger.outcome.is_(None),
            or_(
                BillingEventLedger.next_attempt_at <= current,
                and_(
                    BillingEventLedger.next_attempt_at.is_(None),
                    BillingEventLedger.received_at <= current - timedelta(seconds=grace_seconds),
                ),
            ),
        )
        .order_by(BillingEventLedger.received_at)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def list_dead_letters(db: Session, limit: int = 100) -> list[BillingEventLedger]:
    stmt = (
        select(BillingEventLedger)
        .where(BillingEventLedger.outcome == "dead_lettered")
        .order_by(BillingEventLedger.processed_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def reopen_for_replay(db: Session, external_event_id: str) -> bool:
    """Return a dead-lettered entry to pending so it can be replayed."""
    result = db.execute(
        update(BillingEventLedger)
        .where(
            BillingEventLedger.external_event_id == external_event_id,
            BillingEventLedger.outcome == "dead_lettered",
        )
        .values(outcome=None, processed_at=None, attempts=0, next_attempt_at=None)
    )
    db.commit()
    return result.rowcount == 1
