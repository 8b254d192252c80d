"""Event ingestion: verify → parse → ledger → classify → resolve → apply.

Failure semantics:
  - SignatureInvalid: raised before anything is written; the processor
    re-delivers on its own schedule.
  - MalformedPayload: a signed body that does not parse is written to the
    ledger as ``rejected`` and re-raised.
  - UnresolvableUser: the entry is ``dead_lettered`` (needs manual linking)
    and the delivery is acknowledged.
  - TransientStoreFailure: the entry stays pending with attempts and
    next_attempt_at bumped; re-raised so the caller answers with a
    retryable status. Once attempts are exhausted the entry is
    ``dead_lettered`` and the delivery is acknowledged.
  - Any other error while classifying, resolving or applying goes through
    the same attempt counting as TransientStoreFailure, so no entry stays
    pending forever.

A redelivery of an id whose ledger entry has any final outcome (applied,
no_op, rejected or dead_lettered) is acknowledged without side effects.
Rejected and dead-lettered entries are only reprocessed through manual
replay, never by processor redelivery.

The same ``process_entry`` path serves the retry sweep and manual replay.
"""

import logging
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ent_api.billing import ledger
from ent_api.billing.classifier import EventClassifier, resolve_user_id
from ent_api.billing.errors import MalformedPayload, TransientStoreFailure, UnresolvableUser
from ent_api.billing.events import ProviderEvent, parse_event_body
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.billing.signature import DEFAULT_TOLERANCE_SECONDS, verify_signature
from ent_api.billing.transitions import TIER_BEARING, NoOp
from ent_api.context import event_id_var
from ent_api.db.models import BillingEventLedger
from ent_api.utils.sanitize import payload_digest, sanitize_str

logger = logging.getLogger(__name__)


class IngestResult(BaseModel):
    """What happened to one delivery."""

    status: Literal["processed", "already_processed", "dead_lettered"]
    external_event_id: str
    outcome: Optional[str] = None
    canonical_type: Optional[str] = None
    user_id: Optional[str] = None
    needs_resync: bool = False


class EventIngestor:
    """Runs inbound events through the ledger, classifier and engine.

    Args:
        classifier: provider event → canonical transition
        engine: the single writer of subscription records
        tolerance_seconds: signature timestamp tolerance
        max_attempts: processing attempts before an entry is dead-lettered
        base_delay_seconds: first retry delay, doubled per attempt
    """

    def __init__(
        self,
        classifier: EventClassifier,
        engine: ReconciliationEngine,
        *,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        max_attempts: int = 5,
        base_delay_seconds: int = 30,
    ):
        self.classifier = classifier
        self.engine = engine
        self.tolerance_seconds = tolerance_seconds
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds

    def ingest(
        self,
        db: Session,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Handle one webhook delivery.

        Raises:
            SignatureInvalid: Signature missing or not matching
            MalformedPayload: Signed body is not a valid event envelope
            TransientStoreFailure: Retryable failure after the ledger write
        """
        verify_signature(
            raw_body,
            signature_header,
            secret,
            self.tolerance_seconds,
            now=now.timestamp() if now else None,
        )
        digest = payload_digest(raw_body)

        try:
            body, event = parse_event_body(raw_body)
        except MalformedPayload as e:
            candidate = (e.body or {}).get("id")
            rejected_id = candidate if isinstance(candidate, str) and candidate else f"malformed:{digest}"
            ledger.record_rejected(db, rejected_id, digest, str(e))
            raise

        token = event_id_var.set(event.id)
        try:
            inserted, entry = ledger.try_record_event(
                db, event.id, digest, provider_type=event.type, payload=body
            )
            if not inserted and entry is not None and entry.outcome is not None:
                return IngestResult(
                    status="already_processed",
                    external_event_id=event.id,
                    outcome=entry.outcome,
                    canonical_type=entry.canonical_type,
                    user_id=entry.user_id,
                )
            return self._process(db, event)
        finally:
            event_id_var.reset(token)

    def process_entry(self, db: Session, entry: BillingEventLedger) -> IngestResult:
        """Reprocess a pending ledger entry from its stored payload.

        Raises:
            TransientStoreFailure: Still failing, attempts remain
        """
        token = event_id_var.set(entry.external_event_id)
        try:
            try:
                event = ProviderEvent.model_validate(entry.payload or {})
            except ValidationError:
                ledger.mark_outcome(
                    db, entry.external_event_id, "rejected", error="Stored payload is not a valid event envelope"
                )
                return IngestResult(
                    status="processed", external_event_id=entry.external_event_id, outcome="rejected"
                )
            return self._process(db, event)
        finally:
            event_id_var.reset(token)

    def _process(self, db: Session, event: ProviderEvent) -> IngestResult:
        try:
            transition = self.classifier.classify(event)
        except Exception as e:
            logger.error(
                "INGEST_CLASSIFY_FAILED",
                exc_info=True,
                extra={"external_event_id": event.id, "provider_type": event.type},
            )
            return self._fail(db, event, None, e)

        if isinstance(transition, NoOp):
            ledger.mark_outcome(db, event.id, "no_op", canonical_type=transition.kind)
            return IngestResult(
                status="processed", external_event_id=event.id, outcome="no_op", canonical_type=transition.kind
            )

        try:
            user_id = resolve_user_id(db, transition)
            transition = transition.model_copy(update={"user_id": user_id})
            result = self.engine.apply(db, transition)
        except (UnresolvableUser, LookupError) as e:
            db.rollback()
            logger.warning(
                "INGEST_UNRESOLVABLE_USER",
                extra={
                    "external_event_id": event.id,
                    "provider_type": event.type,
                    "customer_id": getattr(e, "customer_id", None),
                    "subscription_id": getattr(e, "subscription_id", None),
                },
            )
            ledger.mark_outcome(
                db, event.id, "dead_lettered", canonical_type=transition.kind, error=str(e)
            )
            return IngestResult(
                status="dead_lettered",
                external_event_id=event.id,
                outcome="dead_lettered",
                canonical_type=transition.kind,
            )
        except (TransientStoreFailure, SQLAlchemyError) as e:
            db.rollback()
            return self._fail(db, event, transition.kind, e)
        except Exception as e:
            db.rollback()
            logger.error(
                "INGEST_APPLY_FAILED",
                exc_info=True,
                extra={"external_event_id": event.id, "canonical_type": transition.kind},
            )
            return self._fail(db, event, transition.kind, e)

        ledger.mark_outcome(
            db, event.id, result.outcome, canonical_type=transition.kind, user_id=result.user_id
        )
        needs_resync = (
            isinstance(transition, TIER_BEARING) and transition.tier is None and result.outcome == "applied"
        )
        return IngestResult(
            status="processed",
            external_event_id=event.id,
            outcome=result.outcome,
            canonical_type=transition.kind,
            user_id=result.user_id,
            needs_resync=needs_resync,
        )

    def _fail(
        self, db: Session, event: ProviderEvent, canonical_type: Optional[str], error: Exception
    ) -> IngestResult:
        message = f"{type(error).__name__}: {sanitize_str(str(error))}"
        try:
            dead = ledger.record_failure(
                db,
                event.id,
                message,
                max_attempts=self.max_attempts,
                base_delay_seconds=self.base_delay_seconds,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("LEDGER_FAILURE_NOT_RECORDED", extra={"external_event_id": event.id})
            dead = False

        if dead:
            return IngestResult(
                status="dead_lettered",
                external_event_id=event.id,
                outcome="dead_lettered",
                canonical_type=canonical_type,
            )
        raise TransientStoreFailure(message) from error
