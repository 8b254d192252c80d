"""Reconciliation engine: the single writer of subscription records.

States: Free, Active(tier), PastDue(tier), Canceled.

    Free     --Activated-->            Active(tier)
    Active   --Renewed-->              Active(tier), period_end extended
    Active   --TierChanged-->          Active(new tier)
    Active   --PastDue-->              PastDue(tier)   (tier kept for recovery)
    PastDue  --Activated/Renewed-->    Active(tier)
    Active|PastDue --Canceled-->       Canceled        (tier kept until period_end)

Ordering: transitions apply in event-time order, not arrival order.
  - Canceled compares its event timestamp with the last applied one.
  - Everything else compares period_end when both sides carry one, and
    falls back to the event timestamp when they are equal or missing.
  - Canceled / PastDue naming a different subscription than the recorded
    one are superseded.
Older transitions are accepted for audit but leave the record untouched
(``no_op``). Authoritative (resync) transitions skip the comparison.

Concurrency: per-user read-modify-write is one unit. The row is read
``FOR UPDATE`` where the database supports it, and the write is a
compare-and-swap on ``version``; a lost CAS re-reads and re-decides, up to
``max_cas_retries`` times.
"""

import logging
import time
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ent_api.billing.errors import ConcurrentUpdateError, TransientStoreFailure
from ent_api.billing.transitions import (
    CanonicalTransition,
    NoOp,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionPastDue,
    SubscriptionRenewed,
    SubscriptionTierChanged,
)
from ent_api.context import user_id_var
from ent_api.db.models import UserSubscription
from ent_api.db.upsert import dialect_insert, supports_row_locks
from ent_api.utils.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = ("tier", "status", "period_end", "external_customer_id", "external_subscription_id")


class SubscriptionState(BaseModel):
    kind: Literal["Free", "Active", "PastDue", "Canceled"]
    tier: str
    status: str
    period_end: Optional[datetime] = None


class ReconciliationResult(BaseModel):
    user_id: Optional[str]
    previous_state: Optional[SubscriptionState]
    new_state: Optional[SubscriptionState]
    changed: bool
    outcome: Literal["applied", "no_op"]
    reason: Optional[str] = None


def state_of(tier: str, status: str, period_end: Optional[datetime]) -> SubscriptionState:
    if status == "canceled":
        kind = "Canceled"
    elif status in ("past_due", "unpaid"):
        kind = "PastDue"
    elif tier == "free":
        kind = "Free"
    else:
        kind = "Active"
    return SubscriptionState(kind=kind, tier=tier, status=status, period_end=as_utc(period_end))


def _record_state(record: UserSubscription) -> SubscriptionState:
    return state_of(record.tier, record.status, record.period_end)


def _differs(record: UserSubscription, values: dict) -> bool:
    for field in _MUTABLE_FIELDS:
        current = getattr(record, field)
        if field == "period_end":
            current = as_utc(current)
        if values[field] != current:
            return True
    return False


class ReconciliationEngine:
    """Applies canonical transitions to subscription records."""

    def __init__(self, max_cas_retries: int = 5):
        self.max_cas_retries = max_cas_retries

    # ── Signup ──────────────────────────────────────────────────────────────

    def ensure_record(self, db: Session, user_id: str) -> bool:
        """Create the implicit ``{tier: free, status: active}`` row.

        Returns:
            True if the row was created, False if it already existed.
        """
        now = utcnow()
        stmt = (
            dialect_insert(db, UserSubscription)
            .values(user_id=user_id, tier="free", status="active", version=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_id"])
            .returning(UserSubscription.user_id)
        )
        try:
            created = db.execute(stmt).fetchone() is not None
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientStoreFailure(f"Could not create subscription record: {type(e).__name__}") from e
        if created:
            logger.info("SUBSCRIPTION_RECORD_CREATED", extra={"user_id": user_id})
        return created

    # ── Single entry point ──────────────────────────────────────────────────

    def apply(self, db: Session, transition: CanonicalTransition, now: Optional[datetime] = None) -> ReconciliationResult:
        """Apply one transition to its user's record.

        ``transition.user_id`` must already be resolved.

        Raises:
            ConcurrentUpdateError: CAS lost more than max_cas_retries times
            TransientStoreFailure: Database error during read-modify-write
            LookupError: No record for the user
        """
        if isinstance(transition, NoOp):
            return ReconciliationResult(
                user_id=transition.user_id,
                previous_state=None,
                new_state=None,
                changed=False,
                outcome="no_op",
                reason=transition.reason,
            )

        user_id = transition.user_id
        if not user_id:
            raise ValueError("Transition must carry a resolved user_id")
        token = user_id_var.set(user_id)
        try:
            for attempt in range(1, self.max_cas_retries + 1):
                try:
                    result = self._apply_once(db, transition, now or utcnow())
                except (ConcurrentUpdateError, OperationalError) as e:
                    # Lost CAS, lock timeout or serialization failure: re-read and re-decide
                    db.rollback()
                    logger.info(
                        "RECONCILE_CAS_CONFLICT",
                        extra={"attempt": attempt, "canonical_type": transition.kind, "error_type": type(e).__name__},
                    )
                    time.sleep(min(0.005 * attempt, 0.05))
                    continue
                except SQLAlchemyError as e:
                    db.rollback()
                    raise TransientStoreFailure(
                        f"Subscription update failed: {type(e).__name__}"
                    ) from e
                return result
            raise ConcurrentUpdateError(
                f"Gave up after {self.max_cas_retries} concurrent update conflicts for user {user_id}"
            )
        finally:
            user_id_var.reset(token)

    def _apply_once(self, db: Session, transition: CanonicalTransition, now: datetime) -> ReconciliationResult:
        stmt = select(UserSubscription).where(UserSubscription.user_id == transition.user_id)
        if supports_row_locks(db):
            stmt = stmt.with_for_update()
        # Always read the committed row, never a stale identity-map copy
        stmt = stmt.execution_options(populate_existing=True)
        record = db.execute(stmt).scalar_one_or_none()
        if record is None:
            db.rollback()
            raise LookupError(f"No subscription record for user {transition.user_id}")

        previous = _record_state(record)
        stale_reason = self.stale_reason(record, transition)
        if stale_reason is not None:
            db.rollback()
            logger.info(
                "RECONCILE_STALE",
                extra={"canonical_type": transition.kind, "reason": stale_reason, "event_ref": transition.event_id},
            )
            return ReconciliationResult(
                user_id=transition.user_id,
                previous_state=previous,
                new_state=previous,
                changed=False,
                outcome="no_op",
                reason=stale_reason,
            )

        values = self.next_values(record, transition, now)
        changed = _differs(record, values)
        event_at = as_utc(transition.timestamp)
        last_event_at = as_utc(record.last_event_at)
        if last_event_at is None or event_at > last_event_at:
            last_event_at = event_at

        expected_version = record.version
        cas = db.execute(
            update(UserSubscription)
            .where(
                UserSubscription.user_id == transition.user_id,
                UserSubscription.version == expected_version,
            )
            .values(
                **values,
                last_event_at=last_event_at,
                version=expected_version + 1,
                updated_at=now,
            )
        )
        if cas.rowcount != 1:
            db.rollback()
            raise ConcurrentUpdateError(f"Version {expected_version} superseded for user {transition.user_id}")
        db.commit()

        new_state = state_of(values["tier"], values["status"], values["period_end"])
        logger.info(
            "RECONCILE_APPLIED",
            extra={
                "canonical_type": transition.kind,
                "previous_kind": previous.kind,
                "new_kind": new_state.kind,
                "tier": new_state.tier,
                "changed": changed,
                "authoritative": transition.authoritative,
            },
        )
        return ReconciliationResult(
            user_id=transition.user_id,
            previous_state=previous,
            new_state=new_state,
            changed=changed,
            outcome="applied",
        )

    # ── Decision rules ──────────────────────────────────────────────────────

    @staticmethod
    def stale_reason(record: UserSubscription, transition: CanonicalTransition) -> Optional[str]:
        """Why a transition must not touch the record, or None if it may."""
        if transition.authoritative:
            return None

        recorded_sub = record.external_subscription_id
        if (
            isinstance(transition, (SubscriptionCanceled, SubscriptionPastDue))
            and transition.external_subscription_id
            and recorded_sub
            and transition.external_subscription_id != recorded_sub
        ):
            return "superseded_subscription"

        recorded_at = as_utc(record.last_event_at)

        if not isinstance(transition, SubscriptionCanceled):
            incoming_end = as_utc(getattr(transition, "period_end", None))
            recorded_end = as_utc(record.period_end)
            if incoming_end is not None and recorded_end is not None:
                if incoming_end < recorded_end:
                    return "period_end_older"
                if incoming_end > recorded_end:
                    return None

        if recorded_at is not None and as_utc(transition.timestamp) < recorded_at:
            return "event_older"
        return None

    @staticmethod
    def next_values(record: UserSubscription, transition: CanonicalTransition, now: datetime) -> dict:
        """Column values the record takes after the transition."""
        exact = transition.authoritative
        tier = record.tier
        status = record.status
        period_end = as_utc(record.period_end)

        incoming_end = as_utc(getattr(transition, "period_end", None))
        if exact or incoming_end is not None:
            period_end = incoming_end

        if isinstance(transition, (SubscriptionActivated, SubscriptionRenewed)):
            tier = transition.tier or tier
            status = "active"
        elif isinstance(transition, SubscriptionTierChanged):
            tier = transition.tier
            status = "active"
        elif isinstance(transition, SubscriptionPastDue):
            tier = transition.tier or tier
            status = transition.status
        elif isinstance(transition, SubscriptionCanceled):
            status = "canceled"
            if period_end is None or period_end <= now:
                tier = "free"

        return {
            "tier": tier,
            "status": status,
            "period_end": period_end,
            "external_customer_id": transition.external_customer_id or record.external_customer_id,
            "external_subscription_id": transition.external_subscription_id or record.external_subscription_id,
        }
