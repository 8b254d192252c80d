"""SQLAlchemy ORM models for the entitlement engine.

Ownership:
- UserSubscription: written only by the reconciliation engine
- BillingEventLedger: append-only; only processed_at / outcome / retry
  bookkeeping change after insert
- RateLimitCounter: written only by the SQL rate-limit store
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, INTEGER, JSON, TEXT, CheckConstraint, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ent_api.db.types import UTCDateTime

STATUSES = ("active", "past_due", "canceled", "unpaid")
OUTCOMES = ("applied", "no_op", "rejected", "dead_lettered")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sql_in(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class UserSubscription(Base):
    """Authoritative local subscription record, one row per user.

    Never hard-deleted; cancellation is a status transition.
    """

    __tablename__ = "user_subscriptions"

    user_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    tier: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")

    external_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Event timestamp of the last applied transition (tie-break input)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Optimistic locking: every write is UPDATE ... WHERE version = :expected
    version: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("external_subscription_id", name="uq_user_subscriptions_ext_sub"),
        Index("idx_user_subscriptions_customer", "external_customer_id"),
        CheckConstraint(
            f"status IN ({_sql_in(STATUSES)})",
            name="ck_user_subscriptions_status",
        ),
    )


class BillingEventLedger(Base):
    """Idempotency ledger / audit trail of inbound billing events.

    Pending entries have outcome IS NULL and processed_at IS NULL.
    """

    __tablename__ = "billing_event_ledger"

    id: Mapped[int] = mapped_column(BIGINT().with_variant(INTEGER, "sqlite"), primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    provider_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    canonical_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    raw_payload_digest: Mapped[str] = mapped_column(TEXT, nullable=False)
    # Kept for the retry sweep and manual replay
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_billing_event_ledger_event_id"),
        Index("idx_billing_event_ledger_pending", "outcome", "next_attempt_at"),
        CheckConstraint(
            f"outcome IS NULL OR outcome IN ({_sql_in(OUTCOMES)})",
            name="ck_billing_event_ledger_outcome",
        ),
    )


class RateLimitCounter(Base):
    """Fixed-window counter keyed by (user_id, action, window_start)."""

    __tablename__ = "rate_limit_counters"

    user_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    action: Mapped[str] = mapped_column(TEXT, primary_key=True)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    window_seconds: Mapped[int] = mapped_column(INTEGER, nullable=False)
    count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)

    __table_args__ = (Index("idx_rate_limit_counters_window", "window_start"),)
