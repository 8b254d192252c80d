"""Builders for processor event payloads and signed deliveries."""

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ent_api.billing.signature import build_signature_header
from ent_api.db.models import UserSubscription

WEBHOOK_SECRET = "whsec_test_secret"
MEDIUM_PRICE = "price_medium_test"
PREMIUM_PRICE = "price_premium_test"

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def unix(dt: datetime) -> int:
    return int(dt.timestamp())


def subscription_obj(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    *,
    status: str = "active",
    price: Optional[str] = MEDIUM_PRICE,
    period_end: Optional[datetime] = None,
    user_id: Optional[str] = None,
    created: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    """Subscription object as the processor sends it."""
    obj: dict[str, Any] = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "created": unix(created or T0),
        "metadata": {"userId": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": price}}] if price else []},
    }
    if period_end is not None:
        obj["current_period_end"] = unix(period_end)
    return obj


def invoice_obj(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    *,
    price: Optional[str] = MEDIUM_PRICE,
    period_end: Optional[datetime] = None,
) -> dict[str, Any]:
    line: dict[str, Any] = {"price": {"id": price} if price else None}
    if period_end is not None:
        line["period"] = {"start": unix(period_end - timedelta(days=30)), "end": unix(period_end)}
    return {
        "id": "in_1",
        "object": "invoice",
        "customer": customer,
        "subscription": sub_id,
        "lines": {"data": [line]},
    }


def event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: Optional[datetime] = None,
    previous_attributes: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Event envelope ``{id, type, created, data: {object}}``."""
    data: dict[str, Any] = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": unix(created or T0),
        "data": data,
    }


def signed(body: dict[str, Any] | bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> tuple[bytes, dict[str, str]]:
    """Serialize a body and sign it the way the processor does."""
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    header = build_signature_header(secret, raw, timestamp if timestamp is not None else int(time.time()))
    return raw, {"Stripe-Signature": header, "Content-Type": "application/json"}


def seed_user(
    db: Session,
    user_id: str = "user_1",
    *,
    tier: str = "free",
    status: str = "active",
    customer: Optional[str] = "cus_1",
    subscription: Optional[str] = None,
    period_end: Optional[datetime] = None,
    last_event_at: Optional[datetime] = None,
) -> UserSubscription:
    """Insert a subscription record directly (test setup only)."""
    record = UserSubscription(
        user_id=user_id,
        tier=tier,
        status=status,
        external_customer_id=customer,
        external_subscription_id=subscription,
        period_end=period_end,
        last_event_at=last_event_at,
        version=0,
    )
    db.add(record)
    db.commit()
    return record


def load_record(session_factory: sessionmaker[Session], user_id: str = "user_1") -> UserSubscription:
    """Read a record through a fresh session (sees every committed write)."""
    with session_factory() as db:
        return db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id)).scalar_one()
