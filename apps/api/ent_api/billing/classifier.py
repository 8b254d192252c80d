"""Event classifier: provider event shapes → canonical transitions.

Classification is a pure mapping over the event envelope; user resolution is
the one lookup step and is kept separate (``resolve_user_id``) so the mapping
itself stays testable without a database.

Provider vocabulary handled:
  checkout.session.completed            → SubscriptionActivated
  customer.subscription.created         → by subscription status
  customer.subscription.updated         → by subscription status / price change
  customer.subscription.deleted         → SubscriptionCanceled
  invoice.payment_succeeded, invoice.paid → SubscriptionRenewed
  invoice.payment_failed                → SubscriptionPastDue
  anything else                         → NoOp (acknowledged, never an error)
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ent_api.billing.errors import UnresolvableUser
from ent_api.billing.events import ProviderEvent
from ent_api.billing.transitions import (
    CanonicalTransition,
    NoOp,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionPastDue,
    SubscriptionRenewed,
    SubscriptionTierChanged,
)
from ent_api.db.models import UserSubscription
from ent_api.utils.timeutil import from_unix

logger = logging.getLogger(__name__)

PAID_TIERS = frozenset({"medium", "premium"})
# Processor statuses of a subscription that still grants (or owes) access
LIVE_PROVIDER_STATUSES = frozenset({"active", "trialing", "past_due", "unpaid"})


def map_provider_status(provider_status: Optional[str]) -> str:
    """Map a processor subscription status onto the local status set.

    Unknown statuses map to active, matching historical behaviour.
    """
    if provider_status in ("active", "trialing"):
        return "active"
    if provider_status == "past_due":
        return "past_due"
    if provider_status == "unpaid":
        return "unpaid"
    if provider_status in ("canceled", "incomplete_expired"):
        return "canceled"
    return "active"


def _first_price_id(subscription: Mapping[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, Mapping) else price


def _period_end(subscription: Mapping[str, Any]):
    """current_period_end moved onto subscription items in newer API versions."""
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    return from_unix(value)


def _id_of(value: Any) -> Optional[str]:
    """Expanded objects arrive as dicts, unexpanded as id strings."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


class EventClassifier:
    """Maps provider events into the canonical transition vocabulary.

    Args:
        price_tiers: processor price id → local tier
    """

    def __init__(self, price_tiers: Mapping[str, str]):
        self.price_tiers = dict(price_tiers)

    def tier_for_price(self, price_id: Optional[str]) -> Optional[str]:
        if not price_id:
            return None
        tier = self.price_tiers.get(price_id)
        if tier is None:
            logger.warning("CLASSIFIER_UNKNOWN_PRICE", extra={"price_id": price_id})
        return tier

    def classify(self, event: ProviderEvent) -> CanonicalTransition:
        """Map one event envelope. Never raises for unknown types."""
        obj = event.obj
        common = {
            "timestamp": event.timestamp,
            "event_id": event.id,
        }

        if event.type == "checkout.session.completed":
            return self._from_checkout(obj, common)

        if event.type in ("customer.subscription.created", "customer.subscription.updated"):
            previous = event.data.previous_attributes or {}
            return self.from_subscription(obj, common, previous=previous, created=event.type.endswith("created"))

        if event.type == "customer.subscription.deleted":
            return SubscriptionCanceled(
                **common,
                **self._subscription_ids(obj),
                period_end=_period_end(obj),
            )

        if event.type in ("invoice.payment_succeeded", "invoice.paid"):
            return self._from_invoice(obj, common, succeeded=True)

        if event.type == "invoice.payment_failed":
            return self._from_invoice(obj, common, succeeded=False)

        logger.info("CLASSIFIER_NOOP", extra={"provider_type": event.type})
        return NoOp(**common, reason=f"unhandled:{event.type}")

    # ── Variants ────────────────────────────────────────────────────────────

    def _subscription_ids(self, subscription: Mapping[str, Any]) -> dict:
        metadata = subscription.get("metadata") or {}
        return {
            "user_id": metadata.get("userId") or metadata.get("user_id"),
            "external_customer_id": _id_of(subscription.get("customer")),
            "external_subscription_id": subscription.get("id"),
        }

    def _from_checkout(self, session: Mapping[str, Any], common: dict) -> CanonicalTransition:
        if session.get("mode") not in (None, "subscription") or not session.get("subscription"):
            return NoOp(**common, reason="checkout_without_subscription")

        metadata = session.get("metadata") or {}
        tier = metadata.get("tierId") or metadata.get("tier")
        subscription = session.get("subscription")
        period_end = None
        if isinstance(subscription, Mapping):
            tier = self.tier_for_price(_first_price_id(subscription)) or tier
            period_end = _period_end(subscription)

        return SubscriptionActivated(
            **common,
            user_id=metadata.get("userId") or session.get("client_reference_id"),
            external_customer_id=_id_of(session.get("customer")),
            external_subscription_id=_id_of(subscription),
            tier=tier if tier in PAID_TIERS else None,
            period_end=period_end,
        )

    def from_subscription(
        self,
        subscription: Mapping[str, Any],
        common: dict,
        *,
        previous: Optional[Mapping[str, Any]] = None,
        created: bool = False,
    ) -> CanonicalTransition:
        """Map a subscription object (webhook or fetched truth) by its status."""
        ids = self._subscription_ids(subscription)
        provider_status = subscription.get("status")
        status = map_provider_status(provider_status)
        tier = self.tier_for_price(_first_price_id(subscription))
        period_end = _period_end(subscription)

        if status in ("past_due", "unpaid"):
            return SubscriptionPastDue(**common, **ids, status=status, tier=tier, period_end=period_end)

        if status == "canceled":
            return SubscriptionCanceled(**common, **ids, period_end=period_end)

        if provider_status in ("incomplete",):
            return NoOp(**common, **ids, reason="subscription_incomplete")

        previous = previous or {}
        if created or "status" in previous:
            return SubscriptionActivated(**common, **ids, tier=tier, period_end=period_end)

        if "items" in previous and tier is not None:
            return SubscriptionTierChanged(**common, **ids, tier=tier, period_end=period_end)

        return SubscriptionRenewed(**common, **ids, tier=tier, period_end=period_end)

    def _from_invoice(self, invoice: Mapping[str, Any], common: dict, *, succeeded: bool) -> CanonicalTransition:
        subscription_id = _id_of(invoice.get("subscription"))
        if subscription_id is None:
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_id = _id_of(details.get("subscription"))
        if subscription_id is None:
            return NoOp(**common, reason="invoice_without_subscription")

        lines = (invoice.get("lines") or {}).get("data") or []
        period_end = None
        tier = None
        if lines:
            line = lines[0]
            period_end = from_unix((line.get("period") or {}).get("end"))
            price = line.get("price") or ((line.get("pricing") or {}).get("price_details") or {}).get("price")
            tier = self.tier_for_price(_id_of(price))

        metadata = (invoice.get("subscription_details") or {}).get("metadata") or {}
        ids = {
            "user_id": metadata.get("userId"),
            "external_customer_id": _id_of(invoice.get("customer")),
            "external_subscription_id": subscription_id,
        }

        if succeeded:
            return SubscriptionRenewed(**common, **ids, tier=tier, period_end=period_end)
        # A failed invoice says nothing about the period already paid for
        return SubscriptionPastDue(**common, **ids, tier=tier)


def resolve_user_id(db: Session, transition: CanonicalTransition) -> str:
    """Resolve the local user a transition belongs to.

    Order: explicit user id carried by the event (only if that user has a
    record), then external_subscription_id, then external_customer_id.

    Raises:
        UnresolvableUser: No local record matches
    """
    if transition.user_id:
        exists = db.execute(
            select(UserSubscription.user_id).where(UserSubscription.user_id == transition.user_id)
        ).scalar_one_or_none()
        if exists is not None:
            return exists

    if transition.external_subscription_id:
        found = db.execute(
            select(UserSubscription.user_id).where(
                UserSubscription.external_subscription_id == transition.external_subscription_id
            )
        ).scalar_one_or_none()
        if found is not None:
            return found

    if transition.external_customer_id:
        found = db.execute(
            select(UserSubscription.user_id)
            .where(UserSubscription.external_customer_id == transition.external_customer_id)
            .order_by(UserSubscription.updated_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if found is not None:
            return found

    raise UnresolvableUser(
        "No subscription record matches the event's user, subscription or customer",
        customer_id=transition.external_customer_id,
        subscription_id=transition.external_subscription_id,
    )
