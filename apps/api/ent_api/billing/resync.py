"""Resync adapter: pull subscription truth from the processor and replay it.

The fetched subscription is classified with the same ``EventClassifier``
used for webhooks and applied through ``ReconciliationEngine.apply``; there
is no second write path. Resync transitions are authoritative, so they skip
the ordering comparison and overwrite a corrupted or stale local record.
"""

import logging
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ent_api.billing.classifier import LIVE_PROVIDER_STATUSES, EventClassifier
from ent_api.billing.errors import ProviderError, TransientStoreFailure
from ent_api.billing.reconciliation import ReconciliationEngine, ReconciliationResult
from ent_api.billing.stripe_client import StripeClient
from ent_api.billing.transitions import CanonicalTransition, SubscriptionCanceled
from ent_api.db.models import UserSubscription
from ent_api.utils.sanitize import sanitize_str
from ent_api.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ResyncAdapter:
    """Converges one user's record onto the processor's current state."""

    def __init__(self, client: StripeClient, classifier: EventClassifier, engine: ReconciliationEngine):
        self.client = client
        self.classifier = classifier
        self.engine = engine

    async def fetch_truth(self, record: UserSubscription) -> Optional[dict]:
        """Current subscription for a record, or None if the processor has none.

        The customer's subscriptions are listed first and the newest live one
        wins, so a record still pointing at a dead subscription picks up a
        replacement whose webhooks were lost. Without a live one the recorded
        subscription is used, then the newest of any status.

        Raises:
            ProviderError: Processor API unreachable or returned an error
        """
        try:
            subscriptions: list[dict] = []
            if record.external_customer_id:
                subscriptions = await self.client.list_customer_subscriptions(record.external_customer_id)
                for subscription in subscriptions:
                    if subscription.get("status") in LIVE_PROVIDER_STATUSES:
                        return subscription

            if record.external_subscription_id:
                for subscription in subscriptions:
                    if subscription.get("id") == record.external_subscription_id:
                        return subscription
                subscription = await self.client.get_subscription(record.external_subscription_id)
                if subscription is not None:
                    return subscription
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            raise ProviderError(f"Subscription lookup failed: {sanitize_str(str(e))}") from e
        return subscriptions[0] if subscriptions else None

    def build_transition(
        self,
        record: UserSubscription,
        subscription: Optional[dict],
        now: datetime,
    ) -> CanonicalTransition:
        """Synthesize the authoritative transition for a fetched snapshot.

        No subscription at the processor means the user holds nothing: an
        immediate cancellation with no remaining paid period.
        """
        common = {"timestamp": now, "event_id": f"resync:{record.user_id}:{int(now.timestamp())}", "authoritative": True}
        if subscription is None:
            return SubscriptionCanceled(
                **common,
                user_id=record.user_id,
                external_customer_id=record.external_customer_id,
                external_subscription_id=record.external_subscription_id,
                period_end=None,
            )
        transition = self.classifier.from_subscription(subscription, common, created=True)
        return transition.model_copy(update={"user_id": record.user_id})

    async def resync(self, db: Session, user_id: str, now: Optional[datetime] = None) -> ReconciliationResult:
        """Fetch truth for a user and apply it.

        Raises:
            LookupError: No subscription record for the user
            ProviderError: Processor API failure
            TransientStoreFailure: Database failure while applying
        """
        record = db.execute(
            select(UserSubscription).where(UserSubscription.user_id == user_id)
        ).scalar_one_or_none()
        if record is None:
            raise LookupError(f"No subscription record for user {user_id}")

        subscription = await self.fetch_truth(record)
        current = now or utcnow()
        transition = self.build_transition(record, subscription, current)
        logger.info(
            "RESYNC_STARTED",
            extra={
                "user_id": user_id,
                "canonical_type": transition.kind,
                "provider_status": subscription.get("status") if subscription else None,
            },
        )
        result = self.engine.apply(db, transition, now=current)
        logger.info(
            "RESYNC_COMPLETED",
            extra={"user_id": user_id, "changed": result.changed, "outcome": result.outcome},
        )
        return result


async def resync_in_background(
    session_factory: sessionmaker[Session],
    adapter: Optional[ResyncAdapter],
    user_id: str,
) -> None:
    """Background resync dispatched after an event carried an unknown price.

    Runs after the webhook response has been sent, so failures are logged
    and left for an operator or the next event.
    """
    if adapter is None:
        logger.warning("RESYNC_SKIPPED_NOT_CONFIGURED", extra={"user_id": user_id})
        return
    with session_factory() as db:
        try:
            await adapter.resync(db, user_id)
        except (ProviderError, TransientStoreFailure, LookupError) as e:
            logger.error(
                "RESYNC_BACKGROUND_FAILED",
                extra={"user_id": user_id, "error_type": type(e).__name__, "error_msg": sanitize_str(str(e))},
            )
