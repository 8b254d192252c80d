"""Canonical transition vocabulary.

Every provider event is normalised into exactly one of these variants before
it reaches the reconciliation engine. ``kind`` is the discriminator.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Tier = Literal["free", "medium", "premium"]
DelinquentStatus = Literal["past_due", "unpaid"]


class _TransitionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    timestamp: datetime
    # Source event id; resync transitions carry a synthetic "resync:" id
    event_id: Optional[str] = None
    # Resync truth: skips the ordering comparison, never the state table
    authoritative: bool = False


class SubscriptionActivated(_TransitionBase):
    kind: Literal["SubscriptionActivated"] = "SubscriptionActivated"
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None


class SubscriptionRenewed(_TransitionBase):
    kind: Literal["SubscriptionRenewed"] = "SubscriptionRenewed"
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None


class SubscriptionTierChanged(_TransitionBase):
    kind: Literal["SubscriptionTierChanged"] = "SubscriptionTierChanged"
    tier: Tier
    period_end: Optional[datetime] = None


class SubscriptionPastDue(_TransitionBase):
    kind: Literal["SubscriptionPastDue"] = "SubscriptionPastDue"
    status: DelinquentStatus = "past_due"
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None


class SubscriptionCanceled(_TransitionBase):
    kind: Literal["SubscriptionCanceled"] = "SubscriptionCanceled"
    period_end: Optional[datetime] = None


class NoOp(_TransitionBase):
    kind: Literal["NoOp"] = "NoOp"
    reason: str = "unhandled"


CanonicalTransition = Annotated[
    Union[
        SubscriptionActivated,
        SubscriptionRenewed,
        SubscriptionTierChanged,
        SubscriptionPastDue,
        SubscriptionCanceled,
        NoOp,
    ],
    Field(discriminator="kind"),
]

# Transitions whose tier is required for a faithful update; a missing tier
# means the price could not be mapped and a resync should follow.
TIER_BEARING = (SubscriptionActivated, SubscriptionRenewed)
