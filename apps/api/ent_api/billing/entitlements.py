"""Entitlement resolver.

``resolve`` is a pure function of (tier, status): no I/O, deterministic,
default-deny. Unknown tiers and any non-active status resolve to the free
set. ``resolve_entitlements`` is the read-side query feature code calls; it
loads the subscription record and derives the effective (tier, status) at
read time, so nothing here is cached beyond the call.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from ent_api.db.models import UserSubscription
from ent_api.utils.timeutil import as_utc, utcnow

UNLIMITED = -1
MIB = 1024 * 1024


class Entitlement(BaseModel):
    """Resolved feature limits. ``UNLIMITED`` (-1) means no cap."""

    model_config = ConfigDict(frozen=True)

    max_post_length: int
    max_images: int
    max_videos: int
    allow_location_features: bool
    allow_analytics: bool
    max_video_size_bytes: int = 0


FREE = Entitlement(
    max_post_length=500,
    max_images=3,
    max_videos=0,
    allow_location_features=False,
    allow_analytics=False,
    max_video_size_bytes=0,
)

TIER_ENTITLEMENTS: dict[str, Entitlement] = {
    "free": FREE,
    "medium": Entitlement(
        max_post_length=1000,
        max_images=7,
        max_videos=1,
        allow_location_features=True,
        allow_analytics=True,
        max_video_size_bytes=64 * MIB,
    ),
    "premium": Entitlement(
        max_post_length=UNLIMITED,
        max_images=UNLIMITED,
        max_videos=3,
        allow_location_features=True,
        allow_analytics=True,
        max_video_size_bytes=256 * MIB,
    ),
}

# Access revoked pending payment (or gone)
REVOKED_STATUSES = frozenset({"past_due", "unpaid", "canceled"})


def resolve(tier: Optional[str], status: Optional[str]) -> Entitlement:
    """Resolve (tier, status) into feature limits."""
    if status in REVOKED_STATUSES or status is None:
        return FREE
    return TIER_ENTITLEMENTS.get(tier or "free", FREE)


def effective_tier_status(
    tier: str,
    status: str,
    period_end: Optional[datetime],
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Derive what a record grants at ``now``.

    A canceled subscription keeps its paid tier until period_end has
    elapsed; from that instant on it reads as free.
    """
    if status == "canceled":
        current = now or utcnow()
        end = as_utc(period_end)
        if end is not None and current < end and tier != "free":
            return tier, "active"
        return "free", "canceled"
    return tier, status


def resolve_entitlements(db: Session, user_id: str, now: Optional[datetime] = None) -> Entitlement:
    """Entitlement query consumed by feature code.

    A user without a record (signup hook not yet run) gets the free set.
    """
    record = db.execute(
        select(UserSubscription).where(UserSubscription.user_id == user_id)
    ).scalar_one_or_none()
    if record is None:
        return FREE
    tier, status = effective_tier_status(record.tier, record.status, record.period_end, now)
    return resolve(tier, status)


# ── Action gating helpers ────────────────────────────────────────────────────

ACTIONS = ("create_long_post", "multiple_images", "use_location", "see_analytics", "upload_video")


def _within(limit: int, value: int) -> bool:
    return limit == UNLIMITED or value <= limit


def can_perform(entitlement: Entitlement, action: str) -> bool:
    """Coarse feature check; unknown actions are denied."""
    if action == "create_long_post":
        return entitlement.max_post_length == UNLIMITED or entitlement.max_post_length > FREE.max_post_length
    if action == "multiple_images":
        return entitlement.max_images == UNLIMITED or entitlement.max_images > FREE.max_images
    if action == "use_location":
        return entitlement.allow_location_features
    if action == "see_analytics":
        return entitlement.allow_analytics
    if action == "upload_video":
        return entitlement.max_videos > 0
    return False


def check_post_limits(
    entitlement: Entitlement,
    *,
    text_length: int,
    images: int = 0,
    videos: int = 0,
    video_sizes: tuple[int, ...] = (),
) -> list[dict]:
    """Return the violated limits for a prospective post (empty = allowed)."""
    violations: list[dict] = []
    if not _within(entitlement.max_post_length, text_length):
        violations.append({"limit": "max_post_length", "allowed": entitlement.max_post_length, "requested": text_length})
    if not _within(entitlement.max_images, images):
        violations.append({"limit": "max_images", "allowed": entitlement.max_images, "requested": images})
    if not _within(entitlement.max_videos, videos):
        violations.append({"limit": "max_videos", "allowed": entitlement.max_videos, "requested": videos})
    for size in video_sizes:
        if size > entitlement.max_video_size_bytes:
            violations.append({
                "limit": "max_video_size_bytes",
                "allowed": entitlement.max_video_size_bytes,
                "requested": size,
            })
    return violations
