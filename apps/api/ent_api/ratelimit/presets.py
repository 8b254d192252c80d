"""Named rate limit presets for the platform's write actions."""

from datetime import datetime
from typing import NamedTuple, Optional

from ent_api.ratelimit.store import Decision, RateLimitStore

HOUR = 3600


class RateLimitPreset(NamedTuple):
    limit: int
    window_seconds: int


PRESETS: dict[str, RateLimitPreset] = {
    "post_creation": RateLimitPreset(10, HOUR),
    "comment_creation": RateLimitPreset(30, HOUR),
    "reactions": RateLimitPreset(100, HOUR),
    "follow_actions": RateLimitPreset(50, HOUR),
    "contact_form": RateLimitPreset(3, HOUR),
    "auth_attempts": RateLimitPreset(5, 15 * 60),
    "api_general": RateLimitPreset(100, 60),
    "pack_creation": RateLimitPreset(5, HOUR),
    "place_creation": RateLimitPreset(10, HOUR),
}


def check_rate_limit(
    store: RateLimitStore,
    user_id: str,
    action: str,
    now: Optional[datetime] = None,
) -> Decision:
    """Check-and-increment using the preset registered for ``action``.

    Raises:
        ValueError: No preset for the action
    """
    preset = PRESETS.get(action)
    if preset is None:
        raise ValueError(f"No rate limit preset for action {action!r}")
    return store.check_and_increment(user_id, action, preset.limit, preset.window_seconds, now=now)
