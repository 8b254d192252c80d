"""Utility functions and helpers."""

from ent_api.utils.logging import JSONFormatter, configure_json_logging
from ent_api.utils.sanitize import payload_digest, sanitize_obj, sanitize_str
from ent_api.utils.timeutil import as_utc, from_unix, utcnow

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "payload_digest",
    "sanitize_obj",
    "sanitize_str",
    "as_utc",
    "from_unix",
    "utcnow",
]
