"""Webhook signature verification (processor HMAC-SHA256 scheme).

Header format: ``t=<unix seconds>,v1=<hex digest>[,v1=<hex digest>...]``
Signed payload: ``"<t>." + raw body`` with the shared endpoint secret.
Any v1 entry may match (secret rotation sends several).
"""

import hashlib
import hmac
import time
from typing import Optional

from ent_api.billing.errors import SignatureInvalid

DEFAULT_TOLERANCE_SECONDS = 300


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureInvalid("Signature header timestamp is not an integer")
        elif key == "v1":
            signatures.append(value)
    if timestamp is None:
        raise SignatureInvalid("Signature header has no timestamp")
    if not signatures:
        raise SignatureInvalid("Signature header has no v1 signature")
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = str(timestamp).encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a header value the way the processor does (used by tests and tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, payload)}"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """Verify a webhook signature header against the raw body.

    Returns:
        The signed timestamp

    Raises:
        SignatureInvalid: On any mismatch (constant-time compare)
    """
    if not header:
        raise SignatureInvalid("Missing signature header")

    timestamp, signatures = _parse_header(header)
    expected = compute_signature(secret, timestamp, payload)

    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalid("No signature matches the expected HMAC-SHA256 digest")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise SignatureInvalid("Signature timestamp outside the tolerance window")

    return timestamp
