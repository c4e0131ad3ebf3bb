"""
Request authentication helpers for CRM ingress and the admin API.
"""
import hashlib
import hmac
import time
from typing import Optional


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_signature(body: bytes, timestamp: str, secret: str) -> str:
    """Hex HMAC-SHA256 over "{timestamp}.{body}"."""
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_hmac_signature(
    body: bytes,
    signature: str,
    timestamp: str,
    secret: str,
    max_age_seconds: int = 300,
    now_ms: Optional[int] = None,
) -> bool:
    """
    Verify a CRM webhook signature.

    The timestamp is epoch milliseconds. Requests older than max_age_seconds,
    or stamped further than that into the future, are rejected before the
    signature is even compared.
    """
    try:
        ts_ms = int(timestamp)
    except (TypeError, ValueError):
        return False

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if abs(now_ms - ts_ms) > max_age_seconds * 1000:
        return False

    expected = compute_hmac_signature(body, timestamp, secret)
    return constant_time_equals(signature.lower(), expected)
