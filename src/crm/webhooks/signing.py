"""Webhook secrets and HMAC-SHA256 payload signatures.

Signature header format: ``t=<unix ts>,v1=<hex hmac of "<ts>.<payload>">``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time

SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def compute_signature(payload: str, secret: str, timestamp: int) -> str:
    message = f"{timestamp}.{payload}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_payload(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Build the ``X-Webhook-Signature`` header value for ``payload``."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


def verify_signature(
    payload: str,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: int | None = None,
) -> bool:
    """Check a signature header the way a subscriber would."""
    parts = dict(item.split("=", 1) for item in header.split(",") if "=" in item)
    try:
        timestamp = int(parts["t"])
        received = parts["v1"]
    except (KeyError, ValueError):
        return False

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False
    return hmac.compare_digest(received, compute_signature(payload, secret, timestamp))
