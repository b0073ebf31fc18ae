from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DELIVERY_ID_HEADER = "X-Webhook-ID"

SECRET_PREFIX = "whsec_"


def generate_webhook_secret() -> str:
    raw = os.urandom(24)
    return SECRET_PREFIX + base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def compute_signature(*, secret: str, timestamp: int, body: bytes) -> str:
    signed = str(timestamp).encode("ascii") + b"." + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def build_signature_header(*, secret: str, timestamp: int, body: bytes) -> str:
    return f"t={timestamp},v1={compute_signature(secret=secret, timestamp=timestamp, body=body)}"


def parse_signature_header(value: str) -> tuple[int, list[str]] | None:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in value.split(","):
        key, _, item = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(item)
            except ValueError:
                return None
        elif key == "v1" and item:
            signatures.append(item)
    if timestamp is None or not signatures:
        return None
    return timestamp, signatures


def verify_webhook_signature(
    *,
    body: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Receiver-side check of an `X-Webhook-Signature` header against the raw body."""
    parsed = parse_signature_header(header or "")
    if parsed is None:
        return False
    timestamp, signatures = parsed

    current = int(time.time() if now is None else now)
    if abs(current - timestamp) > tolerance_seconds:
        return False

    expected = compute_signature(secret=secret, timestamp=timestamp, body=body).encode("ascii")
    return any(hmac.compare_digest(expected, sig.encode("ascii", errors="replace")) for sig in signatures)
