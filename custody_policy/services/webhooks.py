"""Inbound webhook handling for events pushed by the custody platform.

Features:
- HMAC-SHA256 signature over "<timestamp>.<raw body>"
  (X-Ripple-Signature: <hex>, X-Ripple-Timestamp: <unix seconds>)
- Constant-time comparison
- Normalization of the event body into {event, timestamp, data, ...}
"""

import hashlib
import hmac
from datetime import datetime, timezone

SIGNATURE_HEADER = "X-Ripple-Signature"
TIMESTAMP_HEADER = "X-Ripple-Timestamp"


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def sign_webhook_payload(secret: str, timestamp: str, body: bytes) -> str:
    """Return the hex HMAC-SHA256 of b"<timestamp>." + body keyed with secret."""
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: str, timestamp: str | None, body: bytes, signature: str | None
) -> bool:
    if not signature:
        return False
    expected = sign_webhook_payload(secret, timestamp or "", body)
    return hmac.compare_digest(expected, signature.strip().lower())


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_event(
    body: dict, include_metadata: bool = True, include_raw_data: bool = False
) -> dict:
    """Reduce a platform event body to the fields downstream consumers use."""
    event = {
        "event": body.get("event") or body.get("type"),
        "timestamp": body.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        "data": body.get("data") or body.get("payload") or body,
    }
    if include_metadata and body.get("metadata"):
        event["metadata"] = body["metadata"]
    if include_raw_data and body.get("rawData"):
        event["rawData"] = body["rawData"]
    return event
