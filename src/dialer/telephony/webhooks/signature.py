"""
HMAC verification of inbound webhook requests.

Signature: hex HMAC-SHA256 of "{timestamp}.{raw body}" with the shared secret.
"""

import hashlib
import hmac
import time

from dialer.shared.exceptions import WebhookSignatureError

SIGNATURE_HEADER = "x-webhook-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"

_SIGNATURE_PREFIX = "sha256="
# Larger values are epoch milliseconds
_MS_THRESHOLD = 10**11


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    secret: str,
    tolerance_seconds: int,
    now: float | None = None,
) -> None:
    """Validate signature and timestamp freshness.

    Args:
        body: Raw request body.
        signature: Signature header value, optionally prefixed with "sha256=".
        timestamp: Timestamp header value, epoch seconds or milliseconds.
        secret: Shared secret.
        tolerance_seconds: Maximum accepted clock distance.
        now: Current epoch seconds (tests).

    Raises:
        WebhookSignatureError: On a missing, stale or mismatching signature.
    """
    if not signature or not timestamp:
        raise WebhookSignatureError("Missing webhook signature or timestamp")

    try:
        ts_value = int(timestamp.strip())
    except ValueError as e:
        raise WebhookSignatureError("Malformed webhook timestamp") from e

    ts_seconds = ts_value / 1000 if ts_value > _MS_THRESHOLD else ts_value
    current = time.time() if now is None else now
    if abs(current - ts_seconds) > tolerance_seconds:
        raise WebhookSignatureError("Webhook timestamp outside tolerance window")

    provided = signature.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]

    expected = compute_signature(secret, timestamp.strip(), body)
    if not hmac.compare_digest(provided.lower(), expected):
        raise WebhookSignatureError("Webhook signature mismatch")
