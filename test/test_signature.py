"""
Tests for webhook HMAC signature verification.
"""

import pytest

from dialer.shared.exceptions import WebhookSignatureError
from dialer.telephony.webhooks.signature import compute_signature, verify_webhook_signature

SECRET = "whsec_test"
BODY = b'{"event":"call_ended"}'
NOW = 1_736_157_600


class TestVerifyWebhookSignature:
    """Tests for verify_webhook_signature."""

    def test_valid_signature(self) -> None:
        signature = compute_signature(SECRET, str(NOW), BODY)
        verify_webhook_signature(BODY, signature, str(NOW), SECRET, 300, now=NOW + 10)

    def test_prefixed_signature_and_millisecond_timestamp(self) -> None:
        timestamp = str(NOW * 1000)
        signature = "sha256=" + compute_signature(SECRET, timestamp, BODY)
        verify_webhook_signature(BODY, signature, timestamp, SECRET, 300, now=NOW)

    @pytest.mark.parametrize("signature,timestamp", [(None, str(NOW)), ("abc", None), ("", "")])
    def test_missing_headers(self, signature: str | None, timestamp: str | None) -> None:
        with pytest.raises(WebhookSignatureError, match="Missing"):
            verify_webhook_signature(BODY, signature, timestamp, SECRET, 300, now=NOW)

    def test_malformed_timestamp(self) -> None:
        with pytest.raises(WebhookSignatureError, match="Malformed"):
            verify_webhook_signature(BODY, "abc", "yesterday", SECRET, 300, now=NOW)

    def test_stale_timestamp(self) -> None:
        signature = compute_signature(SECRET, str(NOW), BODY)
        with pytest.raises(WebhookSignatureError, match="tolerance"):
            verify_webhook_signature(BODY, signature, str(NOW), SECRET, 300, now=NOW + 301)

    def test_tampered_body(self) -> None:
        signature = compute_signature(SECRET, str(NOW), BODY)
        with pytest.raises(WebhookSignatureError, match="mismatch"):
            verify_webhook_signature(BODY + b" ", signature, str(NOW), SECRET, 300, now=NOW)

    def test_wrong_secret(self) -> None:
        signature = compute_signature("other", str(NOW), BODY)
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY, signature, str(NOW), SECRET, 300, now=NOW)

    def test_error_maps_to_authentication(self) -> None:
        error = WebhookSignatureError()
        assert error.code == "INVALID_SIGNATURE"
