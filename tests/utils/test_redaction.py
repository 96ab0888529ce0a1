"""Tests for log and error redaction helpers."""

from giftflow.utils.redaction import mask_email, redact_for_logging, sanitize_error_message


def test_redacts_sensitive_keys_recursively():
    payload = {
        "request_id": "req-1",
        "webhooks": {"token": "secret-token"},
        "items": [{"api_key": "k"}],
        "shipping_address": {"email": "jane@example.com"},
    }

    redacted = redact_for_logging(payload)

    assert redacted["request_id"] == "req-1"
    assert redacted["webhooks"]["token"] == "***REDACTED***"
    assert redacted["items"][0]["api_key"] == "***REDACTED***"
    assert redacted["shipping_address"]["email"] == "j***@example.com"
    assert payload["webhooks"]["token"] == "secret-token"


def test_mask_email_without_at_sign():
    assert mask_email("not-an-email") == "***REDACTED***"


def test_sanitize_strips_credentials():
    msg = "Request failed: Authorization: Basic a2V5OjE= token=abc123"
    sanitized = sanitize_error_message(msg)
    assert "a2V5OjE=" not in sanitized
    assert "abc123" not in sanitized


def test_sanitize_truncates():
    assert len(sanitize_error_message("x" * 50, max_length=20)) == 20


def test_sanitize_passes_none():
    assert sanitize_error_message(None) is None
