"""Redaction helpers for logging provider payloads and persisting errors.

Webhook tokens, provider API keys and customer contact details must never
reach logs or admin-visible error columns verbatim.
"""

import re
from typing import Any

# Substrings matched case-insensitively against dict keys
SENSITIVE_KEY_PATTERNS = frozenset({
    "api_key",
    "token",
    "secret",
    "password",
    "authorization",
    "credential",
})

# Keys whose value is masked rather than fully redacted
_EMAIL_KEYS = frozenset({"email", "recipient_email"})

_REDACTED = "***REDACTED***"

_KEYWORDS = r"api_key|webhook_token|token|secret|password|authorization|credential"
_SENSITIVE_TEXT = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*(?:Basic|Bearer)\s+\S+"
    r'|"(?:' + _KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|(?:" + _KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def mask_email(value: str) -> str:
    """Mask the local part of an email address (``j***@example.com``)."""
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return _REDACTED
    return f"{local[0]}***@{domain}"


def redact_for_logging(
    obj: Any,
    sensitive_patterns: frozenset[str] = SENSITIVE_KEY_PATTERNS,
) -> Any:
    """Return a copy of obj with sensitive values replaced.

    Args:
        obj: Dict, list or scalar to redact (not mutated).
        sensitive_patterns: Key substrings whose values are redacted.

    Returns:
        Redacted copy. Nested dicts and lists are handled recursively.
    """
    if isinstance(obj, list):
        return [redact_for_logging(item, sensitive_patterns) for item in obj]
    if not isinstance(obj, dict):
        return obj

    result: dict[str, Any] = {}
    for key, value in obj.items():
        key_lower = str(key).lower()
        if any(pattern in key_lower for pattern in sensitive_patterns):
            result[key] = _REDACTED
        elif key_lower in _EMAIL_KEYS and isinstance(value, str):
            result[key] = mask_email(value)
        else:
            result[key] = redact_for_logging(value, sensitive_patterns)
    return result


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Redact credential-looking fragments and truncate for DB persistence.

    Args:
        msg: Error message (None passes through).
        max_length: Maximum stored length.

    Returns:
        Sanitized message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_TEXT.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - 3] + "..."
    return sanitized
