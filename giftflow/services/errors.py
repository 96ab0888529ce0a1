"""Shared service-layer error types.

Centralised here to avoid circular imports between service modules.
"""

from dataclasses import dataclass
from typing import Any


@dataclass
class FulfillmentProviderError(Exception):
    """Error from the fulfillment provider or the transport to it.

    Attributes:
        code: Provider error code (e.g. "internal_error"), or a transport code
            ("request_timeout", "network_error", "http_<status>").
        message: Human-readable error message
        status_code: HTTP status code when one was received
        data: Raw error payload
    """

    code: str
    message: str
    status_code: int | None = None
    data: dict[str, Any] | None = None

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


@dataclass
class PaymentCaptureError(Exception):
    """Payment capture failed for an order.

    Attributes:
        payment_intent_id: Capture handle that failed
        message: Human-readable error message
        code: Gateway decline or error code when available
    """

    payment_intent_id: str | None
    message: str
    code: str | None = None

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code or 'capture_failed'}] {self.message}"
