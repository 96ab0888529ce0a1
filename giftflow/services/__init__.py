"""Service layer for giftflow.

Provides the order state machine, the batch scheduler, webhook ingestion
and the admin action gateway, plus the outbox, alert and refund helpers
they share.
"""

from giftflow.services.batch_scheduler import BatchScheduler, BatchSummary, OrderResult
from giftflow.services.errors import FulfillmentProviderError, PaymentCaptureError
from giftflow.services.order_actions import OrderAction, OrderActions
from giftflow.services.order_state import (
    InvalidStateTransition,
    compare_and_swap,
    transition,
)
from giftflow.services.security_validator import SecurityCheckResult, SecurityValidator
from giftflow.services.webhook_processor import WebhookOutcome, WebhookProcessor

__all__ = [
    "BatchScheduler",
    "BatchSummary",
    "OrderResult",
    "FulfillmentProviderError",
    "PaymentCaptureError",
    "OrderAction",
    "OrderActions",
    "InvalidStateTransition",
    "compare_and_swap",
    "transition",
    "SecurityCheckResult",
    "SecurityValidator",
    "WebhookOutcome",
    "WebhookProcessor",
]
