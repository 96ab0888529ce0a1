"""Error handling framework for giftflow.

This package provides:
- Typed domain exceptions mapped to HTTP status codes by the API routes
- The fulfillment provider error classifier

Classification types:
- payment_required: customer must correct something, never retried
- retryable_system: transient provider/network fault, bounded retries
- account_critical: merchant-account fault, never retried, escalated
- manual_review: unrecognised, never retried, escalated
"""

from giftflow.errors.classification import (
    CLASSIFICATION_RULES,
    Classification,
    ClassificationRule,
    ClassificationType,
    classify,
)
from giftflow.errors.domain import (
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
    WebhookAuthError,
)

__all__ = [
    # Classification
    "Classification",
    "ClassificationRule",
    "ClassificationType",
    "CLASSIFICATION_RULES",
    "classify",
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "WebhookAuthError",
]
