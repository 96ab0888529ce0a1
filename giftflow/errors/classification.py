"""Fulfillment provider error classification.

Maps opaque provider error codes onto retry and escalation decisions. The
rules are an ordered table of predicate -> Classification templates; the
first matching rule wins. New provider codes are added to the table, not to
control flow.

Both the batch scheduler and the webhook processor route every provider
failure through classify() so the outcome is the same regardless of which
path observed it.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum


class ClassificationType(str, Enum):
    """Failure taxonomy."""

    PAYMENT_REQUIRED = "payment_required"  # customer must fix something
    RETRYABLE_SYSTEM = "retryable_system"  # transient provider/network fault
    ACCOUNT_CRITICAL = "account_critical"  # merchant account problem
    MANUAL_REVIEW = "manual_review"  # unrecognised, needs a human


@dataclass(frozen=True)
class Classification:
    """How a provider failure should be retried, escalated and communicated.

    Attributes:
        type: Failure category.
        should_retry: Whether the order may be retried automatically.
        retry_delay_seconds: Delay before the next attempt.
        max_retries: Upper bound on counted retry attempts.
        use_provider_native_retry: Retry through the provider's own retry
            endpoint instead of resubmitting.
        requires_admin_intervention: Whether an AdminAlert must be raised.
        alert_level: Severity used for alerts (info, warning, critical).
        user_friendly_message: Safe to show to the customer.
        admin_message: Internal detail for operators.
    """

    type: ClassificationType
    should_retry: bool
    retry_delay_seconds: int
    max_retries: int
    use_provider_native_retry: bool
    requires_admin_intervention: bool
    alert_level: str
    user_friendly_message: str
    admin_message: str


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table.

    Attributes:
        name: Rule identifier.
        matches: Predicate over the lowercased (code, message) pair.
        template: Classification returned when the rule matches. Its
            admin_message is a format string receiving code and message.
    """

    name: str
    matches: Callable[[str, str], bool]
    template: Classification


ACCOUNT_FUNDING_CODES = frozenset({
    "insufficient_zma_balance",
    "insufficient_funds",
    "account_balance_insufficient",
    "zma_account_suspended",
})

OVERLOADED_CODES = frozenset({
    "zma_temporarily_overloaded",
    "system_overloaded",
    "too_many_requests",
})

NETWORK_MARKERS = ("timeout", "network", "connection", "unreachable")

CUSTOMER_CODES = frozenset({
    "invalid_request",
    "invalid_json",
    "payment_info_problem",
    "invalid_payment_method",
    "invalid_shipping_address",
    "address_not_found",
    "product_unavailable",
    "out_of_stock",
    "max_price_exceeded",
    "invalid_quantity",
})


def _looks_like_network_failure(code: str, message: str) -> bool:
    # Only this rule falls back to the message when the code is missing
    haystack = code or message
    return any(marker in haystack for marker in NETWORK_MARKERS)


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="account_funding",
        matches=lambda code, _message: code in ACCOUNT_FUNDING_CODES,
        template=Classification(
            type=ClassificationType.ACCOUNT_CRITICAL,
            should_retry=False,
            retry_delay_seconds=0,
            max_retries=0,
            use_provider_native_retry=False,
            requires_admin_intervention=True,
            alert_level="critical",
            user_friendly_message=(
                "We're experiencing a temporary issue processing your order. "
                "Our team has been notified and will resolve it shortly."
            ),
            admin_message=(
                "Fulfillment account funding problem ({code}): {message}. "
                "Top up or reinstate the provider account, then retry."
            ),
        ),
    ),
    ClassificationRule(
        name="internal_error",
        matches=lambda code, _message: code == "internal_error",
        template=Classification(
            type=ClassificationType.RETRYABLE_SYSTEM,
            should_retry=True,
            retry_delay_seconds=7200,
            max_retries=2,
            use_provider_native_retry=False,
            requires_admin_intervention=False,
            alert_level="warning",
            user_friendly_message=(
                "Your order is being processed. We'll update you if anything changes."
            ),
            admin_message="Provider internal error ({code}): {message}. Retrying in 2 hours.",
        ),
    ),
    ClassificationRule(
        name="overloaded",
        matches=lambda code, _message: code in OVERLOADED_CODES,
        template=Classification(
            type=ClassificationType.RETRYABLE_SYSTEM,
            should_retry=True,
            retry_delay_seconds=3600,
            max_retries=3,
            use_provider_native_retry=True,
            requires_admin_intervention=False,
            alert_level="warning",
            user_friendly_message=(
                "Your order is being processed. We'll update you if anything changes."
            ),
            admin_message=(
                "Provider overloaded ({code}): {message}. "
                "Retrying through the provider in 1 hour."
            ),
        ),
    ),
    ClassificationRule(
        name="network",
        matches=_looks_like_network_failure,
        template=Classification(
            type=ClassificationType.RETRYABLE_SYSTEM,
            should_retry=True,
            retry_delay_seconds=1800,
            max_retries=3,
            use_provider_native_retry=False,
            requires_admin_intervention=False,
            alert_level="info",
            user_friendly_message=(
                "Your order is being processed. We'll update you if anything changes."
            ),
            admin_message="Network failure talking to provider ({code}): {message}.",
        ),
    ),
    ClassificationRule(
        name="customer_input",
        matches=lambda code, _message: code in CUSTOMER_CODES,
        template=Classification(
            type=ClassificationType.PAYMENT_REQUIRED,
            should_retry=False,
            retry_delay_seconds=0,
            max_retries=0,
            use_provider_native_retry=False,
            requires_admin_intervention=False,
            alert_level="warning",
            user_friendly_message=(
                "There was a problem with your order details. Please review your "
                "payment method, shipping address and items, then contact support."
            ),
            admin_message="Order rejected for customer-correctable reason ({code}): {message}.",
        ),
    ),
)

FALLBACK_CLASSIFICATION = Classification(
    type=ClassificationType.MANUAL_REVIEW,
    should_retry=False,
    retry_delay_seconds=0,
    max_retries=0,
    use_provider_native_retry=False,
    requires_admin_intervention=True,
    alert_level="critical",
    user_friendly_message=(
        "We're reviewing an issue with your order. Our team will contact you shortly."
    ),
    admin_message="Unrecognised provider error ({code}): {message}. Manual review required.",
)


def classify(code: str | None, message: str | None = None) -> Classification:
    """Classify a fulfillment provider error.

    Total and deterministic: every input, including None, yields a
    classification.

    Args:
        code: Provider error code (e.g. "internal_error").
        message: Provider error message.

    Returns:
        The first matching rule's Classification, with admin_message filled in.
    """
    raw_code = str(code) if code is not None else ""
    raw_message = str(message) if message is not None else ""
    norm_code = raw_code.strip().lower()
    norm_message = raw_message.strip().lower()

    template = FALLBACK_CLASSIFICATION
    for rule in CLASSIFICATION_RULES:
        if rule.matches(norm_code, norm_message):
            template = rule.template
            break

    admin_message = template.admin_message.format(
        code=raw_code or "unknown",
        message=raw_message or "no message",
    )
    return replace(template, admin_message=admin_message)
