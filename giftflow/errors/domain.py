"""Typed domain exceptions for API error mapping.

Routes catch specific exception types to return appropriate HTTP status
codes instead of matching on message strings.

Usage:
    # In service layer
    raise NotFoundError("Order", order_id)

    # In route handler
    try:
        result = await actions.cancel_order(order_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Action is not allowed in the resource's current state. Maps to HTTP 409."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class WebhookAuthError(DomainError):
    """Webhook token missing or mismatched.

    Attributes:
        status_code: 401 when the token is missing, 403 when it does not match.
    """

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code
