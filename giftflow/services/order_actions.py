"""Admin action gateway.

Synchronous operator/user actions that reuse the fulfillment client and
apply the same state transitions as the webhook path:

- retry_with_fulfillment_provider: native provider retry
- abort_order: required provider abort, then local cancellation
- cancel_order: best-effort provider abort, then local cancellation
- check_order_status: local state plus live provider status
"""

import logging
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from giftflow.db.models import Order, OrderStatus, PaymentStatus, utc_now_iso
from giftflow.errors.domain import ConflictError, NotFoundError, ValidationError
from giftflow.services.errors import FulfillmentProviderError
from giftflow.services.fulfillment_client import FulfillmentClient
from giftflow.services.order_notes import append_audit_note, merge_notes
from giftflow.services.order_state import can_transition, compare_and_swap, transition
from giftflow.services.refund_service import request_refund

logger = logging.getLogger(__name__)

# Statuses from which an order may be cancelled or aborted
CANCELLABLE_STATUSES = frozenset({
    OrderStatus.pending.value,
    OrderStatus.scheduled.value,
    OrderStatus.processing.value,
    OrderStatus.requires_attention.value,
    OrderStatus.failed.value,
})

DEFAULT_CANCELLATION_REASON = "User cancelled"


class OrderAction(str, Enum):
    """Actions accepted by the gateway."""

    retry_with_fulfillment_provider = "retry_with_fulfillment_provider"
    abort_order = "abort_order"
    cancel_order = "cancel_order"
    check_order_status = "check_order_status"


def can_cancel(order: Order) -> bool:
    """Whether the order's current status allows cancellation."""
    return order.status in CANCELLABLE_STATUSES


class OrderActions:
    """Executes admin actions against one database session.

    Attributes:
        db: SQLAlchemy session.
        fulfillment: Provider client.
    """

    def __init__(self, db: Session, fulfillment: FulfillmentClient) -> None:
        self.db = db
        self.fulfillment = fulfillment

    async def perform(
        self,
        action: OrderAction | str,
        order_id: str,
        cancellation_reason: str | None = None,
    ) -> dict[str, Any]:
        """Dispatch an action by name.

        Raises:
            ValidationError: Unknown action.
            NotFoundError: Order does not exist.
            ConflictError: Action not allowed in the order's state.
            FulfillmentProviderError: A required provider call failed.
        """
        try:
            parsed = OrderAction(action)
        except ValueError as e:
            raise ValidationError(f"Unknown action: {action}") from e

        if parsed == OrderAction.retry_with_fulfillment_provider:
            return await self.retry_with_fulfillment_provider(order_id)
        if parsed == OrderAction.abort_order:
            return await self.abort_order(order_id, cancellation_reason)
        if parsed == OrderAction.cancel_order:
            return await self.cancel_order(order_id, cancellation_reason)
        return await self.check_order_status(order_id)

    def _get_order(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def retry_with_fulfillment_provider(self, order_id: str) -> dict[str, Any]:
        """Retry through the provider's native retry endpoint.

        Replaces the stored request id with the one returned, increments
        retry_count and moves the order to processing. Re-opens failed
        orders.
        """
        order = self._get_order(order_id)
        if not order.fulfillment_request_id:
            raise ConflictError(
                f"Order {order.order_number} has no fulfillment request to retry"
            )
        if order.status != OrderStatus.processing.value and not can_transition(
            order.status, OrderStatus.processing
        ):
            raise ConflictError(
                f"Order {order.order_number} cannot be retried from status '{order.status}'"
            )

        previous_id = order.fulfillment_request_id
        try:
            result = await self.fulfillment.retry_order(previous_id)
        except FulfillmentProviderError as e:
            logger.warning("Native retry failed for order %s: %s", order_id, e)
            append_audit_note(order, f"Native provider retry failed: {e}", author="admin")
            self.db.commit()
            raise

        merge_notes(order, provider_status="retry_submitted")
        append_audit_note(
            order,
            f"Native provider retry submitted; request {previous_id} -> {result.request_id}",
            author="admin",
        )
        moved = transition(
            self.db,
            order,
            OrderStatus.processing,
            fulfillment_request_id=result.request_id,
            retry_count=order.retry_count + 1,
            next_retry_at=None,
        )
        if not moved:
            raise ConflictError(f"Order {order.order_number} changed state during retry")

        logger.info("Order %s retried natively as %s", order_id, result.request_id)
        return {
            "success": True,
            "message": "Order retry submitted to fulfillment provider",
            "orderId": order_id,
            "previousRequestId": previous_id,
            "newRequestId": result.request_id,
            "retryCount": order.retry_count,
        }

    async def abort_order(self, order_id: str, reason: str | None = None) -> dict[str, Any]:
        """Abort at the provider, then cancel locally.

        The provider call is required: if it fails, the order is left as is.
        """
        order = self._get_order(order_id)
        self._require_cancellable(order)
        if not order.fulfillment_request_id:
            raise ConflictError(
                f"Order {order.order_number} has not been submitted to the fulfillment provider"
            )

        await self.fulfillment.abort_order(order.fulfillment_request_id)
        result = self._apply_cancellation(
            order, reason or "Aborted by admin", provider_aborted=True
        )
        result["message"] = "Order aborted successfully"
        return result

    async def cancel_order(self, order_id: str, reason: str | None = None) -> dict[str, Any]:
        """Cancel locally, attempting a best-effort provider abort first."""
        order = self._get_order(order_id)
        self._require_cancellable(order)

        provider_aborted = False
        provider_attempted = bool(order.fulfillment_request_id)
        if provider_attempted:
            try:
                await self.fulfillment.abort_order(order.fulfillment_request_id)
                provider_aborted = True
            except FulfillmentProviderError as e:
                logger.warning(
                    "Provider abort failed for order %s; cancelling locally: %s", order_id, e
                )

        result = self._apply_cancellation(
            order, reason or DEFAULT_CANCELLATION_REASON, provider_aborted=provider_aborted
        )
        result["providerCancellation"] = (
            "successful" if provider_aborted
            else "failed" if provider_attempted
            else "not_attempted"
        )
        return result

    def _require_cancellable(self, order: Order) -> None:
        if not can_cancel(order):
            raise ConflictError(
                f"Order {order.order_number} cannot be cancelled in status '{order.status}'"
            )

    def _apply_cancellation(
        self,
        order: Order,
        reason: str,
        provider_aborted: bool,
    ) -> dict[str, Any]:
        from_status = order.status
        merge_notes(
            order,
            cancellation_reason=reason,
            cancelled_at=utc_now_iso(),
            provider_status="cancelled" if provider_aborted else None,
            awaiting_provider_refund=provider_aborted or None,
        )
        append_audit_note(order, f"Order cancelled: {reason}", author="admin")
        if not compare_and_swap(self.db, order.id, from_status, OrderStatus.cancelled):
            raise ConflictError(f"Order {order.order_number} changed state during cancellation")

        refund = None
        if order.payment_status == PaymentStatus.succeeded.value:
            refund = request_refund(self.db, order, reason=reason, refund_type="full")

        logger.info("Order %s cancelled (%s)", order.id, reason)
        return {
            "success": True,
            "message": "Order cancelled successfully",
            "orderId": order.id,
            "status": order.status,
            "refundInitiated": refund is not None,
            "refundRequestId": refund.id if refund is not None else None,
        }

    async def check_order_status(self, order_id: str) -> dict[str, Any]:
        """Local state plus live provider status when a request id exists.

        A provider failure here is reported in the response, not raised.
        """
        order = self._get_order(order_id)
        provider_status: dict[str, Any] | None = None
        provider_error: str | None = None
        if order.fulfillment_request_id:
            try:
                provider_status = await self.fulfillment.get_order_status(
                    order.fulfillment_request_id
                )
            except FulfillmentProviderError as e:
                logger.warning("Live status check failed for order %s: %s", order_id, e)
                provider_error = str(e)

        return {
            "success": True,
            "message": "Order status retrieved",
            "orderId": order.id,
            "orderNumber": order.order_number,
            "orderStatus": order.status,
            "fulfillmentRequestId": order.fulfillment_request_id,
            "trackingNumber": order.tracking_number,
            "retryCount": order.retry_count,
            "nextRetryAt": order.next_retry_at,
            "canCancel": can_cancel(order),
            "lastUpdated": order.updated_at,
            "providerStatus": provider_status,
            "providerError": provider_error,
        }
