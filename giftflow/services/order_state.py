"""Order state machine and compare-and-swap transitions.

The transition table is data. Every status change made by the batch
scheduler, the webhook processor or the admin action gateway goes through
compare_and_swap(), which issues a conditional UPDATE guarded on the
current status and bumps the optimistic version counter. Zero affected rows
means another actor already moved the order; callers treat that as
"already handled", never as an error.
"""

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from giftflow.db.models import Order, OrderStatus, utc_now_iso

logger = logging.getLogger(__name__)


class InvalidStateTransition(Exception):
    """Raised when attempting an order transition the table does not allow.

    Attributes:
        current_state: The current state of the order.
        attempted_state: The state that was attempted.
        allowed_transitions: Valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: OrderStatus,
        attempted_state: OrderStatus,
        allowed_transitions: list[OrderStatus],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state.value}' to '{attempted_state.value}'. "
            f"Allowed transitions: {allowed_str}"
        )


# Valid state transitions for the order lifecycle
VALID_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.pending: [
        OrderStatus.scheduled,
        OrderStatus.processing,
        OrderStatus.failed,
        OrderStatus.cancelled,
    ],
    OrderStatus.scheduled: [
        OrderStatus.processing,
        OrderStatus.failed,
        OrderStatus.cancelled,
    ],
    OrderStatus.processing: [
        OrderStatus.scheduled,  # transient revert, not a counted retry
        OrderStatus.requires_attention,
        OrderStatus.shipped,
        OrderStatus.delivered,
        OrderStatus.failed,
        OrderStatus.cancelled,
    ],
    OrderStatus.requires_attention: [
        OrderStatus.processing,
        OrderStatus.scheduled,
        OrderStatus.failed,
        OrderStatus.cancelled,
    ],
    OrderStatus.shipped: [
        OrderStatus.delivered,
        OrderStatus.requires_attention,
        OrderStatus.cancelled,
    ],
    # Re-opened only by an explicit operator retry
    OrderStatus.failed: [OrderStatus.processing, OrderStatus.cancelled],
    OrderStatus.delivered: [],  # terminal
    OrderStatus.cancelled: [],  # terminal
}

TERMINAL_STATES = frozenset({
    OrderStatus.delivered,
    OrderStatus.cancelled,
    OrderStatus.failed,
})


def can_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    """Check if a state transition is valid.

    Args:
        current: The current order status.
        target: The target order status.

    Returns:
        True if the transition is valid, False otherwise (including unknown
        status strings).
    """
    try:
        current_status = OrderStatus(current)
        target_status = OrderStatus(target)
    except ValueError:
        return False
    return target_status in VALID_TRANSITIONS.get(current_status, [])


def ensure_transition(current: OrderStatus | str, target: OrderStatus | str) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        current_status = OrderStatus(current)
        raise InvalidStateTransition(
            current_state=current_status,
            attempted_state=OrderStatus(target),
            allowed_transitions=VALID_TRANSITIONS.get(current_status, []),
        )


def compare_and_swap(
    db: Session,
    order_id: str,
    from_status: OrderStatus | str,
    to_status: OrderStatus | str,
    **fields: Any,
) -> bool:
    """Atomically move an order from one status to another.

    Issues ``UPDATE orders SET status=:to, version=version+1, ... WHERE
    id=:id AND status=:from``. Commits on success together with any pending
    session changes; rolls them back when the swap loses.

    Args:
        db: Database session.
        order_id: Order to transition.
        from_status: Status the row must currently hold.
        to_status: Status to set.
        **fields: Additional Order columns to set in the same statement.

    Returns:
        True if exactly one row changed, False if the order was not in
        from_status (already handled by another actor).

    Raises:
        InvalidStateTransition: If from_status -> to_status is not in the table.
    """
    ensure_transition(from_status, to_status)
    from_value = OrderStatus(from_status).value
    to_value = OrderStatus(to_status).value

    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == from_value)
        .values(
            status=to_value,
            version=Order.version + 1,
            updated_at=utc_now_iso(),
            **fields,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        # Discard pending changes made for the lost transition
        db.rollback()
        logger.info(
            "Order %s not in '%s'; transition to '%s' already handled",
            order_id,
            from_value,
            to_value,
        )
        return False
    db.commit()

    # Refresh any loaded instance so callers see the new row
    order = db.get(Order, order_id)
    if order is not None:
        db.refresh(order)
    return True


def transition(
    db: Session,
    order: Order,
    to_status: OrderStatus | str,
    **fields: Any,
) -> bool:
    """Compare-and-swap from the order's currently loaded status.

    Same-status requests only apply the extra fields (no version bump).

    Args:
        db: Database session.
        order: Loaded order instance.
        to_status: Target status.
        **fields: Additional columns to set.

    Returns:
        True if the order now holds to_status with fields applied.
    """
    if OrderStatus(order.status) == OrderStatus(to_status):
        for key, value in fields.items():
            setattr(order, key, value)
        db.commit()
        return True
    return compare_and_swap(db, order.id, order.status, to_status, **fields)
