"""Refund request creation.

At most one pending RefundRequest exists per order; the check runs before
the insert.
"""

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from giftflow.db.models import Order, RefundRequest, RefundStatus

logger = logging.getLogger(__name__)


def get_pending_refund(db: Session, order_id: str) -> RefundRequest | None:
    return (
        db.query(RefundRequest)
        .filter(
            RefundRequest.order_id == order_id,
            RefundRequest.status == RefundStatus.pending.value,
        )
        .first()
    )


def request_refund(
    db: Session,
    order: Order,
    reason: str,
    amount_cents: int | None = None,
    refund_type: str = "full",
    metadata: dict[str, Any] | None = None,
) -> RefundRequest | None:
    """Create a pending refund request unless one already exists.

    Args:
        db: Database session.
        order: Order being refunded.
        reason: Why the refund is needed.
        amount_cents: Refund amount; defaults to the order total.
        refund_type: "full" or "partial".
        metadata: Extra context stored as JSON.

    Returns:
        The new RefundRequest, or None if a pending one already existed.
    """
    if get_pending_refund(db, order.id) is not None:
        logger.info("Pending refund already exists for order %s", order.id)
        return None

    refund = RefundRequest(
        order_id=order.id,
        amount_cents=order.total_amount_cents if amount_cents is None else amount_cents,
        reason=reason,
        status=RefundStatus.pending.value,
        refund_type=refund_type,
        metadata_json=json.dumps(metadata) if metadata else None,
    )
    db.add(refund)
    db.commit()
    logger.info(
        "Created %s refund request for order %s (%d cents)",
        refund_type,
        order.id,
        refund.amount_cents,
    )
    return refund
