"""Detection of orders whose delivery date passed without submission."""

import logging
from datetime import UTC, date, datetime

from sqlalchemy.orm import Session

from giftflow.db.models import AdminAlert, AlertSeverity, Order, OrderStatus
from giftflow.services.alert_service import raise_alert

logger = logging.getLogger(__name__)

MISSED_ALERT_TYPE = "missed_delivery_date"

# Statuses that mean the order was picked up or is already settled
_HANDLED_STATUSES = (
    OrderStatus.processing.value,
    OrderStatus.shipped.value,
    OrderStatus.delivered.value,
    OrderStatus.cancelled.value,
    OrderStatus.failed.value,
)


def find_missed_orders(db: Session, today: date | None = None) -> list[Order]:
    """Orders with a past delivery date that never reached processing."""
    today = today or datetime.now(UTC).date()
    return (
        db.query(Order)
        .filter(
            Order.scheduled_delivery_date.is_not(None),
            Order.scheduled_delivery_date < today.isoformat(),
            Order.status.not_in(_HANDLED_STATUSES),
        )
        .order_by(Order.scheduled_delivery_date.asc())
        .all()
    )


def detect_missed_orders(db: Session, today: date | None = None) -> list[AdminAlert]:
    """Raise one critical alert per missed order.

    An order that already has an unresolved missed-delivery alert is not
    alerted again.

    Args:
        db: Database session.
        today: Reference date (defaults to today in UTC).

    Returns:
        Alerts created by this pass.
    """
    created: list[AdminAlert] = []
    for order in find_missed_orders(db, today):
        alert = raise_alert(
            db,
            alert_type=MISSED_ALERT_TYPE,
            severity=AlertSeverity.critical,
            order_id=order.id,
            user_id=order.user_id,
            requires_action=True,
            unique_open=True,
            message=(
                f"Order {order.order_number} was due {order.scheduled_delivery_date} "
                f"but is still '{order.status}'"
            ),
            metadata={
                "scheduled_delivery_date": order.scheduled_delivery_date,
                "status": order.status,
                "funding_status": order.funding_status,
            },
        )
        if alert is not None:
            created.append(alert)
    if created:
        logger.warning("Missed-order detector raised %d alert(s)", len(created))
    return created
