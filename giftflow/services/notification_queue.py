"""Durable notification outbox.

The pipeline only enqueues email requests; a separate process renders and
sends them. Rows carrying a dedupe key are unique, which backs the
one-notification-per-webhook-event guarantee.
"""

import json
import logging
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from giftflow.db.models import (
    NotificationQueueEntry,
    Order,
    UserProfile,
    utc_now_iso,
)
from giftflow.utils.redaction import mask_email

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Email templates the pipeline can request."""

    order_submitted = "order_submitted"
    order_shipped = "order_shipped"
    order_delivered = "order_delivered"
    order_failed = "order_failed"
    order_cancelled = "order_cancelled"
    refund_approval_required = "refund_approval_required"


def enqueue_notification(
    db: Session,
    recipient_email: str,
    event_type: NotificationType | str,
    template_variables: dict[str, Any] | None = None,
    recipient_name: str | None = None,
    order_id: str | None = None,
    priority: str = "normal",
    scheduled_for: str | None = None,
    dedupe_key: str | None = None,
) -> NotificationQueueEntry | None:
    """Add an email request to the outbox.

    Args:
        db: Database session for persistence.
        recipient_email: Destination address.
        event_type: Template identifier.
        template_variables: Values for the template.
        recipient_name: Display name.
        order_id: Related order.
        priority: "low", "normal" or "high".
        scheduled_for: ISO8601 send-after time (defaults to now).
        dedupe_key: Optional uniqueness key.

    Returns:
        The created entry, or None when dedupe_key was already enqueued.
    """
    if dedupe_key is not None:
        existing = (
            db.query(NotificationQueueEntry.id)
            .filter(NotificationQueueEntry.dedupe_key == dedupe_key)
            .first()
        )
        if existing is not None:
            logger.info("Notification %s already enqueued; skipping", dedupe_key)
            return None

    entry = NotificationQueueEntry(
        order_id=order_id,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        event_type=NotificationType(event_type).value,
        template_variables_json=json.dumps(template_variables or {}),
        priority=priority,
        scheduled_for=scheduled_for or utc_now_iso(),
        status="pending",
        dedupe_key=dedupe_key,
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        db.rollback()
        logger.info("Notification %s enqueued concurrently; skipping", dedupe_key)
        return None
    return entry


def resolve_recipient(db: Session, order: Order) -> tuple[str | None, str | None]:
    """Find the (email, name) to notify about an order's delivery.

    Uses the shipping snapshot first (gift recipient), then falls back to
    the purchaser's account profile.
    """
    snapshot = order.shipping_address
    email = snapshot.get("email") or snapshot.get("recipient_email")
    name = snapshot.get("name") or snapshot.get("recipient_name")
    if email:
        return email, name

    profile = db.get(UserProfile, order.user_id)
    if profile is not None and profile.email:
        return profile.email, name or profile.name
    logger.warning("No recipient email for order %s", order.id)
    return None, name


def purchaser_contact(db: Session, order: Order) -> tuple[str | None, str | None]:
    """Find the purchaser's (email, name) from the account profile."""
    profile = db.get(UserProfile, order.user_id)
    if profile is None or not profile.email:
        return None, None
    return profile.email, profile.name


def notify_order(
    db: Session,
    order: Order,
    event_type: NotificationType,
    template_variables: dict[str, Any] | None = None,
    dedupe_key: str | None = None,
    to_purchaser: bool = False,
    priority: str = "normal",
) -> NotificationQueueEntry | None:
    """Enqueue an order notification, resolving the recipient.

    Returns:
        The created entry, or None if no recipient was found or the dedupe
        key was already used.
    """
    if to_purchaser:
        email, name = purchaser_contact(db, order)
    else:
        email, name = resolve_recipient(db, order)
    if not email:
        return None

    variables = {"order_number": order.order_number, "order_id": order.id}
    variables.update(template_variables or {})
    entry = enqueue_notification(
        db,
        recipient_email=email,
        recipient_name=name,
        event_type=event_type,
        template_variables=variables,
        order_id=order.id,
        priority=priority,
        dedupe_key=dedupe_key,
    )
    if entry is not None:
        logger.info(
            "Enqueued %s notification for order %s to %s",
            NotificationType(event_type).value,
            order.id,
            mask_email(email),
        )
    return entry
