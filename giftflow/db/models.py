"""SQLAlchemy ORM models for the giftflow order store.

This module defines the durable records of the fulfillment pipeline: the
Order aggregate with its items, the webhook idempotency ledger, refund
requests, admin alerts, cron execution logs, the notification outbox and
the security/rate-limit tables. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class OrderStatus(str, Enum):
    """Status values for gift orders.

    Lifecycle: scheduled -> processing -> shipped -> delivered
               processing -> scheduled (transient revert)
               processing -> requires_attention -> processing (retry)
               scheduled -> failed (blocked or retries exhausted)
               any non-terminal -> cancelled
    """

    pending = "pending"
    scheduled = "scheduled"
    processing = "processing"
    requires_attention = "requires_attention"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    failed = "failed"


class PaymentStatus(str, Enum):
    """Payment states relevant to fulfillment."""

    payment_intent_created = "payment_intent_created"
    succeeded = "succeeded"
    failed = "failed"
    refunded = "refunded"


class DeliveryStatus(str, Enum):
    """Processing state of a webhook event in the idempotency ledger."""

    received = "received"
    completed = "completed"
    failed = "failed"


class RefundStatus(str, Enum):
    """Lifecycle of a refund request: pending -> approved/denied."""

    pending = "pending"
    approved = "approved"
    denied = "denied"


class AlertSeverity(str, Enum):
    """Severity levels for admin alerts and security events."""

    info = "info"
    warning = "warning"
    critical = "critical"


class CronRunStatus(str, Enum):
    """Status values for batch scheduler invocations."""

    running = "running"
    completed = "completed"
    failed = "failed"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Order(Base):
    """Gift order scheduled for future fulfillment.

    The aggregate root of the pipeline. Mutated only by the batch scheduler,
    the webhook processor and the admin action gateway.

    Attributes:
        id: UUID primary key
        order_number: Human-facing order number
        user_id: Purchasing account
        status: Current order status (see OrderStatus)
        payment_status: Payment state (payment_intent_created, succeeded, ...)
        funding_status: Funding state; 'awaiting_funds' blocks processing
        scheduled_delivery_date: Requested delivery date (YYYY-MM-DD)
        payment_intent_id: Capture handle passed to the payment gateway
        fulfillment_request_id: Provider request id, null until submitted
        webhook_token: Nonce minted before submission to authenticate webhooks
        tracking_number: Carrier tracking number once shipped
        estimated_delivery: Provider estimated delivery date
        retry_count: Number of counted retry attempts so far
        retry_reason: Provider error code behind the last retry
        next_retry_at: ISO8601 timestamp before which the order is not retried
        error_classification: Classification type of the last failure
        admin_message: Internal detail for operators, never shown to customers
        notes_json: Versioned typed metadata (see OrderNotes)
        shipping_address_json: Shipping/recipient snapshot taken at checkout
        delivery_groups_json: Ordered recipient/address/item groupings
        has_multiple_recipients: Whether delivery_groups holds several recipients
        total_amount_cents: Order total in cents
        version: Optimistic concurrency counter bumped by every CAS transition
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OrderStatus.scheduled.value
    )
    payment_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    funding_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    scheduled_delivery_date: Mapped[str | None] = mapped_column(
        String(10), nullable=True
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Fulfillment linkage
    fulfillment_request_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    webhook_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    estimated_delivery: Mapped[str | None] = mapped_column(String(50), nullable=True)
    webhook_received_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    retry_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_classification: Mapped[str | None] = mapped_column(
        String(40), nullable=True
    )
    admin_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # JSON blobs stored as text for SQLite compatibility
    notes_json: Mapped[str | None] = mapped_column("notes", Text, nullable=True)
    shipping_address_json: Mapped[str | None] = mapped_column(
        "shipping_address", Text, nullable=True
    )
    delivery_groups_json: Mapped[str | None] = mapped_column(
        "delivery_groups", Text, nullable=True
    )
    has_multiple_recipients: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    gift_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_gift: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    __table_args__ = (
        Index("idx_orders_status", "status"),
        Index("idx_orders_delivery_date", "scheduled_delivery_date"),
        Index("idx_orders_fulfillment_request", "fulfillment_request_id"),
        Index("idx_orders_user", "user_id"),
    )

    @property
    def shipping_address(self) -> dict[str, Any]:
        """Decoded shipping snapshot (empty dict when absent or malformed)."""
        return _load_json(self.shipping_address_json, {})

    @shipping_address.setter
    def shipping_address(self, value: dict[str, Any] | None) -> None:
        self.shipping_address_json = json.dumps(value) if value is not None else None

    @property
    def delivery_groups(self) -> list[dict[str, Any]]:
        """Decoded delivery groups (empty list when absent or malformed)."""
        return _load_json(self.delivery_groups_json, [])

    @delivery_groups.setter
    def delivery_groups(self, value: list[dict[str, Any]] | None) -> None:
        self.delivery_groups_json = json.dumps(value) if value is not None else None

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id!r}, number={self.order_number!r}, "
            f"status={self.status!r})>"
        )


class OrderItem(Base):
    """Line item within a gift order."""

    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recipient_group: Mapped[int | None] = mapped_column(Integer, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (Index("idx_order_items_order_id", "order_id"),)


class UserProfile(Base):
    """Account profile, read as the fallback source of recipient emails."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class WebhookDeliveryLog(Base):
    """Idempotency ledger for provider webhook events.

    Keyed by (event_id, event_type). A row with delivery_status='completed'
    short-circuits any redelivery of the same event.
    """

    __tablename__ = "webhook_delivery_log"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.received.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("event_id", "event_type", name="uq_webhook_event"),
        Index("idx_webhook_delivery_order", "order_id"),
    )


class RefundRequest(Base):
    """Refund awaiting admin approval. At most one pending row per order."""

    __tablename__ = "refund_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.pending.value
    )
    refund_type: Mapped[str] = mapped_column(String(20), nullable=False, default="full")
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_refund_requests_order_status", "order_id", "status"),
    )


class AdminAlert(Base):
    """Escalation record for conditions requiring human attention."""

    __tablename__ = "admin_alerts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    requires_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_admin_alerts_order", "order_id"),
        Index("idx_admin_alerts_type", "alert_type"),
    )


class CronExecutionLog(Base):
    """One row per batch scheduler invocation."""

    __tablename__ = "cron_execution_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    cron_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CronRunStatus.running.value
    )
    started_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    orders_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orders_succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orders_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orders_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    results_json: Mapped[str | None] = mapped_column("results", Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_cron_logs_started_at", "started_at"),)


class NotificationQueueEntry(Base):
    """Outbox row for an email rendered and sent by a separate process."""

    __tablename__ = "email_queue"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    template_variables_json: Mapped[str | None] = mapped_column(
        "template_variables", Text, nullable=True
    )
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")
    scheduled_for: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_email_queue_dedupe_key"),
        Index("idx_email_queue_status", "status"),
    )


class OrderRateLimit(Base):
    """Per-user daily order counter and consecutive failure tally."""

    __tablename__ = "order_rate_limits"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    window_date: Mapped[str] = mapped_column(String(10), nullable=False)
    orders_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )


class CostTrackingEntry(Base):
    """Spend recorded for a successfully submitted order."""

    __tablename__ = "cost_tracking"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_cost_tracking_user_created", "user_id", "created_at"),)


class OrderValidationHash(Base):
    """Fingerprint of a validated submission, used for duplicate detection."""

    __tablename__ = "order_validation_hashes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_validation_hash", "order_hash"),
        Index("idx_validation_user_created", "user_id", "created_at"),
    )


class SecurityEvent(Base):
    """Audit record of a security/rate check outcome."""

    __tablename__ = "security_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    event_data_json: Mapped[str | None] = mapped_column("event_data", Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_security_events_user", "user_id"),)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default
