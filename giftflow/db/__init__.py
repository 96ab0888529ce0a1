"""Database module for giftflow order state and persistence."""

from giftflow.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from giftflow.db.models import (
    AdminAlert,
    AlertSeverity,
    CostTrackingEntry,
    CronExecutionLog,
    CronRunStatus,
    DeliveryStatus,
    NotificationQueueEntry,
    Order,
    OrderItem,
    OrderRateLimit,
    OrderStatus,
    OrderValidationHash,
    PaymentStatus,
    RefundRequest,
    RefundStatus,
    SecurityEvent,
    UserProfile,
    WebhookDeliveryLog,
)

__all__ = [
    # Models
    "Order",
    "OrderItem",
    "UserProfile",
    "WebhookDeliveryLog",
    "RefundRequest",
    "AdminAlert",
    "CronExecutionLog",
    "NotificationQueueEntry",
    "OrderRateLimit",
    "CostTrackingEntry",
    "OrderValidationHash",
    "SecurityEvent",
    # Enums
    "OrderStatus",
    "PaymentStatus",
    "DeliveryStatus",
    "RefundStatus",
    "AlertSeverity",
    "CronRunStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
