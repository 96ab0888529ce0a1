"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from giftflow.api.routes import cron, order_actions, orders, webhooks

__all__ = [
    "cron",
    "order_actions",
    "orders",
    "webhooks",
]
