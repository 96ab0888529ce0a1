"""Admin alert creation.

Alerts are durable, queryable requests for human attention. Callers that
must not duplicate an alert (e.g. the missed-order detector) pass
``unique_open=True`` so at most one unresolved alert of a type exists per
order.
"""

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from giftflow.db.models import AdminAlert, AlertSeverity

logger = logging.getLogger(__name__)


def raise_alert(
    db: Session,
    alert_type: str,
    message: str,
    severity: AlertSeverity | str = AlertSeverity.warning,
    order_id: str | None = None,
    user_id: str | None = None,
    requires_action: bool = False,
    metadata: dict[str, Any] | None = None,
    unique_open: bool = False,
) -> AdminAlert | None:
    """Insert an AdminAlert.

    Args:
        db: Database session.
        alert_type: Machine-readable alert kind.
        message: Operator-facing description.
        severity: info, warning or critical.
        order_id: Related order.
        user_id: Related account.
        requires_action: Whether an operator must act.
        metadata: Extra context stored as JSON.
        unique_open: Skip when an unresolved alert of this type already
            exists for the order.

    Returns:
        The created alert, or None when deduplicated.
    """
    severity_value = AlertSeverity(severity).value
    if unique_open and order_id is not None:
        existing = (
            db.query(AdminAlert.id)
            .filter(
                AdminAlert.order_id == order_id,
                AdminAlert.alert_type == alert_type,
                AdminAlert.resolved.is_(False),
            )
            .first()
        )
        if existing is not None:
            return None

    alert = AdminAlert(
        alert_type=alert_type,
        severity=severity_value,
        order_id=order_id,
        user_id=user_id,
        message=message,
        requires_action=requires_action,
        resolved=False,
        metadata_json=json.dumps(metadata) if metadata else None,
    )
    db.add(alert)
    db.commit()

    log = logger.error if severity_value == AlertSeverity.critical.value else logger.warning
    log("Admin alert [%s] %s for order %s: %s", severity_value, alert_type, order_id, message)
    return alert


def list_alerts(db: Session, unresolved_only: bool = False, limit: int = 100) -> list[AdminAlert]:
    """List alerts newest first."""
    query = db.query(AdminAlert)
    if unresolved_only:
        query = query.filter(AdminAlert.resolved.is_(False))
    return query.order_by(AdminAlert.created_at.desc()).limit(limit).all()
