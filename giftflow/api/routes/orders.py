"""Read endpoints for orders and admin alerts."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from giftflow.api.schemas import AlertListResponse, AlertResponse, OrderResponse
from giftflow.db.connection import get_db
from giftflow.db.models import Order
from giftflow.services.alert_service import list_alerts

router = APIRouter(tags=["orders"])


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, db: Session = Depends(get_db)) -> Order:
    """Get a single order by id.

    Raises:
        HTTPException: 404 if the order does not exist.
    """
    order = db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order '{order_id}' not found")
    return order


@router.get("/alerts", response_model=AlertListResponse)
def get_alerts(
    unresolved: bool = Query(False, description="Only unresolved alerts"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> AlertListResponse:
    """List admin alerts, newest first."""
    alerts = list_alerts(db, unresolved_only=unresolved, limit=limit)
    return AlertListResponse(
        alerts=[AlertResponse.model_validate(a) for a in alerts],
        total=len(alerts),
    )
