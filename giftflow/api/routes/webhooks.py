"""Fulfillment provider webhook endpoint.

The provider calls ``/api/webhooks/fulfillment/{event_type}`` (or the bare
path with the type in the body) with ``orderId`` and ``token`` query
parameters minted at submission time.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from giftflow.api.dependencies import get_app_config
from giftflow.cli.config import GiftflowConfig
from giftflow.db.connection import get_db
from giftflow.errors import NotFoundError, WebhookAuthError
from giftflow.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_processor(
    db: Session = Depends(get_db),
    config: GiftflowConfig = Depends(get_app_config),
) -> WebhookProcessor:
    """Dependency to get WebhookProcessor instance."""
    return WebhookProcessor(db, notifications=config.notifications)


def _receive(
    processor: WebhookProcessor,
    payload: dict[str, Any],
    event_type: str | None,
    order_id: str | None,
    token: str | None,
) -> JSONResponse:
    try:
        outcome = processor.handle(
            payload, path_event_type=event_type, order_id=order_id, token=token
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except WebhookAuthError as e:
        logger.warning("Webhook rejected for order %s: %s", order_id, e)
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/fulfillment")
def receive_webhook(
    payload: dict[str, Any] = Body(...),
    order_id: str | None = Query(None, alias="orderId"),
    token: str | None = Query(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Receive a webhook whose event type is carried in the body."""
    return _receive(processor, payload, None, order_id, token)


@router.post("/fulfillment/{event_type}")
def receive_typed_webhook(
    event_type: str,
    payload: dict[str, Any] = Body(...),
    order_id: str | None = Query(None, alias="orderId"),
    token: str | None = Query(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Receive a webhook whose event type is the last path segment."""
    return _receive(processor, payload, event_type, order_id, token)
