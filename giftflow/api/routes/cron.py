"""Batch scheduler history and manual trigger."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from giftflow.api.dependencies import (
    get_app_config,
    get_fulfillment_client,
    get_payment_gateway,
)
from giftflow.api.schemas import CronExecutionListResponse, CronExecutionResponse
from giftflow.cli.config import GiftflowConfig
from giftflow.db.connection import get_db
from giftflow.db.models import CronExecutionLog
from giftflow.services.batch_scheduler import BatchScheduler
from giftflow.services.fulfillment_client import FulfillmentClient
from giftflow.services.payment_gateway import PaymentGateway
from giftflow.services.security_validator import SecurityValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get("/executions", response_model=CronExecutionListResponse)
def list_executions(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> CronExecutionListResponse:
    """Recent batch runs, newest first."""
    rows = (
        db.query(CronExecutionLog)
        .order_by(CronExecutionLog.started_at.desc())
        .limit(limit)
        .all()
    )
    return CronExecutionListResponse(
        executions=[CronExecutionResponse.model_validate(r) for r in rows],
        total=len(rows),
    )


@router.post("/run")
async def run_batch(
    db: Session = Depends(get_db),
    config: GiftflowConfig = Depends(get_app_config),
    fulfillment: FulfillmentClient = Depends(get_fulfillment_client),
    payments: PaymentGateway = Depends(get_payment_gateway),
) -> dict:
    """Run one batch pass now and return its summary."""
    scheduler = BatchScheduler(
        db,
        fulfillment=fulfillment,
        payments=payments,
        validator=SecurityValidator(db, config.security),
        settings=config.scheduler,
    )
    try:
        summary = await scheduler.run()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Batch run failed: {e}") from e
    return summary.to_dict()
