"""Cron trigger for the batch scheduler.

APScheduler runs one batch pass on a fixed interval inside the API
process. ``max_instances=1`` and ``coalesce=True`` keep runs from
overlapping within a process; overlap across processes is still guarded by
the per-order compare-and-swap lock.
"""

import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from giftflow.cli.config import GiftflowConfig, get_config
from giftflow.db.connection import get_db_context
from giftflow.services.batch_scheduler import BatchScheduler, BatchSummary
from giftflow.services.fulfillment_client import FulfillmentClient
from giftflow.services.payment_gateway import StripePaymentGateway
from giftflow.services.security_validator import SecurityValidator

logger = logging.getLogger(__name__)

BATCH_JOB_ID = "process_scheduled_orders"

job_defaults = {
    "coalesce": True,  # Combine missed runs into one
    "max_instances": 1,  # Never overlap batch runs
    "misfire_grace_time": 300,
}


def build_fulfillment_client(config: GiftflowConfig) -> FulfillmentClient:
    """Create the provider client from configuration."""
    provider = config.provider
    return FulfillmentClient(
        base_url=provider.base_url,
        api_key=provider.api_key,
        retailer=provider.retailer,
        webhook_base_url=provider.webhook_base_url,
        timeout=provider.timeout_seconds,
    )


async def run_scheduled_batch(config: GiftflowConfig | None = None) -> BatchSummary:
    """Run one batch pass in its own database session.

    Args:
        config: Configuration (defaults to the process-wide config).

    Returns:
        BatchSummary of the run.
    """
    config = config or get_config()
    with get_db_context() as db:
        scheduler = BatchScheduler(
            db,
            fulfillment=build_fulfillment_client(config),
            payments=StripePaymentGateway(config.payments.stripe_api_key),
            validator=SecurityValidator(db, config.security),
            settings=config.scheduler,
        )
        return await scheduler.run()


async def run_batch_job() -> None:
    """APScheduler entry point; logs instead of raising."""
    try:
        summary = await run_scheduled_batch()
        logger.info(
            "Scheduled batch %s completed: %d/%d orders submitted",
            summary.execution_id,
            summary.succeeded,
            summary.processed,
        )
    except Exception as e:
        logger.error("Scheduled batch failed: %s", e)


def create_scheduler(config: GiftflowConfig) -> AsyncIOScheduler:
    """Build a scheduler with the batch job registered (not started)."""
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone="UTC",
    )
    scheduler.add_job(
        run_batch_job,
        "interval",
        minutes=config.scheduler.interval_minutes,
        id=BATCH_JOB_ID,
        name="Process scheduled gift orders",
        replace_existing=True,
    )
    return scheduler
