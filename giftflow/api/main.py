"""FastAPI application for the giftflow API.

Provides the main application instance with routers, middleware and
exception handlers configured. The lifespan creates the schema and starts
the in-process batch cron when ``scheduler.enabled`` is set.
"""

import logging
import os
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from typing import Any

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("giftflow").setLevel(logging.INFO)
from fastapi.responses import JSONResponse
from sqlalchemy import text

from giftflow.api.middleware.auth import maybe_require_api_key, validate_api_key_strength
from giftflow.api.routes import cron, order_actions, orders, webhooks
from giftflow.cli.config import get_config
from giftflow.db.connection import close_db, get_db_context, init_db
from giftflow.errors import ConflictError, DomainError, NotFoundError
from giftflow.services.cron import create_scheduler

logger = logging.getLogger(__name__)

# Module-level state for the health endpoint
_startup_time: float = 0.0
_scheduler = None  # Set by lifespan when the cron is enabled


def _cron_disabled_by_env() -> bool:
    return os.environ.get("GIFTFLOW_DISABLE_CRON", "").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema setup, cron start, and shutdown cleanup."""
    global _startup_time, _scheduler

    # --- Startup ---
    _startup_time = _time.time()
    validate_api_key_strength()
    init_db()

    config = get_config()
    if config.scheduler.enabled and not _cron_disabled_by_env():
        _scheduler = create_scheduler(config)
        _scheduler.start()
        logger.info(
            "Batch cron started (every %d minute(s))", config.scheduler.interval_minutes
        )
    else:
        logger.info("Batch cron disabled")

    yield

    # --- Shutdown ---
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    close_db()


app = FastAPI(
    title="giftflow API",
    description="Scheduled gift order fulfillment pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

# Optional API auth for /api/* when GIFTFLOW_API_KEY is configured.
app.middleware("http")(maybe_require_api_key)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map uncaught domain errors to status codes with a consistent body."""
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    else:
        status_code = getattr(exc, "status_code", 400)
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


# Include routers
app.include_router(webhooks.router, prefix="/api")
app.include_router(order_actions.router, prefix="/api")
app.include_router(orders.router, prefix="/api")
app.include_router(cron.router, prefix="/api")


@app.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint with database and cron status."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0

    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.warning("Health check database probe failed: %s", e)
        database = "error"

    # Version from package metadata (matches pyproject.toml)
    try:
        version = _pkg_version("giftflow")
    except PackageNotFoundError:
        version = "unknown"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "version": version,
        "uptime_seconds": uptime,
        "database": database,
        "cron_active": _scheduler is not None and _scheduler.running,
    }
