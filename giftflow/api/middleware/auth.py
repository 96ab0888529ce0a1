"""Optional API-key auth middleware for the admin API.

When GIFTFLOW_API_KEY is set, every ``/api/`` request must carry a matching
``X-API-Key`` header. The webhook endpoint is exempt: provider callbacks
authenticate with the per-order webhook token instead.
"""

from __future__ import annotations

import hmac
import logging
import os

from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/webhooks/",
)

_MIN_API_KEY_LENGTH = 32


def validate_api_key_strength() -> None:
    """Validate that the configured API key meets minimum strength requirements.

    Called at startup. Raises ValueError if key is set but too short.

    Raises:
        ValueError: If GIFTFLOW_API_KEY is set but shorter than 32 characters.
    """
    key = get_expected_api_key()
    if key and len(key) < _MIN_API_KEY_LENGTH:
        raise ValueError(
            f"GIFTFLOW_API_KEY is too short ({len(key)} chars). "
            f"Minimum length is {_MIN_API_KEY_LENGTH} characters for security."
        )


def get_expected_api_key() -> str:
    """Return configured API key; empty string means auth disabled."""
    return os.environ.get("GIFTFLOW_API_KEY", "").strip()


def _is_public_path(path: str) -> bool:
    return path.startswith(_PUBLIC_PATH_PREFIXES)


def should_authenticate(path: str) -> bool:
    """Return True when this path should be protected by API-key auth."""
    if _is_public_path(path):
        return False
    return path.startswith("/api/")


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for optional API-key auth."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected_key = get_expected_api_key()
    if not expected_key or not should_authenticate(request.url.path):
        return await call_next(request)

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        client = request.client.host if request.client else "unknown"
        logger.warning("Rejected API request to %s from %s", request.url.path, client)
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"},
        )
    return await call_next(request)
