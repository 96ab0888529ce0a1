"""Shared test helpers."""

from datetime import UTC, datetime, timedelta

PURCHASER_ID = "user-1"


def days_from_today(days: int) -> str:
    """ISO date relative to today in UTC."""
    return (datetime.now(UTC).date() + timedelta(days=days)).isoformat()
