"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the giftflow REST API:
admin actions, order and alert reads, and cron execution history.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _parse_json_text(v: str | dict | list | None) -> Any:
    """Parse a JSON column stored as text in SQLite."""
    if v is None or not isinstance(v, str):
        return v
    try:
        return json.loads(v)
    except (json.JSONDecodeError, TypeError):
        return None


# Admin actions


class OrderActionRequest(BaseModel):
    """Request schema for POST /api/orders/actions."""

    action: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1, alias="orderId")
    cancellation_reason: str | None = Field(
        None, max_length=500, alias="cancellationReason"
    )

    model_config = ConfigDict(populate_by_name=True)


# Orders


class OrderItemResponse(BaseModel):
    """Response schema for an order line item."""

    product_id: str
    quantity: int
    unit_price_cents: int
    recipient_group: int | None = None

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Response schema for an order (webhook token omitted)."""

    id: str
    order_number: str
    user_id: str
    status: str
    payment_status: str | None
    funding_status: str | None
    scheduled_delivery_date: str | None
    fulfillment_request_id: str | None
    tracking_number: str | None
    estimated_delivery: str | None
    retry_count: int
    retry_reason: str | None
    next_retry_at: str | None
    error_classification: str | None
    has_multiple_recipients: bool
    total_amount_cents: int
    version: int
    notes: dict | None = Field(None, validation_alias="notes_json")
    items: list[OrderItemResponse] = []
    created_at: str
    updated_at: str

    @field_validator("notes", mode="before")
    @classmethod
    def _parse_notes(cls, v: str | dict | None) -> dict | None:
        parsed = _parse_json_text(v)
        return parsed if isinstance(parsed, dict) else None

    model_config = ConfigDict(from_attributes=True)


# Alerts


class AlertResponse(BaseModel):
    """Response schema for an admin alert."""

    id: str
    alert_type: str
    severity: str
    order_id: str | None
    user_id: str | None
    message: str
    requires_action: bool
    resolved: bool
    metadata: dict | None = Field(None, validation_alias="metadata_json")
    created_at: str

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, v: str | dict | None) -> dict | None:
        parsed = _parse_json_text(v)
        return parsed if isinstance(parsed, dict) else None

    model_config = ConfigDict(from_attributes=True)


class AlertListResponse(BaseModel):
    """Response schema for the alert list."""

    alerts: list[AlertResponse]
    total: int


# Cron


class CronExecutionResponse(BaseModel):
    """Response schema for one batch scheduler invocation."""

    id: str
    cron_name: str
    status: str
    started_at: str
    completed_at: str | None
    orders_processed: int
    orders_succeeded: int
    orders_failed: int
    orders_skipped: int
    results: list | None = Field(None, validation_alias="results_json")
    error_message: str | None

    @field_validator("results", mode="before")
    @classmethod
    def _parse_results(cls, v: str | list | None) -> list | None:
        parsed = _parse_json_text(v)
        return parsed if isinstance(parsed, list) else None

    model_config = ConfigDict(from_attributes=True)


class CronExecutionListResponse(BaseModel):
    """Response schema for cron execution history."""

    executions: list[CronExecutionResponse]
    total: int
