"""Typed side-channel metadata stored on an order.

Provider extras (tracking URL, price breakdown, merchant sub-order ids, case
details, cancellation flags) live in a versioned pydantic model serialized
to the order's notes column. Writes are additive: merging never drops a
field it did not set. Keys the model does not know are kept in ``extras``.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, Field, model_validator

from giftflow.db.models import Order, utc_now_iso

logger = logging.getLogger(__name__)

NOTES_VERSION = 1


class AuditNote(BaseModel):
    """Append-only operator/system note."""

    at: str = Field(default_factory=utc_now_iso)
    author: str = "system"
    text: str


class OrderNotes(BaseModel):
    """Versioned metadata attached to an order."""

    version: int = NOTES_VERSION
    tracking_url: str | None = None
    carrier: str | None = None
    merchant_order_ids: list[str] = Field(default_factory=list)
    price_breakdown: dict[str, Any] | None = None
    delivery_dates: list[dict[str, Any]] = Field(default_factory=list)
    case_details: dict[str, Any] | None = None
    cancellation_reason: str | None = None
    cancelled_at: str | None = None
    refund_expected: bool | None = None
    pending_customer_refund: bool = False
    awaiting_provider_refund: bool = False
    provider_status: str | None = None
    last_error: dict[str, Any] | None = None
    audit_notes: list[AuditNote] = Field(default_factory=list)
    extras: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extras(cls, data: Any) -> Any:
        """Move unknown top-level keys into extras."""
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extras = dict(data.get("extras") or {})
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                cleaned[key] = value
            else:
                extras[key] = value
        cleaned["extras"] = extras
        return cleaned


def load_notes(order: Order) -> OrderNotes:
    """Decode an order's notes, tolerating absent or malformed JSON.

    Args:
        order: Order whose notes to read.

    Returns:
        Parsed OrderNotes (empty defaults when the column is blank).
    """
    if not order.notes_json:
        return OrderNotes()
    try:
        raw = json.loads(order.notes_json)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Order %s has malformed notes; preserving under extras", order.id)
        return OrderNotes(extras={"unparsed": order.notes_json})
    if not isinstance(raw, dict):
        return OrderNotes(extras={"legacy": raw})
    return OrderNotes.model_validate(raw)


def save_notes(order: Order, notes: OrderNotes) -> None:
    """Serialize notes back onto the order (caller commits)."""
    order.notes_json = notes.model_dump_json(exclude_none=True)


def merge_notes(order: Order, **updates: Any) -> OrderNotes:
    """Additively update named note fields.

    None values are ignored so a partial payload never erases stored data.
    Unknown keyword names land in extras.

    Args:
        order: Order to update.
        **updates: Field values to set.

    Returns:
        The merged OrderNotes.
    """
    notes = load_notes(order)
    for key, value in updates.items():
        if value is None:
            continue
        if key in OrderNotes.model_fields and key not in ("extras", "audit_notes"):
            setattr(notes, key, value)
        else:
            notes.extras[key] = value
    # Re-validate so nested dict inputs become typed models
    notes = OrderNotes.model_validate(notes.model_dump())
    save_notes(order, notes)
    return notes


def append_audit_note(order: Order, text: str, author: str = "system") -> OrderNotes:
    """Append an audit note to the order."""
    notes = load_notes(order)
    notes.audit_notes.append(AuditNote(text=text, author=author))
    save_notes(order, notes)
    return notes
