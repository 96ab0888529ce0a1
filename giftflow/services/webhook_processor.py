"""Webhook ingestion state machine for fulfillment provider events.

Providers deliver webhooks at least once and name their events
inconsistently. Each delivery is:

1. resolved to a canonical event type,
2. correlated to an order (query param, embedded client notes, or the
   provider request id),
3. authenticated against the order's webhook token,
4. gated by the (event_id, event_type) idempotency ledger,
5. dispatched to a handler that applies at most one state transition,
   one notification and one refund/alert,
6. marked completed in the ledger.

A handler exception leaves the ledger row ``failed`` and surfaces as a 500
so the provider redelivers; the ledger makes the retry safe.
"""

import hmac
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from giftflow.cli.config import NotificationsConfig
from giftflow.db.models import (
    AlertSeverity,
    DeliveryStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    WebhookDeliveryLog,
    utc_now_iso,
)
from giftflow.errors.classification import Classification, classify
from giftflow.errors.domain import NotFoundError, WebhookAuthError
from giftflow.services.alert_service import raise_alert
from giftflow.services.fulfillment_client import extract_error
from giftflow.services.notification_queue import (
    NotificationType,
    enqueue_notification,
    notify_order,
)
from giftflow.services.order_notes import load_notes, merge_notes
from giftflow.services.order_state import TERMINAL_STATES, can_transition, transition
from giftflow.services.refund_service import request_refund
from giftflow.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)


class EventType:
    """Canonical webhook event names."""

    REQUEST_SUCCEEDED = "request_succeeded"
    REQUEST_FAILED = "request_failed"
    TRACKING_OBTAINED = "tracking_obtained"
    STATUS_UPDATED = "status_updated"
    CASE_UPDATED = "case_updated"
    ORDER_CANCELLED = "order_cancelled"


CANONICAL_EVENTS = frozenset({
    EventType.REQUEST_SUCCEEDED,
    EventType.REQUEST_FAILED,
    EventType.TRACKING_OBTAINED,
    EventType.STATUS_UPDATED,
    EventType.CASE_UPDATED,
    EventType.ORDER_CANCELLED,
})

# Provider aliases onto canonical names
EVENT_ALIASES: dict[str, str] = {
    "order_response": EventType.REQUEST_SUCCEEDED,
    "order_accepted": EventType.REQUEST_SUCCEEDED,
    "order_placed": EventType.REQUEST_SUCCEEDED,
    "request.finished": EventType.REQUEST_SUCCEEDED,
    "error": EventType.REQUEST_FAILED,
    "request.failed": EventType.REQUEST_FAILED,
    "tracking": EventType.TRACKING_OBTAINED,
    "tracking_updated": EventType.TRACKING_OBTAINED,
    "case": EventType.CASE_UPDATED,
    "case_opened": EventType.CASE_UPDATED,
    "cancelled": EventType.ORDER_CANCELLED,
    "request.cancelled": EventType.ORDER_CANCELLED,
    "order_aborted": EventType.ORDER_CANCELLED,
}

# Provider status vocabulary onto order statuses
PROVIDER_STATUS_MAP: dict[str, OrderStatus] = {
    "request.placed": OrderStatus.processing,
    "request.finished": OrderStatus.processing,
    "shipment.shipped": OrderStatus.shipped,
    "shipment.delivered": OrderStatus.delivered,
    "request.failed": OrderStatus.failed,
    "request.cancelled": OrderStatus.cancelled,
}

REFUND_CASE_STATES = frozenset({"refunded", "refund_issued", "full_refund", "partial_refund"})
FORCED_CANCEL_CASE_STATES = frozenset({"cancelled", "canceled", "forced_cancellation", "order_cancelled"})


@dataclass
class WebhookOutcome:
    """HTTP-shaped result of handling one delivery."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def resolve_event_type(payload: dict[str, Any], path_event_type: str | None = None) -> str | None:
    """Map the delivery onto a canonical event type.

    Precedence: URL path suffix, then ``type``, then ``_type``; a payload
    carrying ``status_updates`` with no recognised type is a status update.

    Returns:
        Canonical event name, or None if unrecognised.
    """
    for candidate in (path_event_type, payload.get("type"), payload.get("_type")):
        if not candidate or not isinstance(candidate, str):
            continue
        name = candidate.strip().lower()
        if name in CANONICAL_EVENTS:
            return name
        if name in EVENT_ALIASES:
            return EVENT_ALIASES[name]
    if payload.get("status_updates"):
        return EventType.STATUS_UPDATED
    return None


def _latest_status_update(payload: dict[str, Any]) -> dict[str, Any]:
    updates = payload.get("status_updates") or []
    if isinstance(updates, list) and updates and isinstance(updates[-1], dict):
        return updates[-1]
    return {}


def _case_details(payload: dict[str, Any]) -> dict[str, Any]:
    case = payload.get("case")
    if isinstance(case, dict):
        return case
    return {k: v for k, v in payload.items() if k not in ("type", "_type", "request")}


def _case_state(case: dict[str, Any]) -> str:
    return str(case.get("state") or case.get("status") or "open").lower()


def _first_tracking(payload: dict[str, Any]) -> dict[str, Any]:
    entries = payload.get("tracking")
    if isinstance(entries, dict):
        entries = [entries]
    return next(
        (t for t in entries or [] if isinstance(t, dict) and t.get("tracking_number")),
        {},
    )


def parse_refund_amount(raw: Any) -> int | None:
    """Convert a provider refund amount to cents.

    Integers, and strings of bare digits, are already in cents. Floats,
    Decimals and strings carrying a decimal point or a ``$`` sign are
    dollar amounts, rounded half-up to the cent.

    Returns:
        Positive amount in cents, or None when the value cannot be read.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None

    if isinstance(raw, (float, Decimal)):
        text, in_dollars = str(raw), True
    elif isinstance(raw, str):
        text = raw.strip().replace(",", "")
        in_dollars = text.startswith("$") or "." in text
        text = text.lstrip("$").strip()
    else:
        return None

    try:
        value = Decimal(text)
        if not value.is_finite():
            return None
        if in_dollars:
            value = value * 100
        cents = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None
    return cents if cents > 0 else None


def derive_event_id(payload: dict[str, Any], event_type: str, order: Order | None = None) -> str:
    """Stable idempotency id for a delivery.

    Explicit ``event_id``/``id`` fields win. Otherwise the provider request
    id is used, suffixed for status, case and tracking updates so distinct successive
    updates are not collapsed.
    """
    explicit = payload.get("event_id") or payload.get("id")
    if explicit:
        return str(explicit)

    base = payload.get("request_id")
    if not base and order is not None:
        base = order.fulfillment_request_id or order.id
    base = str(base or "unknown")

    if event_type == EventType.STATUS_UPDATED:
        latest = _latest_status_update(payload)
        marker = latest.get("type") or "unknown"
        created = latest.get("_created_at")
        return f"{base}:{marker}:{created}" if created else f"{base}:{marker}"
    if event_type == EventType.CASE_UPDATED:
        return f"{base}:case:{_case_state(_case_details(payload))}"
    if event_type == EventType.TRACKING_OBTAINED:
        tracking = _first_tracking(payload)
        number = tracking.get("tracking_number") or payload.get("tracking_number")
        if number:
            status = str(tracking.get("delivery_status") or "shipped").lower()
            return f"{base}:tracking:{number}:{status}"
    return base


def _embedded_order_id(payload: dict[str, Any]) -> str | None:
    for notes in (
        payload.get("client_notes"),
        (payload.get("request") or {}).get("client_notes")
        if isinstance(payload.get("request"), dict)
        else None,
    ):
        if isinstance(notes, dict):
            found = notes.get("order_id") or notes.get("supabase_order_id")
            if found:
                return str(found)
    return None


class WebhookProcessor:
    """Applies provider webhook events to orders idempotently.

    Attributes:
        db: SQLAlchemy session.
        notifications: Admin recipient settings.
    """

    def __init__(
        self,
        db: Session,
        notifications: NotificationsConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.notifications = notifications or NotificationsConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._handlers: dict[str, Callable[[Order, dict[str, Any], str], dict[str, Any]]] = {
            EventType.REQUEST_SUCCEEDED: self._on_request_succeeded,
            EventType.REQUEST_FAILED: self._on_request_failed,
            EventType.TRACKING_OBTAINED: self._on_tracking_obtained,
            EventType.STATUS_UPDATED: self._on_status_updated,
            EventType.CASE_UPDATED: self._on_case_updated,
            EventType.ORDER_CANCELLED: self._on_order_cancelled,
        }

    # =========================================================================
    # Entry point
    # =========================================================================

    def handle(
        self,
        payload: dict[str, Any],
        path_event_type: str | None = None,
        order_id: str | None = None,
        token: str | None = None,
    ) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            payload: Decoded JSON body.
            path_event_type: Event name from the URL path suffix.
            order_id: ``orderId`` query parameter.
            token: ``token`` query parameter.

        Returns:
            WebhookOutcome with 200 on success or duplicate, 500 when the
            handler failed.

        Raises:
            NotFoundError: If no order can be resolved (404).
            WebhookAuthError: If the token is missing (401) or wrong (403).
        """
        order = self.resolve_order(payload, order_id)
        self.authenticate(order, token)

        raw_type = path_event_type or payload.get("type") or payload.get("_type")
        event_type = resolve_event_type(payload, path_event_type)
        if event_type is None:
            logger.warning(
                "Unrecognised webhook type %r for order %s; acknowledging", raw_type, order.id
            )
            unknown_type = f"unknown:{str(raw_type or 'none')[:40]}"
            event_id = derive_event_id(payload, unknown_type, order)
            entry, duplicate = self._open_ledger(event_id, unknown_type, order.id, payload)
            if not duplicate:
                self._complete(entry, order)
            return WebhookOutcome(
                200,
                {"success": True, "ignored": True, "event_type": raw_type, "order_id": order.id},
            )

        event_id = derive_event_id(payload, event_type, order)
        entry, duplicate = self._open_ledger(event_id, event_type, order.id, payload)
        if duplicate:
            logger.info("Duplicate webhook %s/%s ignored", event_id, event_type)
            return WebhookOutcome(
                200,
                {
                    "success": True,
                    "duplicate": True,
                    "event_id": event_id,
                    "event_type": event_type,
                    "order_id": order.id,
                },
            )

        logger.info(
            "Processing webhook %s/%s for order %s: %s",
            event_id,
            event_type,
            order.id,
            redact_for_logging(payload),
        )
        entry_id = entry.id
        order_ref = order.id
        try:
            details = self._handlers[event_type](order, payload, event_id)
            self._complete(entry, order)
        except Exception as e:
            logger.exception("Webhook %s/%s failed for order %s", event_id, event_type, order_ref)
            self.db.rollback()
            self._fail(entry_id, str(e))
            return WebhookOutcome(
                500,
                {"success": False, "error": "Webhook processing failed", "event_id": event_id},
            )

        body = {
            "success": True,
            "event_id": event_id,
            "event_type": event_type,
            "order_id": order.id,
        }
        body.update(details)
        return WebhookOutcome(200, body)

    # =========================================================================
    # Correlation, authentication and ledger
    # =========================================================================

    def resolve_order(self, payload: dict[str, Any], order_id: str | None = None) -> Order:
        """Find the order a delivery refers to.

        Raises:
            NotFoundError: If nothing matches.
        """
        candidate_id = order_id or _embedded_order_id(payload)
        if candidate_id:
            order = self.db.get(Order, candidate_id)
            if order is not None:
                return order

        request_id = payload.get("request_id")
        if request_id:
            order = (
                self.db.query(Order)
                .filter(Order.fulfillment_request_id == str(request_id))
                .first()
            )
            if order is not None:
                return order

        raise NotFoundError("Order", str(candidate_id or request_id or "unknown"))

    def authenticate(self, order: Order, token: str | None) -> None:
        """Check the delivery's token against the order's webhook token.

        Raises:
            WebhookAuthError: 401 when a token is required but missing, 403
                when it does not match.
        """
        if not token:
            if order.webhook_token:
                raise WebhookAuthError("Missing webhook token", status_code=401)
            return
        expected = order.webhook_token or ""
        if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            raise WebhookAuthError("Invalid webhook token", status_code=403)

    def _find_ledger(self, event_id: str, event_type: str) -> WebhookDeliveryLog | None:
        return (
            self.db.query(WebhookDeliveryLog)
            .filter(
                WebhookDeliveryLog.event_id == event_id,
                WebhookDeliveryLog.event_type == event_type,
            )
            .first()
        )

    def _open_ledger(
        self,
        event_id: str,
        event_type: str,
        order_id: str,
        payload: dict[str, Any],
    ) -> tuple[WebhookDeliveryLog, bool]:
        """Upsert a received ledger row.

        Returns:
            (entry, duplicate) where duplicate is True if the event was
            already completed.
        """
        entry = self._find_ledger(event_id, event_type)
        if entry is not None:
            if entry.delivery_status == DeliveryStatus.completed.value:
                return entry, True
            entry.delivery_status = DeliveryStatus.received.value
            entry.error_message = None
            self.db.commit()
            return entry, False

        entry = WebhookDeliveryLog(
            event_id=event_id,
            event_type=event_type,
            order_id=order_id,
            delivery_status=DeliveryStatus.received.value,
            metadata_json=json.dumps(redact_for_logging(payload)),
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent delivery inserted first
            self.db.rollback()
            entry = self._find_ledger(event_id, event_type)
            if entry is None:
                raise
            return entry, entry.delivery_status == DeliveryStatus.completed.value
        return entry, False

    def _complete(self, entry: WebhookDeliveryLog, order: Order) -> None:
        entry.delivery_status = DeliveryStatus.completed.value
        entry.error_message = None
        order.webhook_received_at = utc_now_iso()
        self.db.commit()

    def _fail(self, entry_id: str, error: str) -> None:
        try:
            entry = self.db.get(WebhookDeliveryLog, entry_id)
            if entry is not None:
                entry.delivery_status = DeliveryStatus.failed.value
                entry.error_message = sanitize_error_message(error)
                self.db.commit()
        except Exception:
            logger.exception("Could not mark webhook ledger row %s failed", entry_id)
            self.db.rollback()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _move(
        self,
        order: Order,
        target: OrderStatus,
        notes: dict[str, Any] | None = None,
        **fields: Any,
    ) -> bool:
        """Transition if the table allows it; log and skip otherwise.

        ``notes`` are merged only when the move is applied and commit with
        it. A rejected move records itself under ``extras.ignored_transition``
        and leaves the other note fields alone.
        """
        if order.status != target.value and not can_transition(order.status, target):
            self._ignore(order, target, (notes or {}).get("provider_status"))
            return False
        if notes:
            merge_notes(order, **notes)
        return transition(self.db, order, target, **fields)

    def _ignore(self, order: Order, target: OrderStatus, provider_status: str | None) -> None:
        logger.warning(
            "Order %s: ignoring transition %s -> %s from webhook",
            order.id,
            order.status,
            target.value,
        )
        merge_notes(
            order,
            ignored_transition={
                "from": order.status,
                "to": target.value,
                "provider_status": provider_status,
                "at": utc_now_iso(),
            },
        )

    def _alert_retry_scheduled(
        self,
        order: Order,
        classification: Classification,
        code: str | None,
        unique_open: bool = False,
    ) -> None:
        raise_alert(
            self.db,
            alert_type="fulfillment_retry_scheduled",
            severity=classification.alert_level,
            order_id=order.id,
            user_id=order.user_id,
            requires_action=False,
            message=classification.admin_message,
            metadata={"error_code": code, "retry_count": order.retry_count},
            unique_open=unique_open,
        )

    def _notify(
        self,
        order: Order,
        template: NotificationType,
        event_id: str,
        event_type: str,
        variables: dict[str, Any] | None = None,
        to_purchaser: bool = False,
    ) -> bool:
        entry = notify_order(
            self.db,
            order,
            template,
            template_variables=variables,
            dedupe_key=f"{event_id}:{event_type}:{template.value}",
            to_purchaser=to_purchaser,
        )
        return entry is not None

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_request_succeeded(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        merchant_orders = payload.get("merchant_order_ids") or []
        merchant_ids = [
            str(m.get("merchant_order_id"))
            for m in merchant_orders
            if isinstance(m, dict) and m.get("merchant_order_id")
        ]
        tracking_url = payload.get("tracking_url") or next(
            (
                m.get("tracking_url")
                for m in merchant_orders
                if isinstance(m, dict) and m.get("tracking_url")
            ),
            None,
        )
        delivery_dates = payload.get("delivery_dates") or []
        estimated = None
        if delivery_dates and isinstance(delivery_dates[0], dict):
            estimated = delivery_dates[0].get("delivery_date") or delivery_dates[0].get("date")

        notes = {
            "provider_status": "placed",
            "merchant_order_ids": merchant_ids or None,
            "tracking_url": tracking_url,
            "delivery_dates": delivery_dates or None,
            "price_breakdown": payload.get("price_components"),
        }
        fields: dict[str, Any] = {}
        if estimated:
            fields["estimated_delivery"] = str(estimated)
        if payload.get("request_id") and not order.fulfillment_request_id:
            fields["fulfillment_request_id"] = str(payload["request_id"])

        current = OrderStatus(order.status)
        if current in (
            OrderStatus.scheduled,
            OrderStatus.requires_attention,
            OrderStatus.processing,
        ):
            self._move(order, OrderStatus.processing, notes=notes, next_retry_at=None, **fields)
        elif current in TERMINAL_STATES:
            # Late acceptance never reopens a settled order
            self._ignore(order, OrderStatus.processing, "placed")
        else:
            merge_notes(order, **notes)
            transition(self.db, order, order.status, **fields)
        return {"status": order.status, "merchant_order_ids": merchant_ids}

    def _on_request_failed(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        code, message = extract_error(payload)
        if not message:
            message = _latest_status_update(payload).get("message")
        classification = classify(code, message)
        notes = {
            "provider_status": "failed",
            "last_error": {"code": code, "message": message, "data": payload.get("data")},
        }

        if (
            classification.should_retry
            and order.status == OrderStatus.requires_attention.value
        ):
            # The retry was counted when it was scheduled
            redelivered = load_notes(order).extras.get("retry_event_id") == event_id
            if redelivered:
                self._alert_retry_scheduled(order, classification, code, unique_open=True)
            else:
                logger.info(
                    "Order %s already awaiting a retry; failure %s not counted",
                    order.id,
                    event_id,
                )
            return {
                "status": order.status,
                "classification": classification.type.value,
                "retry_scheduled": redelivered,
            }

        if classification.should_retry and order.retry_count < classification.max_retries:
            retry_at = self._clock() + timedelta(seconds=classification.retry_delay_seconds)
            moved = self._move(
                order,
                OrderStatus.requires_attention,
                notes={**notes, "retry_event_id": event_id},
                retry_count=order.retry_count + 1,
                retry_reason=code,
                next_retry_at=retry_at.isoformat(),
                error_classification=classification.type.value,
                admin_message=classification.admin_message,
            )
            if moved:
                self._alert_retry_scheduled(order, classification, code)
            return {
                "status": order.status,
                "classification": classification.type.value,
                "retry_scheduled": moved,
            }

        exhausted = classification.should_retry
        already_failed = order.status == OrderStatus.failed.value
        moved = self._move(
            order,
            OrderStatus.failed,
            notes=notes,
            retry_reason=code,
            next_retry_at=None,
            error_classification=classification.type.value,
            admin_message=classification.admin_message,
        )
        if moved:
            if classification.requires_admin_intervention or exhausted:
                raise_alert(
                    self.db,
                    alert_type="retries_exhausted" if exhausted else "fulfillment_failed",
                    severity=AlertSeverity.critical if exhausted else classification.alert_level,
                    order_id=order.id,
                    user_id=order.user_id,
                    requires_action=True,
                    message=classification.admin_message,
                    metadata={"error_code": code, "classification": classification.type.value},
                    unique_open=already_failed,
                )
            self._notify(
                order,
                NotificationType.order_failed,
                event_id,
                EventType.REQUEST_FAILED,
                variables={"message": classification.user_friendly_message},
                to_purchaser=True,
            )
        return {
            "status": order.status,
            "classification": classification.type.value,
            "retry_scheduled": False,
        }

    def _on_tracking_obtained(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        tracking = _first_tracking(payload)
        tracking_number = tracking.get("tracking_number") or payload.get("tracking_number")
        if not tracking_number:
            logger.warning("Tracking webhook %s carried no tracking number", event_id)
            return {"status": order.status, "tracking_number": None}

        notes = {
            "tracking_url": tracking.get("tracking_url") or payload.get("tracking_url"),
            "carrier": tracking.get("carrier") or payload.get("carrier"),
            "provider_status": tracking.get("delivery_status") or "shipped",
        }
        delivery_status = str(tracking.get("delivery_status") or "").lower()
        target = OrderStatus.delivered if delivery_status == "delivered" else OrderStatus.shipped

        moved = self._move(order, target, notes=notes, tracking_number=str(tracking_number))
        if moved:
            template = (
                NotificationType.order_delivered
                if target == OrderStatus.delivered
                else NotificationType.order_shipped
            )
            self._notify(
                order,
                template,
                event_id,
                EventType.TRACKING_OBTAINED,
                variables={
                    "tracking_number": str(tracking_number),
                    "tracking_url": tracking.get("tracking_url"),
                    "carrier": tracking.get("carrier"),
                },
            )
        return {"status": order.status, "tracking_number": str(tracking_number)}

    def _on_status_updated(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        latest = _latest_status_update(payload)
        provider_status = latest.get("type") or payload.get("status")

        target = PROVIDER_STATUS_MAP.get(str(provider_status or "").lower())
        if target is None or order.status == target.value:
            merge_notes(order, provider_status=provider_status)
            transition(self.db, order, order.status)
            return {"status": order.status, "provider_status": provider_status}

        fields: dict[str, Any] = {}
        if target == OrderStatus.failed:
            fields["admin_message"] = sanitize_error_message(
                latest.get("message") or "Provider reported the request failed", 500
            )
        moved = self._move(order, target, notes={"provider_status": provider_status}, **fields)
        if moved and target in (OrderStatus.shipped, OrderStatus.delivered):
            template = (
                NotificationType.order_delivered
                if target == OrderStatus.delivered
                else NotificationType.order_shipped
            )
            self._notify(order, template, event_id, EventType.STATUS_UPDATED)
        return {"status": order.status, "provider_status": provider_status}

    def _on_case_updated(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        case = _case_details(payload)
        state = _case_state(case)
        refund_amount = case.get("refund_amount") or case.get("amount_refunded")
        refund_issued = bool(case.get("refund_issued")) or bool(refund_amount) or state in REFUND_CASE_STATES
        forced_cancel = bool(case.get("forced_cancellation")) or state in FORCED_CANCEL_CASE_STATES

        if refund_issued:
            amount = order.total_amount_cents
            if refund_amount:
                parsed = parse_refund_amount(refund_amount)
                if parsed is None:
                    raise_alert(
                        self.db,
                        alert_type="refund_amount_unparseable",
                        severity=AlertSeverity.warning,
                        order_id=order.id,
                        user_id=order.user_id,
                        requires_action=True,
                        message=(
                            f"Provider refund amount {str(refund_amount)[:40]!r} for order "
                            f"{order.order_number} could not be read; recorded as a full refund"
                        ),
                        metadata={"event_id": event_id, "refund_amount": str(refund_amount)[:100]},
                        unique_open=True,
                    )
                else:
                    amount = min(parsed, order.total_amount_cents)
            refund_type = "partial" if amount < order.total_amount_cents else "full"
            # The provider refund happened whatever the order's status
            merge_notes(order, case_details=case, pending_customer_refund=True)
            refund = request_refund(
                self.db,
                order,
                reason=f"Provider issued {refund_type} refund (case {state})",
                amount_cents=amount,
                refund_type=refund_type,
                metadata={"event_id": event_id, "case": case},
            )
            self._move(order, OrderStatus.cancelled)
            if refund is not None:
                self._enqueue_admin_approval(order, refund.id, amount, event_id)
            return {
                "status": order.status,
                "refund_request_id": refund.id if refund is not None else None,
            }

        if forced_cancel:
            self._move(
                order,
                OrderStatus.cancelled,
                notes={
                    "case_details": case,
                    "awaiting_provider_refund": True,
                    "cancellation_reason": case.get("reason") or "Cancelled by fulfillment provider",
                    "cancelled_at": utc_now_iso(),
                },
            )
            return {"status": order.status, "awaiting_provider_refund": True}

        if self._move(
            order,
            OrderStatus.requires_attention,
            notes={"case_details": case},
            next_retry_at=None,
        ):
            raise_alert(
                self.db,
                alert_type="fulfillment_case_opened",
                severity=AlertSeverity.warning,
                order_id=order.id,
                user_id=order.user_id,
                requires_action=True,
                message=f"Provider case '{state}' opened for order {order.order_number}",
                metadata={"case": case},
            )
        return {"status": order.status, "case_state": state}

    def _enqueue_admin_approval(
        self, order: Order, refund_id: str, amount_cents: int, event_id: str
    ) -> None:
        if not self.notifications.admin_email:
            logger.warning(
                "No admin email configured; refund %s for order %s awaits approval",
                refund_id,
                order.id,
            )
            return
        template = NotificationType.refund_approval_required
        enqueue_notification(
            self.db,
            recipient_email=self.notifications.admin_email,
            recipient_name=self.notifications.admin_name,
            event_type=template,
            template_variables={
                "order_id": order.id,
                "order_number": order.order_number,
                "refund_request_id": refund_id,
                "amount_cents": amount_cents,
            },
            order_id=order.id,
            priority="high",
            dedupe_key=f"{event_id}:{EventType.CASE_UPDATED}:{template.value}",
        )

    def _on_order_cancelled(
        self, order: Order, payload: dict[str, Any], event_id: str
    ) -> dict[str, Any]:
        _, message = extract_error(payload)
        reason = payload.get("reason") or message or "Cancelled by fulfillment provider"
        refund_expected = order.payment_status == PaymentStatus.succeeded.value
        notes = {
            "cancellation_reason": str(reason),
            "cancelled_at": utc_now_iso(),
            "refund_expected": refund_expected,
            "awaiting_provider_refund": bool(order.fulfillment_request_id) or None,
            "provider_status": "cancelled",
        }
        if self._move(order, OrderStatus.cancelled, notes=notes):
            self._notify(
                order,
                NotificationType.order_cancelled,
                event_id,
                EventType.ORDER_CANCELLED,
                variables={"reason": str(reason), "refund_expected": refund_expected},
                to_purchaser=True,
            )
        return {"status": order.status, "refund_expected": refund_expected}
