"""Tests for webhook ingestion, correlation and idempotency."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from giftflow.cli.config import NotificationsConfig
from giftflow.db.models import (
    AdminAlert,
    NotificationQueueEntry,
    RefundRequest,
    WebhookDeliveryLog,
)
from giftflow.errors.domain import NotFoundError, WebhookAuthError
from giftflow.services.alert_service import raise_alert
from giftflow.services.order_notes import load_notes
from giftflow.services.webhook_processor import (
    EventType,
    WebhookProcessor,
    derive_event_id,
    parse_refund_amount,
    resolve_event_type,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def order(make_order, purchaser):
    return make_order(status="processing", fulfillment_request_id="req-1", webhook_token="tok")


@pytest.fixture
def processor(db_session):
    return WebhookProcessor(db_session, clock=lambda: NOW)


def tracking_payload(number="1Z999", delivery_status=None):
    entry = {"tracking_number": number, "carrier": "UPS", "tracking_url": "https://ups.example/1Z999"}
    if delivery_status:
        entry["delivery_status"] = delivery_status
    return {"type": "tracking_obtained", "request_id": "req-1", "tracking": [entry]}


class TestResolveEventType:
    def test_path_suffix_wins(self):
        assert resolve_event_type({"type": "case"}, "tracking_obtained") == "tracking_obtained"

    def test_aliases_map_to_canonical(self):
        assert resolve_event_type({"_type": "error"}) == EventType.REQUEST_FAILED
        assert resolve_event_type({"type": "Order_Response"}) == EventType.REQUEST_SUCCEEDED

    def test_status_updates_without_type(self):
        payload = {"status_updates": [{"type": "shipment.shipped"}]}
        assert resolve_event_type(payload) == EventType.STATUS_UPDATED

    def test_unrecognised_returns_none(self):
        assert resolve_event_type({"type": "mystery"}) is None


class TestDeriveEventId:
    def test_explicit_id_wins(self):
        assert derive_event_id({"event_id": "evt-9", "request_id": "req-1"}, "case_updated") == "evt-9"

    def test_status_updates_are_distinct(self):
        first = {"request_id": "req-1", "status_updates": [{"type": "request.placed"}]}
        second = {"request_id": "req-1", "status_updates": [{"type": "shipment.shipped"}]}
        assert derive_event_id(first, EventType.STATUS_UPDATED) != derive_event_id(
            second, EventType.STATUS_UPDATED
        )

    def test_tracking_updates_are_distinct(self):
        shipped = derive_event_id(tracking_payload(), EventType.TRACKING_OBTAINED)
        delivered = derive_event_id(tracking_payload(delivery_status="Delivered"), EventType.TRACKING_OBTAINED)
        assert shipped == "req-1:tracking:1Z999:shipped"
        assert delivered == "req-1:tracking:1Z999:delivered"

    def test_falls_back_to_order_request_id(self, order):
        assert derive_event_id({}, EventType.REQUEST_SUCCEEDED, order) == "req-1"


class TestCorrelationAndAuth:
    def test_missing_token_is_401(self, processor, order):
        with pytest.raises(WebhookAuthError) as exc_info:
            processor.handle(tracking_payload(), order_id=order.id)
        assert exc_info.value.status_code == 401

    def test_wrong_token_is_403(self, processor, order):
        with pytest.raises(WebhookAuthError) as exc_info:
            processor.handle(tracking_payload(), order_id=order.id, token="nope")
        assert exc_info.value.status_code == 403

    def test_token_for_tokenless_order_is_403(self, processor, make_order):
        legacy = make_order(status="processing", fulfillment_request_id="req-legacy")
        with pytest.raises(WebhookAuthError):
            processor.handle({"type": "request_succeeded"}, order_id=legacy.id, token="tok")

    def test_tokenless_order_accepts_tokenless_delivery(self, processor, make_order):
        legacy = make_order(status="processing", fulfillment_request_id="req-legacy")
        outcome = processor.handle({"type": "request_succeeded", "request_id": "req-legacy"})
        assert outcome.status_code == 200
        assert outcome.body["order_id"] == legacy.id

    def test_unknown_order_raises_not_found(self, processor):
        with pytest.raises(NotFoundError):
            processor.handle({"type": "request_succeeded"}, order_id="missing")

    def test_correlates_by_embedded_client_notes(self, processor, order):
        payload = {"type": "request_succeeded", "request": {"client_notes": {"order_id": order.id}}}
        outcome = processor.handle(payload, token="tok")
        assert outcome.body["order_id"] == order.id


class TestTracking:
    def test_tracking_ships_order_once_per_event(self, processor, order, db_session):
        first = processor.handle(tracking_payload(), order_id=order.id, token="tok")
        replay = processor.handle(tracking_payload(), order_id=order.id, token="tok")

        assert first.status_code == 200
        assert order.status == "shipped"
        assert order.tracking_number == "1Z999"
        assert replay.status_code == 200
        assert replay.body["duplicate"] is True
        notifications = db_session.query(NotificationQueueEntry).all()
        assert len(notifications) == 1
        assert notifications[0].event_type == "order_shipped"
        assert notifications[0].recipient_email == "recipient@example.com"
        assert load_notes(order).carrier == "UPS"

    def test_delivered_update_after_shipped(self, processor, order, db_session):
        processor.handle(tracking_payload(), order_id=order.id, token="tok")
        outcome = processor.handle(
            tracking_payload(delivery_status="Delivered"), order_id=order.id, token="tok"
        )

        assert "duplicate" not in outcome.body
        assert order.status == "delivered"
        types = sorted(n.event_type for n in db_session.query(NotificationQueueEntry))
        assert types == ["order_delivered", "order_shipped"]

    def test_status_update_maps_provider_status(self, processor, order):
        payload = {
            "request_id": "req-1",
            "status_updates": [{"type": "shipment.shipped", "_created_at": "2026-03-01T10:00:00Z"}],
        }
        outcome = processor.handle(payload, order_id=order.id, token="tok")

        assert outcome.body["event_type"] == EventType.STATUS_UPDATED
        assert order.status == "shipped"


class TestRequestFailed:
    def test_retryable_error_requires_attention(self, processor, order, db_session):
        payload = {"_type": "error", "code": "internal_error", "message": "boom", "request_id": "req-1"}

        outcome = processor.handle(payload, order_id=order.id, token="tok")

        assert outcome.body["retry_scheduled"] is True
        assert order.status == "requires_attention"
        assert order.retry_count == 1
        assert order.next_retry_at == (NOW + timedelta(hours=2)).isoformat()
        alert = db_session.query(AdminAlert).one()
        assert alert.alert_type == "fulfillment_retry_scheduled"

    def test_customer_error_fails_order_and_notifies_purchaser(self, processor, order, db_session):
        payload = {
            "_type": "error",
            "code": "invalid_shipping_address",
            "message": "Address rejected",
            "request_id": "req-1",
        }

        outcome = processor.handle(payload, order_id=order.id, token="tok")

        assert outcome.body["retry_scheduled"] is False
        assert order.status == "failed"
        notification = db_session.query(NotificationQueueEntry).one()
        assert notification.event_type == "order_failed"
        assert notification.recipient_email == "buyer@example.com"

    def test_redelivery_after_partial_failure_counts_retry_once(
        self, processor, order, db_session, monkeypatch
    ):
        payload = {"_type": "error", "code": "internal_error", "message": "boom", "request_id": "req-1"}
        calls = []

        def flaky_alert(*args, **kwargs):
            calls.append(kwargs["alert_type"])
            if len(calls) == 1:
                raise RuntimeError("alert store unavailable")
            return raise_alert(*args, **kwargs)

        monkeypatch.setattr("giftflow.services.webhook_processor.raise_alert", flaky_alert)

        first = processor.handle(payload, order_id=order.id, token="tok")
        second = processor.handle(payload, order_id=order.id, token="tok")

        assert first.status_code == 500
        assert second.status_code == 200
        assert second.body["retry_scheduled"] is True
        assert order.status == "requires_attention"
        assert order.retry_count == 1
        assert db_session.query(AdminAlert).count() == 1
        assert db_session.query(WebhookDeliveryLog).one().delivery_status == "completed"

    def test_redelivery_at_last_retry_does_not_fail_order(
        self, processor, make_order, purchaser, db_session, monkeypatch
    ):
        order = make_order(
            status="processing", fulfillment_request_id="req-1", webhook_token="tok", retry_count=1
        )
        payload = {"_type": "error", "code": "internal_error", "message": "boom", "request_id": "req-1"}

        def broken_alert(*args, **kwargs):
            raise RuntimeError("alert store unavailable")

        monkeypatch.setattr("giftflow.services.webhook_processor.raise_alert", broken_alert)
        assert processor.handle(payload, order_id=order.id, token="tok").status_code == 500
        monkeypatch.setattr("giftflow.services.webhook_processor.raise_alert", raise_alert)

        outcome = processor.handle(payload, order_id=order.id, token="tok")

        assert outcome.status_code == 200
        assert order.status == "requires_attention"
        assert order.retry_count == 2
        assert db_session.query(AdminAlert).one().alert_type == "fulfillment_retry_scheduled"

    def test_second_failure_while_awaiting_retry_is_not_counted(self, processor, order, db_session):
        first = {"_type": "error", "event_id": "evt-1", "code": "internal_error", "request_id": "req-1"}
        second = {"_type": "error", "event_id": "evt-2", "code": "internal_error", "request_id": "req-1"}

        processor.handle(first, order_id=order.id, token="tok")
        outcome = processor.handle(second, order_id=order.id, token="tok")

        assert outcome.body["retry_scheduled"] is False
        assert order.retry_count == 1
        assert db_session.query(AdminAlert).count() == 1


class TestCaseUpdates:
    def test_partial_refund_cancels_and_requests_refund_once(self, db_session, order):
        processor = WebhookProcessor(
            db_session, notifications=NotificationsConfig(admin_email="ops@example.com")
        )
        processor.handle(
            {"type": "case_updated", "request_id": "req-1", "case": {"state": "partial_refund", "refund_amount": 1500}},
            order_id=order.id,
            token="tok",
        )
        processor.handle(
            {"type": "case_updated", "request_id": "req-1", "case": {"state": "refunded", "refund_amount": 1500}},
            order_id=order.id,
            token="tok",
        )

        assert order.status == "cancelled"
        refund = db_session.query(RefundRequest).one()
        assert refund.amount_cents == 1500
        assert refund.refund_type == "partial"
        approvals = db_session.query(NotificationQueueEntry).filter_by(
            event_type="refund_approval_required"
        ).all()
        assert len(approvals) == 1
        assert approvals[0].recipient_email == "ops@example.com"
        assert load_notes(order).pending_customer_refund is True

    def test_forced_cancellation_awaits_provider_refund(self, processor, order, db_session):
        processor.handle(
            {"type": "case", "request_id": "req-1", "case": {"state": "forced_cancellation"}},
            order_id=order.id,
            token="tok",
        )

        assert order.status == "cancelled"
        assert load_notes(order).awaiting_provider_refund is True
        assert db_session.query(RefundRequest).count() == 0

    def test_open_case_requires_attention(self, processor, order, db_session):
        processor.handle(
            {"type": "case_updated", "request_id": "req-1", "case": {"state": "open"}},
            order_id=order.id,
            token="tok",
        )

        assert order.status == "requires_attention"
        assert db_session.query(AdminAlert).one().alert_type == "fulfillment_case_opened"
    def test_decimal_refund_amount_is_read_as_dollars(self, processor, order, db_session):
        outcome = processor.handle(
            {"type": "case_updated", "request_id": "req-1", "case": {"state": "partial_refund", "refund_amount": "12.50"}},
            order_id=order.id,
            token="tok",
        )

        assert outcome.status_code == 200
        refund = db_session.query(RefundRequest).one()
        assert refund.amount_cents == 1250
        assert refund.refund_type == "partial"
        assert db_session.query(WebhookDeliveryLog).one().delivery_status == "completed"

    def test_unreadable_refund_amount_becomes_full_refund_with_alert(
        self, processor, order, db_session
    ):
        outcome = processor.handle(
            {"type": "case_updated", "request_id": "req-1", "case": {"state": "refunded", "refund_amount": "twelve"}},
            order_id=order.id,
            token="tok",
        )

        assert outcome.status_code == 200
        assert order.status == "cancelled"
        refund = db_session.query(RefundRequest).one()
        assert refund.amount_cents == order.total_amount_cents
        assert refund.refund_type == "full"
        alert = db_session.query(AdminAlert).one()
        assert alert.alert_type == "refund_amount_unparseable"
        assert alert.requires_action is True


class TestLedger:
    def test_unknown_type_is_acknowledged(self, processor, order, db_session):
        outcome = processor.handle({"type": "mystery"}, order_id=order.id, token="tok")

        assert outcome.status_code == 200
        assert outcome.body["ignored"] is True
        assert order.status == "processing"
        assert db_session.query(WebhookDeliveryLog).one().event_type == "unknown:mystery"

    def test_handler_failure_returns_500_and_allows_redelivery(self, db_session, order):
        broken = WebhookProcessor(db_session)

        def explode(*args):
            raise RuntimeError("handler exploded")

        broken._handlers[EventType.TRACKING_OBTAINED] = explode

        failed = broken.handle(tracking_payload(), order_id=order.id, token="tok")

        assert failed.status_code == 500
        entry = db_session.query(WebhookDeliveryLog).one()
        assert entry.delivery_status == "failed"
        assert "handler exploded" in entry.error_message
        assert order.status == "processing"

        retried = WebhookProcessor(db_session).handle(tracking_payload(), order_id=order.id, token="tok")

        assert retried.status_code == 200
        assert "duplicate" not in retried.body
        assert order.status == "shipped"
        db_session.refresh(entry)
        assert entry.delivery_status == "completed"

    def test_cancelled_event_notifies_purchaser(self, processor, order, db_session):
        processor.handle(
            {"type": "request.cancelled", "request_id": "req-1", "reason": "Out of stock"},
            order_id=order.id,
            token="tok",
        )

        assert order.status == "cancelled"
        notification = db_session.query(NotificationQueueEntry).one()
        assert notification.event_type == "order_cancelled"
        assert load_notes(order).cancellation_reason == "Out of stock"


class TestIgnoredTransitions:
    @pytest.mark.parametrize("status", ["cancelled", "delivered", "failed"])
    def test_late_acceptance_leaves_settled_order_alone(self, processor, make_order, status):
        settled = make_order(status=status, fulfillment_request_id="req-9", webhook_token="tok")
        payload = {
            "type": "request_succeeded",
            "request_id": "req-9",
            "merchant_order_ids": [{"merchant_order_id": "M-1"}],
        }

        outcome = processor.handle(payload, order_id=settled.id, token="tok")

        assert outcome.status_code == 200
        assert settled.status == status
        notes = load_notes(settled)
        assert notes.provider_status is None
        assert notes.merchant_order_ids == []
        ignored = notes.extras["ignored_transition"]
        assert ignored["from"] == status
        assert ignored["provider_status"] == "placed"

    def test_tracking_for_cancelled_order_is_not_applied(self, processor, make_order, db_session):
        cancelled = make_order(status="cancelled", fulfillment_request_id="req-1", webhook_token="tok")

        processor.handle(tracking_payload(), order_id=cancelled.id, token="tok")

        assert cancelled.status == "cancelled"
        assert cancelled.tracking_number is None
        notes = load_notes(cancelled)
        assert notes.carrier is None
        assert notes.extras["ignored_transition"]["to"] == "shipped"
        assert db_session.query(NotificationQueueEntry).count() == 0


class TestParseRefundAmount:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (1500, 1500),
            ("1500", 1500),
            ("12.50", 1250),
            (12.5, 1250),
            (Decimal("0.995"), 100),
            ("$125.50", 12550),
            ("$125", 12500),
            ("1,250.00", 125000),
        ],
    )
    def test_reads_cents_and_dollars(self, raw, expected):
        assert parse_refund_amount(raw) == expected

    @pytest.mark.parametrize("raw", ["twelve", "", "nan", 0, -300, "-1.00", True, None, [1500]])
    def test_unreadable_or_non_positive_is_none(self, raw):
        assert parse_refund_amount(raw) is None
