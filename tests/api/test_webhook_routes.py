"""Tests for the webhook HTTP endpoint."""

import pytest


@pytest.fixture
def order(make_order, purchaser):
    return make_order(status="processing", fulfillment_request_id="req-1", webhook_token="tok")


TRACKING = {"request_id": "req-1", "tracking": [{"tracking_number": "1Z999", "carrier": "UPS"}]}


def test_typed_path_ships_order(client, order, db_session):
    response = client.post(
        f"/api/webhooks/fulfillment/tracking_obtained?orderId={order.id}&token=tok",
        json=TRACKING,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["event_type"] == "tracking_obtained"
    db_session.refresh(order)
    assert order.status == "shipped"


def test_replay_is_acknowledged_as_duplicate(client, order):
    url = f"/api/webhooks/fulfillment/tracking_obtained?orderId={order.id}&token=tok"
    client.post(url, json=TRACKING)

    response = client.post(url, json=TRACKING)

    assert response.status_code == 200
    assert response.json()["duplicate"] is True


def test_type_in_body(client, order):
    response = client.post(
        f"/api/webhooks/fulfillment?orderId={order.id}&token=tok",
        json={"_type": "order_response", "request_id": "req-1"},
    )

    assert response.status_code == 200
    assert response.json()["event_type"] == "request_succeeded"


def test_missing_token_is_401(client, order):
    response = client.post(
        f"/api/webhooks/fulfillment/tracking_obtained?orderId={order.id}", json=TRACKING
    )
    assert response.status_code == 401


def test_wrong_token_is_403(client, order):
    response = client.post(
        f"/api/webhooks/fulfillment/tracking_obtained?orderId={order.id}&token=bad",
        json=TRACKING,
    )
    assert response.status_code == 403


def test_unknown_order_is_404(client):
    response = client.post(
        "/api/webhooks/fulfillment/tracking_obtained?orderId=missing", json={"type": "tracking"}
    )
    assert response.status_code == 404


def test_unknown_type_is_200_ignored(client, order):
    response = client.post(
        f"/api/webhooks/fulfillment/mystery_event?orderId={order.id}&token=tok", json={}
    )

    assert response.status_code == 200
    assert response.json()["ignored"] is True
