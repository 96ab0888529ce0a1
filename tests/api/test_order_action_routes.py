"""Tests for the admin action endpoint."""

from giftflow.services.errors import FulfillmentProviderError


def test_cancel_order(client, make_order, db_session):
    order = make_order(status="processing", fulfillment_request_id="req-1")

    response = client.post(
        "/api/orders/actions",
        json={"action": "cancel_order", "orderId": order.id, "cancellationReason": "Duplicate"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["providerCancellation"] == "successful"
    db_session.refresh(order)
    assert order.status == "cancelled"


def test_check_status(client, make_order):
    order = make_order(status="processing", fulfillment_request_id="req-1")

    response = client.post(
        "/api/orders/actions", json={"action": "check_order_status", "orderId": order.id}
    )

    assert response.status_code == 200
    assert response.json()["providerStatus"] == {"request_id": "req-1"}


def test_missing_order_is_404(client):
    response = client.post(
        "/api/orders/actions", json={"action": "cancel_order", "orderId": "missing"}
    )

    assert response.status_code == 404
    assert response.json()["success"] is False


def test_invalid_state_is_409(client, make_order):
    order = make_order(status="delivered", fulfillment_request_id="req-1")

    response = client.post(
        "/api/orders/actions", json={"action": "cancel_order", "orderId": order.id}
    )

    assert response.status_code == 409


def test_unknown_action_is_400(client, make_order):
    order = make_order()

    response = client.post("/api/orders/actions", json={"action": "explode", "orderId": order.id})

    assert response.status_code == 400
    assert "Unknown action" in response.json()["error"]


def test_provider_failure_on_abort_is_500(client, make_order, mock_fulfillment):
    order = make_order(status="processing", fulfillment_request_id="req-1")
    mock_fulfillment.abort_order.side_effect = FulfillmentProviderError(
        code="abort_refused", message="Too late"
    )

    response = client.post("/api/orders/actions", json={"action": "abort_order", "orderId": order.id})

    assert response.status_code == 500
    assert response.json()["error"].startswith("Fulfillment provider error")


def test_missing_fields_are_422(client):
    response = client.post("/api/orders/actions", json={"action": "cancel_order"})
    assert response.status_code == 422
