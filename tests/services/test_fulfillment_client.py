"""Tests for the fulfillment provider HTTP client."""

import base64
import json

import httpx
import pytest

from giftflow.db.models import OrderItem
from giftflow.services.errors import FulfillmentProviderError
from giftflow.services.fulfillment_client import FulfillmentClient, extract_error


def make_client(handler, **kwargs) -> FulfillmentClient:
    return FulfillmentClient(
        base_url="https://provider.test/v1",
        api_key="key-123",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRequests:
    async def test_submit_uses_basic_auth_and_returns_request_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"request_id": "req-abc"})

        result = await make_client(handler).submit_order({"retailer": "amazon"})

        assert result.request_id == "req-abc"
        expected = base64.b64encode(b"key-123:").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["path"] == "/v1/orders"
        assert seen["body"] == {"retailer": "amazon"}

    async def test_error_body_raises_with_provider_code(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"_type": "error", "code": "insufficient_zma_balance", "message": "Top up"},
            )

        with pytest.raises(FulfillmentProviderError) as exc_info:
            await make_client(handler).submit_order({})

        assert exc_info.value.code == "insufficient_zma_balance"
        assert exc_info.value.message == "Top up"

    async def test_http_error_without_code(self):
        def handler(request):
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(FulfillmentProviderError) as exc_info:
            await make_client(handler).get_order_status("req-1")

        assert exc_info.value.code == "http_500"
        assert exc_info.value.status_code == 500

    async def test_timeout_becomes_provider_error(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(FulfillmentProviderError) as exc_info:
            await make_client(handler).submit_order({})

        assert exc_info.value.code == "request_timeout"

    async def test_connection_failure_becomes_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(FulfillmentProviderError) as exc_info:
            await make_client(handler).abort_order("req-1")

        assert exc_info.value.code == "network_error"

    async def test_missing_request_id(self):
        def handler(request):
            return httpx.Response(200, json={"status": "accepted"})

        with pytest.raises(FulfillmentProviderError) as exc_info:
            await make_client(handler).submit_order({})

        assert exc_info.value.code == "missing_request_id"

    async def test_retry_returns_new_request_id(self):
        def handler(request):
            assert request.url.path == "/v1/orders/req-1/retry"
            return httpx.Response(200, json={"request_id": "req-2"})

        result = await make_client(handler).retry_order("req-1")

        assert result.request_id == "req-2"

    async def test_retry_keeps_original_id_when_none_returned(self):
        def handler(request):
            return httpx.Response(200, json={})

        result = await make_client(handler).retry_order("req-1")

        assert result.request_id == "req-1"


class TestPayload:
    def test_single_recipient_payload(self, make_order):
        order = make_order(webhook_token="tok")
        client = FulfillmentClient(webhook_base_url="https://app.test/api/webhooks/fulfillment/")

        payload = client.build_order_payload(order, retry_attempt=1)

        assert payload["products"] == [
            {"product_id": "B00GIFT01", "quantity": 1, "max_price": 2500}
        ]
        assert payload["max_price"] == 2500
        assert payload["gift_message"] == "Happy birthday!"
        assert payload["shipping_address"]["first_name"] == "Robin"
        assert payload["shipping_address"]["last_name"] == "Recipient"
        assert payload["client_notes"]["order_id"] == order.id
        assert payload["client_notes"]["retry_attempt"] == 1
        assert payload["webhooks"]["tracking_obtained"] == (
            "https://app.test/api/webhooks/fulfillment/tracking_obtained"
            f"?orderId={order.id}&token=tok"
        )

    def test_no_webhooks_without_base_url(self, make_order):
        payload = FulfillmentClient().build_order_payload(make_order())
        assert "webhooks" not in payload

    def test_multi_recipient_uses_first_group(self, make_order):
        groups = [
            {"recipient": "A", "shipping_address": {"name": "Alex Able", "city": "Austin"}},
            {"recipient": "B", "shipping_address": {"name": "Blair Baker", "city": "Boise"}},
        ]
        order = make_order(
            has_multiple_recipients=True,
            delivery_groups_json=json.dumps(groups),
            items=[
                OrderItem(position=0, product_id="P1", quantity=2, unit_price_cents=1000),
                OrderItem(position=1, product_id="P2", quantity=1, unit_price_cents=500),
            ],
        )

        payload = FulfillmentClient().build_order_payload(order)

        assert payload["shipping_address"]["city"] == "Austin"
        assert payload["client_notes"]["delivery_groups"] == groups
        assert payload["max_price"] == 2500


class TestExtractError:
    def test_nested_error_object(self):
        assert extract_error({"error": {"code": "x", "message": "y"}}) == ("x", "y")

    def test_root_fields(self):
        assert extract_error({"error_code": "x"}) == ("x", None)

    def test_string_error(self):
        assert extract_error({"error": "went wrong"}) == (None, "went wrong")
