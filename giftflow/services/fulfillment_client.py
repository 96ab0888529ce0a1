"""Fulfillment provider API client.

Thin async wrapper over the provider's order API: submit, status, native
retry and native abort. Authenticates with HTTP Basic auth using the API key
as the username. Every failure, including transport timeouts, is raised as
FulfillmentProviderError so callers can route it through the classifier.

Example:
    client = FulfillmentClient(base_url="https://api.zinc.io/v1", api_key="...")
    result = await client.submit_order(payload)
    status = await client.get_order_status(result.request_id)
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from giftflow.db.models import Order
from giftflow.services.errors import FulfillmentProviderError
from giftflow.utils.redaction import redact_for_logging

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.zinc.io/v1"

# Canonical webhook events registered with every submission
WEBHOOK_EVENTS = (
    "request_succeeded",
    "request_failed",
    "tracking_obtained",
    "status_updated",
    "case_updated",
)


@dataclass
class SubmitResult:
    """Accepted provider submission.

    Attributes:
        request_id: Provider request id to store as fulfillment_request_id.
        raw: Full response body.
    """

    request_id: str
    raw: dict[str, Any] = field(default_factory=dict)


class FulfillmentClient:
    """Async client for the fulfillment provider order API.

    Attributes:
        base_url: Provider API root (no trailing slash).
        retailer: Retailer identifier sent with submissions.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        retailer: str = "amazon",
        webhook_base_url: str | None = None,
        timeout: float | None = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Provider API root.
            api_key: Provider API key (Basic auth username).
            retailer: Retailer identifier.
            webhook_base_url: Public URL of the webhook endpoint; when set,
                per-event webhook URLs are attached to submissions.
            timeout: HTTP timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.retailer = retailer
        self._api_key = api_key
        self._webhook_base_url = webhook_base_url.rstrip("/") if webhook_base_url else None
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self._api_key, ""),
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Issue a request and normalise every failure to FulfillmentProviderError.

        Raises:
            FulfillmentProviderError: On timeouts, transport errors, non-2xx
                responses and ``_type: "error"`` bodies.
        """
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json_body)
        except httpx.TimeoutException as e:
            raise FulfillmentProviderError(
                code="request_timeout",
                message=f"Timed out calling fulfillment provider: {e}",
            ) from e
        except httpx.RequestError as e:
            raise FulfillmentProviderError(
                code="network_error",
                message=f"Could not reach fulfillment provider: {e}",
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code >= 400 or data.get("_type") == "error":
            code, message = extract_error(data)
            raise FulfillmentProviderError(
                code=code or f"http_{response.status_code}",
                message=message or f"Provider returned HTTP {response.status_code}",
                status_code=response.status_code,
                data=data,
            )
        return data

    def webhook_urls(self, order: Order) -> dict[str, str]:
        """Build per-event webhook URLs bound to the order's current token."""
        if not self._webhook_base_url:
            return {}
        query = f"orderId={order.id}&token={order.webhook_token or ''}"
        return {
            event: f"{self._webhook_base_url}/{event}?{query}" for event in WEBHOOK_EVENTS
        }

    def build_order_payload(self, order: Order, retry_attempt: int = 0) -> dict[str, Any]:
        """Assemble the provider submission body for an order.

        Multi-recipient orders are sent as one request: the shipping address
        comes from the first delivery group and the full grouping travels in
        client_notes.

        Args:
            order: Order to submit (items loaded).
            retry_attempt: Number of previous counted attempts.

        Returns:
            JSON-serialisable request body.
        """
        groups = order.delivery_groups
        address = order.shipping_address
        if order.has_multiple_recipients and groups:
            address = groups[0].get("shipping_address") or address

        products = [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "max_price": item.unit_price_cents,
            }
            for item in order.items
        ]
        max_price = sum(item.unit_price_cents * item.quantity for item in order.items)

        payload: dict[str, Any] = {
            "retailer": self.retailer,
            "products": products,
            "shipping_address": _provider_address(address),
            "max_price": max_price or order.total_amount_cents,
            "is_gift": order.is_gift,
            "addax": True,
            "client_notes": {
                "order_id": order.id,
                "order_number": order.order_number,
                "retry_attempt": retry_attempt,
            },
        }
        if order.gift_message:
            payload["gift_message"] = order.gift_message
        if order.has_multiple_recipients and groups:
            payload["client_notes"]["delivery_groups"] = groups
        webhooks = self.webhook_urls(order)
        if webhooks:
            payload["webhooks"] = webhooks
        return payload

    async def submit_order(self, payload: dict[str, Any]) -> SubmitResult:
        """Submit an order to the provider.

        Args:
            payload: Body from build_order_payload().

        Returns:
            SubmitResult with the provider request id.

        Raises:
            FulfillmentProviderError: If the provider rejects the order or
                returns no request id.
        """
        logger.info(
            "Submitting order to provider: %s",
            redact_for_logging(payload.get("client_notes", {})),
        )
        data = await self._request("POST", "/orders", payload)
        request_id = data.get("request_id") or data.get("id")
        if not request_id:
            raise FulfillmentProviderError(
                code="missing_request_id",
                message="Provider accepted the order but returned no request id",
                data=data,
            )
        return SubmitResult(request_id=str(request_id), raw=data)

    async def get_order_status(self, request_id: str) -> dict[str, Any]:
        """Fetch live provider status for a request id.

        Raises:
            FulfillmentProviderError: On any provider or transport failure.
        """
        return await self._request("GET", f"/orders/{request_id}")

    async def retry_order(self, request_id: str) -> SubmitResult:
        """Ask the provider to retry a request natively.

        Returns:
            SubmitResult holding the replacement request id (the original id
            when the provider does not issue a new one).
        """
        data = await self._request("POST", f"/orders/{request_id}/retry", {})
        new_id = data.get("request_id") or data.get("id") or request_id
        return SubmitResult(request_id=str(new_id), raw=data)

    async def abort_order(self, request_id: str) -> dict[str, Any]:
        """Ask the provider to abort a request.

        Raises:
            FulfillmentProviderError: If the provider refuses the abort.
        """
        return await self._request("POST", f"/orders/{request_id}/abort", {})


def extract_error(data: dict[str, Any]) -> tuple[str | None, str | None]:
    """Pull an error code and message from a provider payload.

    Providers are inconsistent: fields may sit at the root or under an
    ``error`` object.

    Args:
        data: Provider response or webhook body.

    Returns:
        Tuple of (code, message); either may be None.
    """
    nested = data.get("error")
    if isinstance(nested, dict):
        code = nested.get("code") or data.get("code")
        message = nested.get("message") or data.get("message")
    else:
        code = data.get("code") or data.get("error_code")
        message = data.get("message") or (nested if isinstance(nested, str) else None)
    return (str(code) if code else None, str(message) if message else None)


def _provider_address(address: dict[str, Any]) -> dict[str, Any]:
    name = address.get("name") or ""
    first_name = address.get("first_name") or (name.split(" ")[0] if name else "")
    last_name = address.get("last_name") or " ".join(name.split(" ")[1:])
    return {
        "first_name": first_name,
        "last_name": last_name,
        "address_line1": address.get("address_line1") or address.get("address") or "",
        "address_line2": address.get("address_line2") or "",
        "zip_code": address.get("zip_code") or address.get("zipCode") or "",
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "country": address.get("country") or "US",
        "phone_number": address.get("phone_number") or address.get("phone") or "",
    }
