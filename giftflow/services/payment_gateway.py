"""Payment capture trigger.

The pipeline does not implement capture itself; it asks a gateway to capture
a previously authorised payment intent and reacts to the outcome. A failed
capture is transient from the batch scheduler's point of view.
"""

import asyncio
import logging
from typing import Protocol

import stripe

from giftflow.services.errors import PaymentCaptureError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Interface the batch scheduler uses to capture payment."""

    async def capture(self, payment_intent_id: str, order_id: str) -> str:
        """Capture an authorised payment intent.

        Returns:
            The gateway's resulting payment status (e.g. "succeeded").

        Raises:
            PaymentCaptureError: If capture did not succeed.
        """
        ...


class StripePaymentGateway:
    """Capture payment intents through the Stripe API."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def capture(self, payment_intent_id: str, order_id: str) -> str:
        """Capture a Stripe PaymentIntent.

        The blocking SDK call runs in a worker thread. The order id is used as
        the idempotency key so a repeated capture for the same order is a no-op
        on Stripe's side.

        Args:
            payment_intent_id: Stripe PaymentIntent id.
            order_id: Order being captured.

        Returns:
            "succeeded" when the intent is captured.

        Raises:
            PaymentCaptureError: On Stripe errors or a non-succeeded intent.
        """
        if not self._api_key:
            raise PaymentCaptureError(
                payment_intent_id=payment_intent_id,
                message="Stripe API key is not configured",
                code="not_configured",
            )
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.capture,
                payment_intent_id,
                api_key=self._api_key,
                idempotency_key=f"capture-{order_id}",
            )
        except stripe.StripeError as e:
            logger.warning("Stripe capture failed for order %s: %s", order_id, e)
            raise PaymentCaptureError(
                payment_intent_id=payment_intent_id,
                message=str(e.user_message or e),
                code=getattr(e, "code", None),
            ) from e

        status = intent.get("status") if hasattr(intent, "get") else intent.status
        if status != "succeeded":
            raise PaymentCaptureError(
                payment_intent_id=payment_intent_id,
                message=f"Payment intent status is '{status}' after capture",
                code=status,
            )
        return "succeeded"
