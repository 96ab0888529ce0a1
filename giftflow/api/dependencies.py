"""FastAPI dependency providers for configured service collaborators.

Routes receive the provider client and payment gateway through these
functions so tests can swap them with ``app.dependency_overrides``.
"""

from giftflow.cli.config import GiftflowConfig, get_config
from giftflow.services.cron import build_fulfillment_client
from giftflow.services.fulfillment_client import FulfillmentClient
from giftflow.services.payment_gateway import PaymentGateway, StripePaymentGateway


def get_app_config() -> GiftflowConfig:
    """Dependency to get the process-wide configuration."""
    return get_config()


def get_fulfillment_client() -> FulfillmentClient:
    """Dependency to get a FulfillmentClient built from configuration."""
    return build_fulfillment_client(get_config())


def get_payment_gateway() -> PaymentGateway:
    """Dependency to get the Stripe capture gateway."""
    return StripePaymentGateway(get_config().payments.stripe_api_key)
