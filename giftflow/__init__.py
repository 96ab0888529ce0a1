"""giftflow: scheduled gift order fulfillment pipeline."""

__version__ = "0.1.0"
