"""FastAPI application package for giftflow."""
