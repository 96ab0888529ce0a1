"""Command line interface and configuration for giftflow."""
