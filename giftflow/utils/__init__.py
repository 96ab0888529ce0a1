"""Shared helpers for giftflow."""
