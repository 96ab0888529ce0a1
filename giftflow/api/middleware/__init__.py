"""HTTP middleware for the giftflow API."""
