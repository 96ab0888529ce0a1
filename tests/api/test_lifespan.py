"""Tests for API startup and shutdown."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from giftflow.api.main import app


def test_lifespan_creates_schema_and_disposes_engine():
    with (
        patch("giftflow.api.main.init_db") as init_db,
        patch("giftflow.api.main.close_db") as close_db,
    ):
        with TestClient(app) as client:
            init_db.assert_called_once()
            close_db.assert_not_called()
            assert client.get("/health").status_code == 200
        close_db.assert_called_once()
