"""API test fixtures.

The client is created without entering its context manager so the
lifespan (schema creation on the module engine, cron start) does not run;
every route reads the test session through dependency overrides.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from giftflow.api.dependencies import (
    get_app_config,
    get_fulfillment_client,
    get_payment_gateway,
)
from giftflow.api.main import app
from giftflow.cli.config import GiftflowConfig, SchedulerConfig
from giftflow.db.connection import get_db
from giftflow.services.fulfillment_client import SubmitResult


@pytest.fixture
def mock_fulfillment():
    client = MagicMock()
    client.build_order_payload = MagicMock(return_value={"client_notes": {}})
    client.submit_order = AsyncMock(return_value=SubmitResult(request_id="req-api"))
    client.abort_order = AsyncMock(return_value={})
    client.retry_order = AsyncMock(return_value=SubmitResult(request_id="req-new"))
    client.get_order_status = AsyncMock(return_value={"request_id": "req-1"})
    return client


@pytest.fixture
def mock_payments():
    gateway = MagicMock()
    gateway.capture = AsyncMock(return_value="succeeded")
    return gateway


@pytest.fixture
def client(db_session, mock_fulfillment, mock_payments):
    def override_get_db():
        yield db_session

    config = GiftflowConfig(scheduler=SchedulerConfig(inter_order_delay_seconds=0))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_config] = lambda: config
    app.dependency_overrides[get_fulfillment_client] = lambda: mock_fulfillment
    app.dependency_overrides[get_payment_gateway] = lambda: mock_payments
    yield TestClient(app)
    app.dependency_overrides.clear()
