"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session (StaticPool)
- Order and purchaser factories
"""

import os

# Keep the module-level engine off the working directory during tests
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GIFTFLOW_DISABLE_CRON"] = "1"

from collections.abc import Callable, Generator
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from giftflow.db.models import Base, Order, OrderItem, UserProfile
from tests.helpers import PURCHASER_ID, days_from_today


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def purchaser(db_session: Session) -> UserProfile:
    """Purchasing account with a contact email."""
    profile = UserProfile(user_id=PURCHASER_ID, email="buyer@example.com", name="Pat Buyer")
    db_session.add(profile)
    db_session.commit()
    return profile


@pytest.fixture
def make_order(db_session: Session) -> Callable[..., Order]:
    """Factory for persisted orders.

    Defaults describe a paid, funded, single-item order due in four days.
    Keyword arguments override any Order column; ``items`` replaces the
    default line item.
    """

    def _make(**overrides: Any) -> Order:
        items = overrides.pop("items", None)
        fields: dict[str, Any] = {
            "order_number": f"GF-{uuid4().hex[:8].upper()}",
            "user_id": PURCHASER_ID,
            "status": "scheduled",
            "payment_status": "succeeded",
            "funding_status": "succeeded",
            "scheduled_delivery_date": days_from_today(4),
            "total_amount_cents": 2500,
            "gift_message": "Happy birthday!",
            "shipping_address": {
                "name": "Robin Recipient",
                "email": "recipient@example.com",
                "address_line1": "1 Gift Lane",
                "city": "Portland",
                "state": "OR",
                "zip_code": "97201",
                "country": "US",
            },
        }
        fields.update(overrides)
        order = Order(**fields)
        order.items = items if items is not None else [
            OrderItem(position=0, product_id="B00GIFT01", quantity=1, unit_price_cents=2500)
        ]
        db_session.add(order)
        db_session.commit()
        return order

    return _make
