"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("HUBSPOT_ACCESS_TOKEN", "hubspot_test_token")
os.environ.setdefault("RECONCILIATION_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PREMIUM_RECONCILIATION_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RECONCILIATION_BATCH_DELAY_SECONDS", "0")

from recon_sdk.database import Base, Customer, Transaction, create_async_engine, get_async_session_factory

from fakes import make_event


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed_transfer(session_factory):
    """Insert a local transfer snapshot and return it."""
    async def _seed(external_id="transfer-123", status="pending", amount="100.00", **fields):
        async with session_factory() as session:
            transfer = Transaction(
                external_id=external_id,
                status=status,
                amount=Decimal(amount),
                currency="USD",
                **fields,
            )
            session.add(transfer)
            await session.commit()
            return transfer
    return _seed


@pytest.fixture
async def seed_customer(session_factory):
    """Insert a local customer snapshot and return it."""
    async def _seed(external_id="customer-1", status="unverified", metadata=None, **fields):
        async with session_factory() as session:
            customer = Customer(external_id=external_id, status=status, name="Acme Corp", **fields)
            customer.customer_metadata = metadata
            session.add(customer)
            await session.commit()
            return customer
    return _seed


@pytest.fixture
def status_event():
    """Provider event reporting transfer-123 as completed."""
    return make_event("transfer-123", status="completed", amount="100.00")


@pytest.fixture
def mock_stripe_event():
    """Create a mock Stripe Event for a succeeded PaymentIntent."""
    created = datetime.utcnow() - timedelta(minutes=10)
    mock_event = MagicMock()
    mock_event.id = "evt_1234567890"
    mock_event.to_dict.return_value = {
        "id": "evt_1234567890",
        "type": "payment_intent.succeeded",
        "created": int((created - datetime(1970, 1, 1)).total_seconds()),
        "data": {
            "object": {
                "id": "pi_1234567890abcdefghijklmno",
                "object": "payment_intent",
                "status": "succeeded",
                "amount": 10050,
                "currency": "usd",
                "client_secret": "pi_xxx_secret_xxx",
                "metadata": {"correlationId": "corr-1"},
            }
        },
    }
    return mock_event
