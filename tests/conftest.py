"""Shared fixtures: a throwaway SQLite database and a stubbed email transport."""

import os
import sys
import uuid
from unittest.mock import AsyncMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

# Settings are read when config is first imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["EMAIL_RETRY_DELAY_SEC"] = "0"
os.environ["STORAGE_RETRY_DELAY_SEC"] = "0"
os.environ["EMAIL_API_URL"] = "https://email.test/send"
os.environ["PAYFAST_MERCHANT_ID"] = "10000100"
os.environ["PAYFAST_MERCHANT_KEY"] = "46f0cd694581a"
os.environ["PAYFAST_PASSPHRASE"] = "jt7NOE43FZPn"
os.environ["PAYFAST_NOTIFY_URL"] = "https://bloomdesk.test/api/payments/payfast/itn"
os.environ["CRON_SECRET"] = "cron-secret"

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import models  # noqa: F401
from db.database import Base
from models.subscription import Subscription


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bloomdesk.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def sent_emails():
    """Every email 'succeeds'; tests can inspect or override the mock."""
    with patch("services.notifications.send_email", new=AsyncMock(return_value={})) as mock_send:
        yield mock_send


@pytest.fixture
def make_subscription(db):
    async def _make(**overrides) -> Subscription:
        values = dict(
            id=uuid.uuid4(),
            customer_id=uuid.uuid4(),
            customer_name="Thandi Mokoena",
            customer_email="thandi@example.co.za",
            plan_name="Seasonal Blooms",
            tier="bi-weekly",
            per_delivery_amount=699,
            monday_slots=["first", "third"],
            delivery_address={"street": "12 Protea Rd", "city": "Pretoria"},
            payment_method="payfast",
            status="active",
            next_billing_month="2025-04",
            recurring_charges=[],
        )
        values.update(overrides)
        subscription = Subscription(**values)
        db.add(subscription)
        await db.commit()
        return subscription

    return _make
