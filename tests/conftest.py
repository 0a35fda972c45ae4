"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
from decimal import Decimal

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"

from credit_ledger.billing import (
    BalanceStore,
    BillableEventService,
    CostCalculator,
    Ledger,
    PaymentConfirmationProcessor,
)
from credit_ledger.persistence import Database


@pytest.fixture
def db_url(tmp_path):
    """URL of a fresh SQLite file. Worker threads each open their own connection."""
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def db(db_url):
    """Initialized database for one test."""
    database = Database(db_url)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return BalanceStore(db, initial_grant=Decimal("2.00"))


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def events(db, store):
    return BillableEventService(db, store, CostCalculator(600, Decimal("2.00")))


@pytest.fixture
def payments(db, store):
    return PaymentConfirmationProcessor(db, store)


@pytest.fixture
def paid_order_payload():
    """Paid order webhook body for $10.00."""
    return {
        "meta": {
            "event_name": "order_created",
            "custom_data": {
                "entity_id": "org-1",
                "entity_type": "organization",
                "credit_purchase_id": "purchase-1",
            },
        },
        "data": {
            "id": "ord_1",
            "attributes": {"status": "paid", "total": 1000},
        },
    }
