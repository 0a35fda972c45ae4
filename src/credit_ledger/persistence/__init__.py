"""
Persistence Layer for the Credit Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    BalanceRecord,
    BillableEventRecord,
    BillableEventStatus,
    EntityType,
    LedgerTransactionRecord,
    PaymentConfirmationRecord,
    PaymentConfirmationStatus,
    TransactionType,
    from_units,
    to_units,
)
from .repository import (
    BalanceRepository,
    BillableEventRepository,
    LedgerRepository,
    PaymentConfirmationRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "BalanceRecord",
    "BillableEventRecord",
    "BillableEventStatus",
    "EntityType",
    "LedgerTransactionRecord",
    "PaymentConfirmationRecord",
    "PaymentConfirmationStatus",
    "TransactionType",
    "from_units",
    "to_units",
    "BalanceRepository",
    "BillableEventRepository",
    "LedgerRepository",
    "PaymentConfirmationRepository",
]
