"""
Credit Ledger - Billing Module

- Cost calculator: usage duration -> monetary cost
- Balance store: per-entity balance with a one-time initial grant
- Ledger: append-only transaction log and reconciliation
- Billable events: usage charged against credits
- Payment confirmations: idempotent crediting from payment notifications
"""

from .cost import CostCalculator
from .balance_store import BalanceStore
from .ledger import Ledger, ReconciliationReport
from .events import BillableEventService, PendingSweepResult
from .payments import (
    ConfirmationOutcome,
    ConfirmationResult,
    PaymentConfirmationProcessor,
)

__all__ = [
    "CostCalculator",
    "BalanceStore",
    "Ledger",
    "ReconciliationReport",
    "BillableEventService",
    "PendingSweepResult",
    "ConfirmationOutcome",
    "ConfirmationResult",
    "PaymentConfirmationProcessor",
]
