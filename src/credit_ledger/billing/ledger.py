"""
Ledger / Transaction Log

Read side of the append-only ledger. Rows are only ever written inside the
database transaction that mutates a balance (see BalanceStore and
BillableEventService), so the signed sum of an entity's rows equals its
stored balance whenever no write is in flight.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from ..persistence.database import Database, get_database
from ..errors import NotFoundError
from ..persistence.models import EntityType, LedgerTransactionRecord, from_units
from ..persistence.repository import BalanceRepository, LedgerRepository

logger = structlog.get_logger()


@dataclass
class ReconciliationReport:
    """Comparison of a stored balance with its ledger."""
    entity_id: str
    balance: Decimal
    ledger_total: Decimal
    transaction_count: int

    @property
    def difference(self) -> Decimal:
        return self.balance - self.ledger_total

    @property
    def balanced(self) -> bool:
        return self.difference == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "balance": str(self.balance),
            "ledger_total": str(self.ledger_total),
            "difference": str(self.difference),
            "transaction_count": self.transaction_count,
            "balanced": self.balanced,
        }


class Ledger:
    """Queries and audits over the transaction log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.transactions = LedgerRepository(self.db)

    async def list_transactions(
        self,
        entity_id: str,
        limit: int = 100,
        entity_type: Optional[EntityType] = None,
    ) -> List[LedgerTransactionRecord]:
        """Transactions for an entity, newest first. Optionally only rows of one entity type."""
        return await asyncio.to_thread(self.transactions.list_by_entity, entity_id, limit, entity_type)

    async def total_for_entity(self, entity_id: str) -> Decimal:
        """Signed sum of all transactions for an entity."""
        return await asyncio.to_thread(self.transactions.total_for_entity, entity_id)

    async def reconcile(self, entity_id: str, entity_type: Optional[EntityType] = None) -> ReconciliationReport:
        """
        Check that the ledger explains the stored balance.

        With entity_type, raises NotFoundError when the balance belongs to an
        entity of another type.
        """
        report = await asyncio.to_thread(self._reconcile, entity_id, entity_type)

        if report.balanced:
            logger.debug("ledger_balanced", entity_id=entity_id, balance=str(report.balance))
        else:
            logger.error(
                "ledger_out_of_balance",
                entity_id=entity_id,
                balance=str(report.balance),
                ledger_total=str(report.ledger_total),
                difference=str(report.difference),
            )
        return report

    def _reconcile(self, entity_id: str, entity_type: Optional[EntityType]) -> ReconciliationReport:
        # One transaction so both reads see the same snapshot on PostgreSQL
        with self.db.transaction() as tx:
            record = BalanceRepository(tx).get(entity_id)
            if record is not None and entity_type is not None and record.entity_type != entity_type:
                raise NotFoundError(f"No {entity_type.value} balance for {entity_id}")
            ledger = LedgerRepository(tx)
            total = ledger.total_for_entity(entity_id)
            count = ledger.count_by_entity(entity_id)

        return ReconciliationReport(
            entity_id=entity_id,
            balance=record.current_balance if record else from_units(0),
            ledger_total=total,
            transaction_count=count,
        )
