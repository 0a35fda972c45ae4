"""
Repository Layer for the Credit Ledger

Provides the storage operations for all persisted entities.

Repositories accept either a Database (each call is its own transaction) or a
Transaction from Database.transaction() (calls commit together). Every balance
mutation is a single SQL statement, so concurrent writers never lose updates.
"""

from decimal import Decimal
from typing import Any, List, Optional, Sequence
from datetime import datetime, timezone
import structlog

from .database import get_database
from .models import (
    BalanceRecord,
    BillableEventRecord,
    BillableEventStatus,
    EntityType,
    LedgerTransactionRecord,
    PaymentConfirmationRecord,
    PaymentConfirmationStatus,
    from_units,
    to_units,
)

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entity_filter(table: str, entity_id: str, entity_type: Optional[EntityType]):
    query = f"SELECT * FROM {table} WHERE entity_id = ?"
    params: tuple = (entity_id,)
    if entity_type is not None:
        query += " AND entity_type = ?"
        params += (entity_type.value,)
    return query, params


class BalanceRepository:
    """Repository for balance records."""

    def __init__(self, db: Optional[Any] = None):
        self.db = db or get_database()

    def get(self, entity_id: str) -> Optional[BalanceRecord]:
        """Get a balance record by entity ID."""
        results = self.db.execute(
            "SELECT * FROM balances WHERE entity_id = ?",
            (entity_id,)
        )
        return BalanceRecord.from_row(results[0]) if results else None

    def insert_if_absent(self, entity_id: str, entity_type: EntityType, initial_grant: Decimal) -> bool:
        """
        Create a granted balance record unless one exists.

        Returns True only for the caller whose insert took effect.
        """
        now = _now()
        results = self.db.execute(
            """INSERT INTO balances
               (entity_id, entity_type, current_balance, initial_grant_applied, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (entity_id) DO NOTHING
               RETURNING entity_id""",
            (entity_id, entity_type.value, to_units(initial_grant), True, now, now)
        )
        return bool(results)

    def apply_pending_grant(self, entity_id: str, initial_grant: Decimal) -> Optional[BalanceRecord]:
        """Add the grant to a record that never received it. None if nothing to do."""
        results = self.db.execute(
            """UPDATE balances
               SET current_balance = current_balance + ?, initial_grant_applied = ?, updated_at = ?
               WHERE entity_id = ? AND initial_grant_applied = ?
               RETURNING *""",
            (to_units(initial_grant), True, _now(), entity_id, False)
        )
        return BalanceRecord.from_row(results[0]) if results else None

    def increment(self, entity_id: str, entity_type: EntityType, delta: Decimal) -> BalanceRecord:
        """
        Atomically add delta and return the updated record.

        An absent record is created holding delta, with the initial grant
        still outstanding.
        """
        now = _now()
        results = self.db.execute(
            """INSERT INTO balances
               (entity_id, entity_type, current_balance, initial_grant_applied, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (entity_id) DO UPDATE
               SET current_balance = balances.current_balance + excluded.current_balance,
                   updated_at = excluded.updated_at
               RETURNING *""",
            (entity_id, entity_type.value, to_units(delta), False, now, now)
        )
        return BalanceRecord.from_row(results[0])

    def decrement_if_sufficient(self, entity_id: str, amount: Decimal) -> Optional[BalanceRecord]:
        """Atomically subtract amount if the balance covers it. None otherwise."""
        units = to_units(amount)
        results = self.db.execute(
            """UPDATE balances
               SET current_balance = current_balance - ?, updated_at = ?
               WHERE entity_id = ? AND current_balance >= ?
               RETURNING *""",
            (units, _now(), entity_id, units)
        )
        return BalanceRecord.from_row(results[0]) if results else None

    def compare_and_set(self, entity_id: str, expected: Decimal, new_amount: Decimal) -> Optional[BalanceRecord]:
        """Overwrite the balance only if it still equals expected."""
        results = self.db.execute(
            """UPDATE balances
               SET current_balance = ?, updated_at = ?
               WHERE entity_id = ? AND current_balance = ?
               RETURNING *""",
            (to_units(new_amount), _now(), entity_id, to_units(expected))
        )
        return BalanceRecord.from_row(results[0]) if results else None


class LedgerRepository:
    """Repository for the append-only transaction log."""

    def __init__(self, db: Optional[Any] = None):
        self.db = db or get_database()

    def create(self, record: LedgerTransactionRecord) -> LedgerTransactionRecord:
        """Append a ledger transaction."""
        self.db.execute(
            """INSERT INTO ledger_transactions
               (id, entity_id, entity_type, amount, type, description,
                provider_reference, billable_event_id, balance_after, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def list_by_entity(
        self,
        entity_id: str,
        limit: int = 100,
        entity_type: Optional[EntityType] = None,
    ) -> List[LedgerTransactionRecord]:
        """Get transactions for an entity, newest first."""
        query, params = _entity_filter("ledger_transactions", entity_id, entity_type)
        results = self.db.execute(query + " ORDER BY created_at DESC LIMIT ?", params + (limit,))
        return [LedgerTransactionRecord.from_row(r) for r in results]

    def total_for_entity(self, entity_id: str) -> Decimal:
        """Signed sum of every transaction for an entity."""
        results = self.db.execute(
            "SELECT COALESCE(SUM(amount), 0) as total FROM ledger_transactions WHERE entity_id = ?",
            (entity_id,)
        )
        return from_units(results[0]["total"] if results else 0)

    def count_by_entity(self, entity_id: str) -> int:
        """Count transactions for an entity."""
        results = self.db.execute(
            "SELECT COUNT(*) as cnt FROM ledger_transactions WHERE entity_id = ?",
            (entity_id,)
        )
        return results[0]["cnt"] if results else 0


class BillableEventRepository:
    """Repository for billable events."""

    def __init__(self, db: Optional[Any] = None):
        self.db = db or get_database()

    def create(self, event: BillableEventRecord) -> BillableEventRecord:
        """Create a billable event."""
        self.db.execute(
            """INSERT INTO billable_events
               (id, entity_id, entity_type, usage_seconds, cost, status,
                reference, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        return event

    def get(self, event_id: str) -> Optional[BillableEventRecord]:
        """Get an event by ID."""
        results = self.db.execute(
            "SELECT * FROM billable_events WHERE id = ?",
            (event_id,)
        )
        return BillableEventRecord.from_row(results[0]) if results else None

    def list_by_entity(
        self,
        entity_id: str,
        limit: int = 100,
        entity_type: Optional[EntityType] = None,
    ) -> List[BillableEventRecord]:
        """Get events for an entity, newest first."""
        query, params = _entity_filter("billable_events", entity_id, entity_type)
        results = self.db.execute(query + " ORDER BY created_at DESC LIMIT ?", params + (limit,))
        return [BillableEventRecord.from_row(r) for r in results]

    def list_pending(self, created_before: str, limit: int = 500) -> List[BillableEventRecord]:
        """Get events still awaiting a credit check, oldest first."""
        results = self.db.execute(
            """SELECT * FROM billable_events
               WHERE status = ? AND created_at < ?
               ORDER BY created_at ASC LIMIT ?""",
            (BillableEventStatus.PENDING_CREDIT_CHECK.value, created_before, limit)
        )
        return [BillableEventRecord.from_row(r) for r in results]

    def transition(self, event_id: str, status: BillableEventStatus) -> bool:
        """
        Move a pending event to a terminal status.

        Returns False when the event is no longer pending.
        """
        results = self.db.execute(
            """UPDATE billable_events SET status = ?, updated_at = ?
               WHERE id = ? AND status = ?
               RETURNING id""",
            (status.value, _now(), event_id, BillableEventStatus.PENDING_CREDIT_CHECK.value)
        )
        if results:
            logger.debug("billable_event_status_updated", event_id=event_id, status=status.value)
        return bool(results)


class PaymentConfirmationRepository:
    """Repository for payment confirmations."""

    def __init__(self, db: Optional[Any] = None):
        self.db = db or get_database()

    def create(self, confirmation: PaymentConfirmationRecord) -> PaymentConfirmationRecord:
        """
        Insert a confirmation.

        Raises ConflictError when the idempotency ID or provider order ID
        was already recorded.
        """
        self.db.execute(
            """INSERT INTO payment_confirmations
               (id, provider_order_id, entity_id, entity_type, requested_amount,
                granted_amount, status, raw_payload, failure_reason, created_at, processed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            confirmation.to_db_tuple()
        )
        return confirmation

    def get(self, confirmation_id: str) -> Optional[PaymentConfirmationRecord]:
        """Get a confirmation by its idempotency ID."""
        results = self.db.execute(
            "SELECT * FROM payment_confirmations WHERE id = ?",
            (confirmation_id,)
        )
        return PaymentConfirmationRecord.from_row(results[0]) if results else None

    def get_by_order_id(self, provider_order_id: str) -> Optional[PaymentConfirmationRecord]:
        """Get a confirmation by the provider's order ID."""
        results = self.db.execute(
            "SELECT * FROM payment_confirmations WHERE provider_order_id = ?",
            (provider_order_id,)
        )
        return PaymentConfirmationRecord.from_row(results[0]) if results else None

    def mark_processed(self, confirmation_id: str, granted_amount: Decimal) -> bool:
        """Finalize a pending confirmation as processed."""
        results = self.db.execute(
            """UPDATE payment_confirmations
               SET status = ?, granted_amount = ?, processed_at = ?
               WHERE id = ? AND status = ?
               RETURNING id""",
            (
                PaymentConfirmationStatus.PROCESSED.value,
                to_units(granted_amount),
                _now(),
                confirmation_id,
                PaymentConfirmationStatus.PENDING_PROCESSING.value,
            )
        )
        return bool(results)

    def mark_failed(self, confirmation_id: str, failure_reason: str) -> bool:
        """Finalize a pending confirmation as failed."""
        results = self.db.execute(
            """UPDATE payment_confirmations
               SET status = ?, failure_reason = ?, processed_at = ?
               WHERE id = ? AND status = ?
               RETURNING id""",
            (
                PaymentConfirmationStatus.FAILED.value,
                failure_reason,
                _now(),
                confirmation_id,
                PaymentConfirmationStatus.PENDING_PROCESSING.value,
            )
        )
        return bool(results)

    def list_by_status(
        self,
        statuses: Sequence[PaymentConfirmationStatus],
        limit: int = 500,
    ) -> List[PaymentConfirmationRecord]:
        """List confirmations in any of the given statuses, oldest first."""
        if not statuses:
            return []

        placeholders = ",".join(["?" for _ in statuses])
        results = self.db.execute(
            f"SELECT * FROM payment_confirmations WHERE status IN ({placeholders}) ORDER BY created_at ASC LIMIT ?",
            (*[s.value for s in statuses], limit)
        )
        return [PaymentConfirmationRecord.from_row(r) for r in results]
