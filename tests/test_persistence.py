"""
Tests for the Persistence Layer

Fixed-point amounts, error translation, conditional updates and connection cleanup.
"""

import asyncio
import sqlite3
import pytest
from decimal import Decimal

from credit_ledger.errors import ConflictError, StorageError
from credit_ledger.persistence import (
    BalanceRepository,
    BillableEventRecord,
    BillableEventRepository,
    BillableEventStatus,
    EntityType,
    PaymentConfirmationRecord,
    PaymentConfirmationRepository,
    PaymentConfirmationStatus,
    from_units,
    to_units,
)


class TestFixedPoint:
    """Amounts are stored as integer 1/10000 units."""

    def test_to_units(self):
        assert to_units(Decimal("2.00")) == 20000
        assert to_units("0.0033") == 33
        assert to_units(Decimal("-1.5")) == -15000

    def test_to_units_rounds_half_up(self):
        assert to_units(Decimal("0.00005")) == 1

    def test_from_units(self):
        assert from_units(20000) == Decimal("2.0000")
        assert from_units(None) == Decimal("0")


class TestErrorTranslation:
    """Driver exceptions never leak."""

    def test_duplicate_order_is_conflict(self, db):
        repo = PaymentConfirmationRepository(db)
        repo.create(PaymentConfirmationRecord(
            id="p-1", provider_order_id="ord_1", entity_id="u-1",
            entity_type=EntityType.USER, requested_amount=Decimal("5"),
        ))

        with pytest.raises(ConflictError):
            repo.create(PaymentConfirmationRecord(
                id="p-2", provider_order_id="ord_1", entity_id="u-1",
                entity_type=EntityType.USER, requested_amount=Decimal("5"),
            ))

    def test_duplicate_idempotency_id_is_conflict(self, db):
        repo = PaymentConfirmationRepository(db)
        record = PaymentConfirmationRecord(
            id="p-1", provider_order_id="ord_1", entity_id="u-1",
            entity_type=EntityType.USER, requested_amount=Decimal("5"),
        )
        repo.create(record)
        record.provider_order_id = "ord_2"

        with pytest.raises(ConflictError):
            repo.create(record)

    def test_bad_sql_is_storage_error(self, db):
        with pytest.raises(StorageError):
            db.execute("SELECT * FROM no_such_table")

    def test_failed_transaction_rolls_back(self, db):
        """Nothing in a failed unit of work is committed."""
        with pytest.raises(StorageError):
            with db.transaction() as tx:
                BalanceRepository(tx).increment("u-1", EntityType.USER, Decimal("5"))
                tx.execute("SELECT * FROM no_such_table")

        assert BalanceRepository(db).get("u-1") is None


class TestConditionalUpdates:

    def test_decrement_refuses_overdraft(self, db):
        repo = BalanceRepository(db)
        repo.increment("u-1", EntityType.USER, Decimal("1.00"))

        assert repo.decrement_if_sufficient("u-1", Decimal("1.01")) is None
        assert repo.decrement_if_sufficient("u-1", Decimal("1.00")).current_balance == Decimal("0")

    def test_compare_and_set_requires_expected(self, db):
        repo = BalanceRepository(db)
        repo.increment("u-1", EntityType.USER, Decimal("1.00"))

        assert repo.compare_and_set("u-1", Decimal("2.00"), Decimal("5.00")) is None
        assert repo.compare_and_set("u-1", Decimal("1.00"), Decimal("5.00")).current_balance == Decimal("5.00")

    def test_event_transition_only_from_pending(self, db):
        repo = BillableEventRepository(db)
        event = repo.create(BillableEventRecord(
            entity_id="u-1", entity_type=EntityType.USER, usage_seconds=60, cost=Decimal("0.20"),
        ))

        assert repo.transition(event.id, BillableEventStatus.PAID_BY_CREDITS) is True
        assert repo.transition(event.id, BillableEventStatus.NO_CHARGE) is False
        assert repo.get(event.id).status == BillableEventStatus.PAID_BY_CREDITS

    def test_confirmation_finalized_once(self, db):
        repo = PaymentConfirmationRepository(db)
        repo.create(PaymentConfirmationRecord(
            id="p-1", provider_order_id="ord_1", entity_id="u-1",
            entity_type=EntityType.USER, requested_amount=Decimal("5"),
        ))

        assert repo.mark_processed("p-1", Decimal("5")) is True
        assert repo.mark_failed("p-1", "late failure") is False
        assert repo.get("p-1").status == PaymentConfirmationStatus.PROCESSED


class TestClose:
    """close() reaches connections opened by worker threads."""

    def test_closes_every_thread_connection(self, db, store):
        asyncio.run(store.get_balance("u-1", EntityType.USER))
        opened = list(db._connections)
        assert len(opened) >= 2

        db.close()

        assert db._connections == []
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")

    def test_usable_after_close(self, db, store):
        asyncio.run(store.get_balance("u-1", EntityType.USER))
        db.close()

        assert asyncio.run(store.get_raw_balance("u-1")) == Decimal("2.00")
        assert db.execute("SELECT 1 AS one") == [{"one": 1}]
