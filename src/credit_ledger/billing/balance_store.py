"""
Balance Store

Durable per-entity credit balance with lazy initial grant.

Every mutation is one SQL statement (insert-if-absent, increment, conditional
decrement, or compare-and-swap) and commits in the same database transaction
as its ledger row. Blocking database calls run in worker threads so callers
suspend instead of blocking the event loop.
"""

import asyncio
from decimal import Decimal
from typing import Optional
import structlog

from ..errors import ConflictError, NotFoundError, ValidationError
from ..persistence.database import Database, get_database
from ..persistence.models import (
    BalanceRecord,
    EntityType,
    LedgerTransactionRecord,
    TransactionType,
    from_units,
    to_units,
)
from ..persistence.repository import BalanceRepository, LedgerRepository

logger = structlog.get_logger()


def _quantize(amount) -> Decimal:
    """Normalize an amount to the stored precision."""
    return from_units(to_units(amount))


class BalanceStore:
    """
    Per-entity balance with an initial grant applied exactly once.

    State per entity:
        absent -> granted (balance = initial_grant, initial_grant_applied = True)
        pending grant (created by a credit before first read) -> granted
    """

    DEFAULT_INITIAL_GRANT = Decimal("2.00")
    MAX_CAS_ATTEMPTS = 10

    def __init__(
        self,
        db: Optional[Database] = None,
        initial_grant: Optional[Decimal] = None,
    ):
        self.db = db or get_database()
        self.initial_grant = _quantize(
            initial_grant if initial_grant is not None else self.DEFAULT_INITIAL_GRANT
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, entity_id: str, entity_type: EntityType) -> Decimal:
        """
        Current balance, creating the record with the initial grant on first access.

        A record that exists without the grant (credited before it was ever
        read) receives the grant here, once.
        """
        return await asyncio.to_thread(self._get_balance, entity_id, entity_type)

    async def get_raw_balance(self, entity_id: str) -> Decimal:
        """Stored balance without any grant side effect. Zero if no record."""
        record = await asyncio.to_thread(BalanceRepository(self.db).get, entity_id)
        return record.current_balance if record else from_units(0)

    async def get_record(self, entity_id: str) -> Optional[BalanceRecord]:
        """Stored balance record, if any."""
        return await asyncio.to_thread(BalanceRepository(self.db).get, entity_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def atomic_adjust(
        self,
        entity_id: str,
        delta: Decimal,
        entity_type: EntityType,
        transaction_type: TransactionType = TransactionType.MANUAL_ADJUSTMENT,
        description: Optional[str] = None,
        provider_reference: Optional[str] = None,
    ) -> Decimal:
        """
        Add delta (signed) in a single statement and record it in the ledger.

        Safe under any number of concurrent callers. Returns the new balance.
        """
        return await asyncio.to_thread(
            self._atomic_adjust,
            entity_id,
            _quantize(delta),
            entity_type,
            transaction_type,
            description,
            provider_reference,
        )

    async def add_amount(
        self,
        entity_id: str,
        delta: Decimal,
        entity_type: EntityType,
        transaction_type: TransactionType = TransactionType.RECHARGE,
        description: Optional[str] = None,
        provider_reference: Optional[str] = None,
    ) -> Decimal:
        """Credit path. Never triggers the initial grant."""
        return await self.atomic_adjust(
            entity_id,
            delta,
            entity_type,
            transaction_type=transaction_type,
            description=description,
            provider_reference=provider_reference,
        )

    async def set_balance(
        self,
        entity_id: str,
        new_amount: Decimal,
        description: Optional[str] = None,
    ) -> Decimal:
        """
        Overwrite the stored balance of an existing record.

        The difference is recorded as a manual adjustment. Raises NotFoundError
        if the entity has no record.
        """
        return await asyncio.to_thread(
            self._set_balance, entity_id, _quantize(new_amount), description
        )

    async def apply_manual_adjustment(
        self,
        entity_id: str,
        entity_type: EntityType,
        delta: Decimal,
        description: str,
    ) -> Decimal:
        """Operator top-up or correction."""
        delta = _quantize(delta)
        if delta == 0:
            raise ValidationError("Adjustment amount must not be zero")

        balance = await self.atomic_adjust(
            entity_id,
            delta,
            entity_type,
            transaction_type=TransactionType.MANUAL_ADJUSTMENT,
            description=description,
        )
        logger.info(
            "manual_adjustment_applied",
            entity_id=entity_id,
            delta=str(delta),
            balance=str(balance),
        )
        return balance

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get_balance(self, entity_id: str, entity_type: EntityType) -> Decimal:
        with self.db.transaction() as tx:
            balances = BalanceRepository(tx)
            ledger = LedgerRepository(tx)

            if balances.insert_if_absent(entity_id, entity_type, self.initial_grant):
                if self.initial_grant:
                    ledger.create(LedgerTransactionRecord(
                        entity_id=entity_id,
                        entity_type=entity_type,
                        amount=self.initial_grant,
                        type=TransactionType.INITIAL,
                        description="Initial credit grant",
                        balance_after=self.initial_grant,
                    ))
                logger.info(
                    "balance_initialized",
                    entity_id=entity_id,
                    entity_type=entity_type.value,
                    initial_grant=str(self.initial_grant),
                )
                return self.initial_grant

            record = balances.apply_pending_grant(entity_id, self.initial_grant)
            if record is not None:
                if self.initial_grant:
                    ledger.create(LedgerTransactionRecord(
                        entity_id=entity_id,
                        entity_type=record.entity_type,
                        amount=self.initial_grant,
                        type=TransactionType.INITIAL,
                        description="Initial credit grant",
                        balance_after=record.current_balance,
                    ))
                logger.info(
                    "initial_grant_applied_to_existing_balance",
                    entity_id=entity_id,
                    balance=str(record.current_balance),
                )
                return record.current_balance

            record = balances.get(entity_id)

        logger.debug("balance_read", entity_id=entity_id, balance=str(record.current_balance))
        return record.current_balance

    def _atomic_adjust(
        self,
        entity_id: str,
        delta: Decimal,
        entity_type: EntityType,
        transaction_type: TransactionType,
        description: Optional[str],
        provider_reference: Optional[str],
    ) -> Decimal:
        with self.db.transaction() as tx:
            record = BalanceRepository(tx).increment(entity_id, entity_type, delta)
            LedgerRepository(tx).create(LedgerTransactionRecord(
                entity_id=entity_id,
                entity_type=record.entity_type,
                amount=delta,
                type=transaction_type,
                description=description,
                provider_reference=provider_reference,
                balance_after=record.current_balance,
            ))

        logger.info(
            "balance_adjusted",
            entity_id=entity_id,
            delta=str(delta),
            type=transaction_type.value,
            balance=str(record.current_balance),
        )
        return record.current_balance

    def _set_balance(self, entity_id: str, new_amount: Decimal, description: Optional[str]) -> Decimal:
        for attempt in range(self.MAX_CAS_ATTEMPTS):
            with self.db.transaction() as tx:
                balances = BalanceRepository(tx)
                current = balances.get(entity_id)
                if current is None:
                    raise NotFoundError(f"No balance record for entity {entity_id}")

                record = balances.compare_and_set(entity_id, current.current_balance, new_amount)
                if record is None:
                    logger.debug("balance_cas_retry", entity_id=entity_id, attempt=attempt)
                    continue

                difference = new_amount - current.current_balance
                if difference:
                    LedgerRepository(tx).create(LedgerTransactionRecord(
                        entity_id=entity_id,
                        entity_type=record.entity_type,
                        amount=difference,
                        type=TransactionType.MANUAL_ADJUSTMENT,
                        description=description or f"Balance set to {new_amount}",
                        balance_after=record.current_balance,
                    ))

            logger.info(
                "balance_set",
                entity_id=entity_id,
                old_balance=str(current.current_balance),
                new_balance=str(record.current_balance),
            )
            return record.current_balance

        raise ConflictError(
            f"Balance for entity {entity_id} kept changing; gave up after {self.MAX_CAS_ATTEMPTS} attempts"
        )
