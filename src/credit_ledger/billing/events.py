"""
Billable Event State Machine

One billable event per usage occurrence:

    pending_credit_check --(cost == 0)-----------------> no_charge
    pending_credit_check --(balance covers cost)-------> paid_by_credits
    pending_credit_check --(balance below cost)--------> payment_failed_insufficient_credits

Cost is always derived from the usage duration, never supplied by the caller.
The debit, its ledger row and the status transition commit as one database
transaction, so an event still in pending_credit_check has never been charged
and can be settled again by the reconciliation sweep.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import structlog

from ..errors import ConflictError, LedgerError, NotFoundError
from ..persistence.database import Database, get_database
from ..persistence.models import (
    BillableEventRecord,
    BillableEventStatus,
    EntityType,
    LedgerTransactionRecord,
    TransactionType,
)
from ..persistence.repository import (
    BalanceRepository,
    BillableEventRepository,
    LedgerRepository,
)
from .balance_store import BalanceStore
from .cost import CostCalculator, Number

logger = structlog.get_logger()


@dataclass
class PendingSweepResult:
    """Outcome of a reconciliation sweep over stuck events."""
    settled: List[BillableEventRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # Settled concurrently
    failed: Dict[str, str] = field(default_factory=dict)  # event_id -> error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settled": [e.to_dict() for e in self.settled],
            "skipped": self.skipped,
            "failed": self.failed,
        }


class BillableEventService:
    """
    Creates billable events and settles them against the balance store.

    Usage:
        service = BillableEventService(db, balance_store)
        event = await service.create_billable_event("org-1", EntityType.ORGANIZATION, 300)
        event.status  # BillableEventStatus.PAID_BY_CREDITS
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        balance_store: Optional[BalanceStore] = None,
        calculator: Optional[CostCalculator] = None,
        pending_grace_seconds: int = 300,
    ):
        self.db = db or get_database()
        self.balance_store = balance_store or BalanceStore(self.db)
        self.calculator = calculator or CostCalculator()
        self.pending_grace_seconds = pending_grace_seconds
        self.events = BillableEventRepository(self.db)

    async def create_billable_event(
        self,
        entity_id: str,
        entity_type: EntityType,
        usage_seconds: Number,
        reference: Optional[str] = None,
    ) -> BillableEventRecord:
        """
        Record a usage occurrence and charge it against the entity's credits.

        Raises StorageError if the event cannot be recorded (nothing persisted)
        or if the balance cannot be read (event left in pending_credit_check).
        """
        seconds = self.calculator.normalize_seconds(usage_seconds)
        cost = self.calculator.cost(seconds)

        event = BillableEventRecord(
            entity_id=entity_id,
            entity_type=entity_type,
            usage_seconds=seconds,
            cost=cost,
            reference=reference,
        )

        try:
            await asyncio.to_thread(self.events.create, event)
        except LedgerError as e:
            logger.error(
                "billable_event_create_failed",
                entity_id=entity_id,
                usage_seconds=seconds,
                error=str(e),
            )
            raise

        logger.info(
            "billable_event_created",
            event_id=event.id,
            entity_id=entity_id,
            entity_type=entity_type.value,
            usage_seconds=seconds,
            cost=str(cost),
            reference=reference,
        )

        return await self._settle(event)

    async def get_event(self, event_id: str) -> BillableEventRecord:
        """Get an event by ID."""
        event = await asyncio.to_thread(self.events.get, event_id)
        if event is None:
            raise NotFoundError(f"Billable event {event_id} not found")
        return event

    async def list_events(
        self,
        entity_id: str,
        limit: int = 100,
        entity_type: Optional[EntityType] = None,
    ) -> List[BillableEventRecord]:
        """Events for an entity, newest first. Optionally only events of one entity type."""
        return await asyncio.to_thread(self.events.list_by_entity, entity_id, limit, entity_type)

    async def reconcile_pending_events(
        self,
        older_than_seconds: Optional[int] = None,
        limit: int = 500,
    ) -> PendingSweepResult:
        """
        Settle events stuck in pending_credit_check.

        Operator-invoked; nothing schedules this in-process. Only events older
        than the grace period are touched so in-flight requests are left alone.
        """
        grace = self.pending_grace_seconds if older_than_seconds is None else older_than_seconds
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=grace)).isoformat()
        pending = await asyncio.to_thread(self.events.list_pending, cutoff, limit)

        result = PendingSweepResult()
        for event in pending:
            try:
                result.settled.append(await self._settle(event))
            except ConflictError:
                result.skipped.append(event.id)
            except LedgerError as e:
                result.failed[event.id] = str(e)

        logger.info(
            "pending_event_sweep_complete",
            found=len(pending),
            settled=len(result.settled),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(self, event: BillableEventRecord) -> BillableEventRecord:
        if event.cost == 0:
            await asyncio.to_thread(self._transition_only, event, BillableEventStatus.NO_CHARGE)
            logger.info("billable_event_no_charge", event_id=event.id)
            return await self.get_event(event.id)

        try:
            balance = await self.balance_store.get_balance(event.entity_id, event.entity_type)
        except LedgerError as e:
            logger.error(
                "billable_event_left_pending",
                event_id=event.id,
                entity_id=event.entity_id,
                error=str(e),
            )
            raise

        status = await asyncio.to_thread(self._charge, event)

        if status is BillableEventStatus.PAID_BY_CREDITS:
            logger.info(
                "billable_event_paid_by_credits",
                event_id=event.id,
                entity_id=event.entity_id,
                cost=str(event.cost),
                balance_before=str(balance),
            )
        else:
            logger.warning(
                "billable_event_insufficient_credits",
                event_id=event.id,
                entity_id=event.entity_id,
                cost=str(event.cost),
                balance=str(balance),
            )
        return await self.get_event(event.id)

    def _transition_only(self, event: BillableEventRecord, status: BillableEventStatus) -> None:
        if not self.events.transition(event.id, status):
            raise ConflictError(f"Billable event {event.id} is no longer pending")

    def _charge(self, event: BillableEventRecord) -> BillableEventStatus:
        """Debit, ledger row and status transition in one transaction."""
        with self.db.transaction() as tx:
            record = BalanceRepository(tx).decrement_if_sufficient(event.entity_id, event.cost)

            if record is None:
                status = BillableEventStatus.PAYMENT_FAILED_INSUFFICIENT_CREDITS
            else:
                status = BillableEventStatus.PAID_BY_CREDITS
                LedgerRepository(tx).create(LedgerTransactionRecord(
                    entity_id=event.entity_id,
                    entity_type=event.entity_type,
                    amount=-event.cost,
                    type=TransactionType.USAGE,
                    description=_usage_description(event),
                    billable_event_id=event.id,
                    balance_after=record.current_balance,
                ))

            # Raising here rolls the debit back
            if not BillableEventRepository(tx).transition(event.id, status):
                raise ConflictError(f"Billable event {event.id} is no longer pending")

        return status


def _usage_description(event: BillableEventRecord) -> str:
    if event.reference:
        return f"Usage for {event.reference} (duration: {event.usage_seconds}s)"
    return f"Usage (duration: {event.usage_seconds}s)"
