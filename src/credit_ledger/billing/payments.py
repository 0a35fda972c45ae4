"""
Payment Confirmation Processor

Idempotent crediting from payment-gateway notifications delivered at least once.

The confirmation row is inserted before any credit is applied. The unique
constraint on provider_order_id (and the idempotency ID as primary key) is the
only guard against double crediting: a second delivery collides on insert and
short-circuits as "already handled", whatever state the first delivery
reached. Confirmations left failed or pending are surfaced for operators via
list_unresolved() rather than retried here.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import structlog

from ..errors import ConflictError, LedgerError, NotFoundError, ValidationError
from ..persistence.database import Database, get_database
from ..persistence.models import (
    EntityType,
    PaymentConfirmationRecord,
    PaymentConfirmationStatus,
    TransactionType,
    from_units,
    to_units,
)
from ..persistence.repository import PaymentConfirmationRepository
from .balance_store import BalanceStore

logger = structlog.get_logger()


class ConfirmationOutcome(Enum):
    """What happened to a delivered notification."""
    PROCESSED = "processed"
    ALREADY_HANDLED = "already_handled"


@dataclass
class ConfirmationResult:
    """Result of processing one payment notification."""
    status: ConfirmationOutcome
    confirmation: Optional[PaymentConfirmationRecord] = None
    balance: Optional[Decimal] = None  # Only set when credited by this call

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "confirmation": self.confirmation.to_dict() if self.confirmation else None,
            "balance": str(self.balance) if self.balance is not None else None,
        }


class PaymentConfirmationProcessor:
    """
    Turns verified payment notifications into balance credits.

    Callers must verify the notification's signature before calling
    process_confirmation(); inputs are trusted once here.
    """

    UNRESOLVED_STATUSES = (
        PaymentConfirmationStatus.FAILED,
        PaymentConfirmationStatus.PENDING_PROCESSING,
    )

    def __init__(
        self,
        db: Optional[Database] = None,
        balance_store: Optional[BalanceStore] = None,
    ):
        self.db = db or get_database()
        self.balance_store = balance_store or BalanceStore(self.db)
        self.confirmations = PaymentConfirmationRepository(self.db)

    async def process_confirmation(
        self,
        provider_order_id: str,
        entity_id: str,
        idempotency_id: str,
        amount: Decimal,
        entity_type: EntityType,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> ConfirmationResult:
        """
        Credit an entity for a paid order, exactly once per order.

        Returns ALREADY_HANDLED for a duplicate delivery. Raises ValidationError
        for bad input and StorageError when the notification could not be
        recorded. A crediting failure marks the confirmation failed and is
        re-raised so the sender retries into the duplicate branch.
        """
        amount = _validate(provider_order_id, entity_id, idempotency_id, amount)

        record = PaymentConfirmationRecord(
            id=idempotency_id,
            provider_order_id=provider_order_id,
            entity_id=entity_id,
            entity_type=entity_type,
            requested_amount=amount,
            raw_payload=raw_payload,
        )

        try:
            await asyncio.to_thread(self.confirmations.create, record)
        except ConflictError:
            return await self._already_handled(provider_order_id, idempotency_id)
        except LedgerError as e:
            logger.error(
                "payment_confirmation_insert_failed",
                provider_order_id=provider_order_id,
                entity_id=entity_id,
                error=str(e),
            )
            raise

        logger.info(
            "payment_confirmation_recorded",
            confirmation_id=idempotency_id,
            provider_order_id=provider_order_id,
            entity_id=entity_id,
            amount=str(amount),
        )

        try:
            balance = await self.balance_store.add_amount(
                entity_id,
                amount,
                entity_type,
                transaction_type=TransactionType.RECHARGE,
                description=f"Credit recharge (order {provider_order_id})",
                provider_reference=provider_order_id,
            )
        except Exception as e:
            logger.critical(
                "payment_received_but_not_credited",
                confirmation_id=idempotency_id,
                provider_order_id=provider_order_id,
                entity_id=entity_id,
                amount=str(amount),
                error=str(e),
            )
            await self._mark_failed(idempotency_id, str(e))
            raise

        try:
            await asyncio.to_thread(self.confirmations.mark_processed, idempotency_id, amount)
        except LedgerError as e:
            # Balance already credited; the record stays pending_processing
            logger.critical(
                "payment_credited_but_not_finalized",
                confirmation_id=idempotency_id,
                provider_order_id=provider_order_id,
                entity_id=entity_id,
                amount=str(amount),
                error=str(e),
            )
            raise

        logger.info(
            "payment_confirmation_processed",
            confirmation_id=idempotency_id,
            provider_order_id=provider_order_id,
            entity_id=entity_id,
            granted_amount=str(amount),
            balance=str(balance),
        )

        confirmation = await asyncio.to_thread(self.confirmations.get, idempotency_id)
        return ConfirmationResult(
            status=ConfirmationOutcome.PROCESSED,
            confirmation=confirmation,
            balance=balance,
        )

    async def get_confirmation(self, confirmation_id: str) -> PaymentConfirmationRecord:
        """Get a confirmation by idempotency ID."""
        record = await asyncio.to_thread(self.confirmations.get, confirmation_id)
        if record is None:
            raise NotFoundError(f"Payment confirmation {confirmation_id} not found")
        return record

    async def list_unresolved(self, limit: int = 500) -> List[PaymentConfirmationRecord]:
        """Confirmations that were never credited or never finalized."""
        return await asyncio.to_thread(
            self.confirmations.list_by_status, self.UNRESOLVED_STATUSES, limit
        )

    async def _already_handled(self, provider_order_id: str, idempotency_id: str) -> ConfirmationResult:
        existing = await asyncio.to_thread(self.confirmations.get_by_order_id, provider_order_id)
        if existing is None:
            existing = await asyncio.to_thread(self.confirmations.get, idempotency_id)

        if existing is not None and existing.status is not PaymentConfirmationStatus.PROCESSED:
            logger.warning(
                "duplicate_payment_for_unresolved_confirmation",
                provider_order_id=provider_order_id,
                confirmation_id=existing.id,
                prior_status=existing.status.value,
                failure_reason=existing.failure_reason,
            )
        else:
            logger.warning(
                "duplicate_payment_confirmation",
                provider_order_id=provider_order_id,
                idempotency_id=idempotency_id,
            )

        return ConfirmationResult(status=ConfirmationOutcome.ALREADY_HANDLED, confirmation=existing)

    async def _mark_failed(self, confirmation_id: str, reason: str) -> None:
        try:
            await asyncio.to_thread(self.confirmations.mark_failed, confirmation_id, reason)
        except LedgerError as e:
            logger.critical(
                "payment_confirmation_mark_failed_error",
                confirmation_id=confirmation_id,
                error=str(e),
            )


def _validate(provider_order_id: str, entity_id: str, idempotency_id: str, amount: Any) -> Decimal:
    for name, value in (
        ("provider_order_id", provider_order_id),
        ("entity_id", entity_id),
        ("idempotency_id", idempotency_id),
    ):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")

    if isinstance(amount, (bool, float)) or not isinstance(amount, (Decimal, int, str)):
        raise ValidationError(f"amount must be a Decimal, int or numeric string, got {amount!r}")
    try:
        value = from_units(to_units(amount))
    except (ArithmeticError, ValueError):
        raise ValidationError(f"amount must be numeric, got {amount!r}")
    if value <= 0:
        raise ValidationError("Credit amount must be positive")
    return value
