"""
Data Models for Persistence Layer

Amounts are Decimal in memory and integer counts of 1/10000 units on disk.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Union
import json
import uuid

# Fixed-point scale shared by every amount column
SCALE = 10_000
QUANTUM = Decimal("0.0001")

Amount = Union[Decimal, int, str]


def to_units(amount: Amount) -> int:
    """Convert a monetary amount to integer storage units."""
    value = Decimal(str(amount)) * SCALE
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_units(units: Optional[int]) -> Decimal:
    """Convert integer storage units back to a Decimal amount."""
    return (Decimal(int(units or 0)) / SCALE).quantize(QUANTUM)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Any) -> Optional[str]:
    # PostgreSQL hands back datetimes, SQLite hands back strings
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class EntityType(Enum):
    """Who pays for usage."""
    USER = "user"
    ORGANIZATION = "organization"


class BillableEventStatus(Enum):
    """Billable event lifecycle."""
    PENDING_CREDIT_CHECK = "pending_credit_check"
    NO_CHARGE = "no_charge"
    PAID_BY_CREDITS = "paid_by_credits"
    PAYMENT_FAILED_INSUFFICIENT_CREDITS = "payment_failed_insufficient_credits"

    @property
    def is_terminal(self) -> bool:
        return self is not BillableEventStatus.PENDING_CREDIT_CHECK


class PaymentConfirmationStatus(Enum):
    """Payment confirmation lifecycle."""
    PENDING_PROCESSING = "pending_processing"
    PROCESSED = "processed"
    FAILED = "failed"


class TransactionType(Enum):
    """Kinds of balance-affecting operations."""
    INITIAL = "initial"
    RECHARGE = "recharge"
    USAGE = "usage"
    MANUAL_ADJUSTMENT = "manual_adjustment"


@dataclass
class BalanceRecord:
    """Persisted balance for one entity."""
    entity_id: str
    entity_type: EntityType
    current_balance: Decimal = Decimal("0")
    initial_grant_applied: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "current_balance": str(self.current_balance),
            "initial_grant_applied": self.initial_grant_applied,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BalanceRecord":
        return cls(
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]),
            current_balance=from_units(row["current_balance"]),
            initial_grant_applied=bool(row.get("initial_grant_applied", 0)),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class BillableEventRecord:
    """Persisted billable event."""
    entity_id: str
    entity_type: EntityType
    usage_seconds: int
    cost: Decimal
    status: BillableEventStatus = BillableEventStatus.PENDING_CREDIT_CHECK
    reference: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "usage_seconds": self.usage_seconds,
            "cost": str(self.cost),
            "status": self.status.value,
            "reference": self.reference,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.entity_id,
            self.entity_type.value,
            self.usage_seconds,
            to_units(self.cost),
            self.status.value,
            self.reference,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BillableEventRecord":
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]),
            usage_seconds=row["usage_seconds"],
            cost=from_units(row["cost"]),
            status=BillableEventStatus(row["status"]),
            reference=row.get("reference"),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class PaymentConfirmationRecord:
    """Persisted payment notification."""
    id: str
    provider_order_id: str
    entity_id: str
    entity_type: EntityType
    requested_amount: Decimal
    granted_amount: Decimal = Decimal("0")
    status: PaymentConfirmationStatus = PaymentConfirmationStatus.PENDING_PROCESSING
    raw_payload: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    created_at: str = field(default_factory=_now)
    processed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider_order_id": self.provider_order_id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "requested_amount": str(self.requested_amount),
            "granted_amount": str(self.granted_amount),
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.provider_order_id,
            self.entity_id,
            self.entity_type.value,
            to_units(self.requested_amount),
            to_units(self.granted_amount),
            self.status.value,
            json.dumps(self.raw_payload) if self.raw_payload is not None else None,
            self.failure_reason,
            self.created_at,
            self.processed_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentConfirmationRecord":
        raw_payload = row.get("raw_payload")
        if isinstance(raw_payload, str) and raw_payload:
            raw_payload = json.loads(raw_payload)

        return cls(
            id=row["id"],
            provider_order_id=row["provider_order_id"],
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]),
            requested_amount=from_units(row["requested_amount"]),
            granted_amount=from_units(row.get("granted_amount", 0)),
            status=PaymentConfirmationStatus(row["status"]),
            raw_payload=raw_payload,
            failure_reason=row.get("failure_reason"),
            created_at=_iso(row["created_at"]),
            processed_at=_iso(row.get("processed_at")),
        )


@dataclass
class LedgerTransactionRecord:
    """Persisted, immutable ledger entry."""
    entity_id: str
    entity_type: EntityType
    amount: Decimal  # Signed: credits positive, debits negative
    type: TransactionType
    description: Optional[str] = None
    provider_reference: Optional[str] = None
    billable_event_id: Optional[str] = None
    balance_after: Optional[Decimal] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "amount": str(self.amount),
            "type": self.type.value,
            "description": self.description,
            "provider_reference": self.provider_reference,
            "billable_event_id": self.billable_event_id,
            "balance_after": str(self.balance_after) if self.balance_after is not None else None,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.entity_id,
            self.entity_type.value,
            to_units(self.amount),
            self.type.value,
            self.description,
            self.provider_reference,
            self.billable_event_id,
            to_units(self.balance_after) if self.balance_after is not None else None,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerTransactionRecord":
        balance_after = row.get("balance_after")
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]),
            amount=from_units(row["amount"]),
            type=TransactionType(row["type"]),
            description=row.get("description"),
            provider_reference=row.get("provider_reference"),
            billable_event_id=row.get("billable_event_id"),
            balance_after=from_units(balance_after) if balance_after is not None else None,
            created_at=_iso(row["created_at"]),
        )
