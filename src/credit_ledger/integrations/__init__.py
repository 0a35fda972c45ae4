"""
Credit Ledger - Integrations

Collaborators at the edge of the ledger: payer lookup, webhook signature
verification, and payment notification parsing.
"""

from .directory import EntityDirectory, EntityRef, InMemoryEntityDirectory
from .signature import compute_signature, verify_signature
from .notifications import (
    PaymentNotification,
    derive_idempotency_id,
    parse_payment_notification,
)

__all__ = [
    "EntityDirectory",
    "EntityRef",
    "InMemoryEntityDirectory",
    "compute_signature",
    "verify_signature",
    "PaymentNotification",
    "derive_idempotency_id",
    "parse_payment_notification",
]
