"""
Credit Ledger

Usage-metered credit balances for users and organizations: usage is charged
against a per-entity balance, and payment notifications credit it exactly once.
"""

__version__ = "1.0.0"

from .config import LedgerConfig
from .errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)

__all__ = [
    "__version__",
    "LedgerConfig",
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ConflictError",
]
