"""
Error Taxonomy for the Credit Ledger

ValidationError - bad input, rejected before any side effect
NotFoundError   - operation on a record that does not exist
StorageError    - the database failed; never retried inside the core
ConflictError   - uniqueness or state conflict (duplicate delivery, illegal transition)
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when input is rejected before any side effect."""
    pass


class NotFoundError(LedgerError):
    """Raised when a required record does not exist."""
    pass


class StorageError(LedgerError):
    """Raised when the underlying store fails."""
    pass


class ConflictError(LedgerError):
    """Raised on a unique-constraint collision or an illegal state transition."""
    pass
