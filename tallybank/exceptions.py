"""
Error taxonomy for the ledger engine.

Managers raise these instead of bare ValueError so callers can tell a bad
request from a business-rule rejection, a missing record, corrupted data or a
storage failure.
"""


class BankError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(BankError, ValueError):
    """Raised when a request carries malformed or out-of-range input."""
    pass


class InsufficientFundsError(BankError):
    """Raised when an account cannot cover a requested debit."""
    pass


class NotFoundError(BankError, LookupError):
    """Raised when an account, entry, product or user does not exist."""
    pass


class InvariantViolation(BankError):
    """Raised when persisted data breaks a structural rule of the bank."""
    pass


class TransientStorageError(BankError):
    """Raised when a storage write or commit fails and was rolled back."""
    pass
