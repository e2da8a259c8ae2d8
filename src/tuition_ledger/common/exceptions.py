"""
This file contains custom, application-specific exceptions.

Pure components (calendar, balance calculator, allocator) raise these directly.
The payment service is the only place that rolls back persisted state, and
main.py maps every kind to an HTTP response.
"""

class LedgerError(Exception):
    """Base class for every error raised by the ledger engine."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Raised for malformed or missing input, before any side effect."""
    pass


class NotFoundError(LedgerError):
    """Raised when a referenced student, school year or grade does not exist."""
    pass


class AllocationError(LedgerError):
    """Raised when the requested amount is incompatible with the outstanding debt."""
    pass


class ConcurrencyConflict(LedgerError):
    """
    Raised when receipt counter contention could not be resolved by retrying.
    The caller should retry the whole submission.
    """
    pass


class DataIntegrityError(LedgerError):
    """
    Raised when stored data is inconsistent: a monetary value that is not a
    valid non-negative number, or a write that collides with an existing row.
    """
    pass
