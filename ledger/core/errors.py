"""
LEDGER CORE - ERROR KINDS

ValidationError   - rejected before any write, never retried
NotFoundError     - referenced document does not exist, never retried
ConflictError     - commit failed after the retry budget, duplicate key,
                    or a settlement found an invoice already paid
WriteConflictError - raised by a store driver when an optimistic
                    transaction loses a race; only with_transaction sees it
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for every error the ledger surfaces to callers"""
    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(LedgerError):
    """Raised when input is rejected before any write is attempted"""
    pass


class NotFoundError(LedgerError):
    """Raised when a referenced invoice, receipt or counter is missing"""
    pass


class ConflictError(LedgerError):
    """Raised when a transaction cannot commit or a business race is detected"""
    def __init__(self, message: str, reason: str = "commit_failed", details: Optional[dict] = None):
        self.reason = reason
        super().__init__(message, details)


class WriteConflictError(Exception):
    """Raised by a store driver when a concurrent commit invalidated the transaction"""
    pass
