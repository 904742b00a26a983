"""
Error Taxonomy Module

Every failure the engine reports to its callers derives from LedgerEngineError.
All of them are recoverable; callers map them to their own response shapes.
"""

from typing import Any, Dict, Optional


class LedgerEngineError(Exception):
    """Base class for repayment ledger engine errors"""

    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for callers that shape error responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
            "retryable": self.retryable,
        }


class InvalidAmount(LedgerEngineError, ValueError):
    """Amount is non-positive, negative where disallowed, or malformed"""


class TargetNotFound(LedgerEngineError):
    """Token or batch does not exist"""


class NoOutstandingInstallments(LedgerEngineError):
    """Target has no pending, partial or overdue installments"""


class TargetAlreadyClosed(LedgerEngineError):
    """Payment attempted against a closed token or batch"""


class InsufficientBalance(LedgerEngineError):
    """Ledger debit would take an account below zero"""


class NoActivePolicy(LedgerEngineError):
    """Accrual requested while no penalty policy is active"""


class ConcurrencyConflict(LedgerEngineError):
    """Lock or transaction could not be obtained within the configured wait"""

    retryable = True


class LedgerUnavailable(LedgerEngineError):
    """Ledger operation requested while the ledger capability is disabled"""


class DuplicateRecordError(LedgerEngineError):
    """Insert violated a uniqueness constraint"""
