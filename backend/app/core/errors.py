"""
Ledger exceptions.

Every error the ledger raises derives from LedgerError and carries an
ErrorCode plus the HTTP status the API layer renders it with.

Usage:
    from app.core.errors import SplitMismatchError

    raise SplitMismatchError("Custom amounts sum to 101.00, expected 100.00")
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to API clients."""

    # Validation
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PARTICIPANTS = "INVALID_PARTICIPANTS"
    UNSUPPORTED_SPLIT_POLICY = "UNSUPPORTED_SPLIT_POLICY"
    SPLIT_MISMATCH = "SPLIT_MISMATCH"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    INVALID_BUDGET = "INVALID_BUDGET"
    INVALID_THRESHOLDS = "INVALID_THRESHOLDS"
    INVALID_SETTLEMENT = "INVALID_SETTLEMENT"

    # Lookup
    EXPENSE_NOT_FOUND = "EXPENSE_NOT_FOUND"
    SPLIT_NOT_FOUND = "SPLIT_NOT_FOUND"
    BUDGET_NOT_FOUND = "BUDGET_NOT_FOUND"
    ALERT_NOT_FOUND = "ALERT_NOT_FOUND"
    SETTLEMENT_NOT_FOUND = "SETTLEMENT_NOT_FOUND"

    # State
    INVALID_SPLIT_TRANSITION = "INVALID_SPLIT_TRANSITION"
    SPLIT_ACCESS_DENIED = "SPLIT_ACCESS_DENIED"
    CONCURRENT_BUDGET_UPDATE = "CONCURRENT_BUDGET_UPDATE"

    # Collaborators / store
    CONVERSION_FAILED = "CONVERSION_FAILED"
    LEDGER_WRITE_FAILED = "LEDGER_WRITE_FAILED"


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    code: ErrorCode = ErrorCode.LEDGER_WRITE_FAILED
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAmount(LedgerError):
    code = ErrorCode.INVALID_AMOUNT
    status_code = 422


class InvalidParticipants(LedgerError):
    code = ErrorCode.INVALID_PARTICIPANTS
    status_code = 422


class UnsupportedSplitPolicy(LedgerError):
    code = ErrorCode.UNSUPPORTED_SPLIT_POLICY
    status_code = 422


class SplitMismatchError(LedgerError):
    """Split parameters do not reconcile with the expense amount."""
    code = ErrorCode.SPLIT_MISMATCH
    status_code = 422


class CurrencyMismatch(LedgerError):
    code = ErrorCode.CURRENCY_MISMATCH
    status_code = 422


class InvalidBudget(LedgerError):
    code = ErrorCode.INVALID_BUDGET
    status_code = 422


class InvalidThresholds(LedgerError):
    code = ErrorCode.INVALID_THRESHOLDS
    status_code = 422


class InvalidSettlement(LedgerError):
    code = ErrorCode.INVALID_SETTLEMENT
    status_code = 422


class ExpenseNotFound(LedgerError):
    code = ErrorCode.EXPENSE_NOT_FOUND
    status_code = 404


class SplitNotFound(LedgerError):
    code = ErrorCode.SPLIT_NOT_FOUND
    status_code = 404


class BudgetNotFound(LedgerError):
    """
    No budget exists for the requested scope.

    Only raised by explicit lookups; applying spend to a scope without a
    budget is a no-op.
    """
    code = ErrorCode.BUDGET_NOT_FOUND
    status_code = 404


class AlertNotFound(LedgerError):
    code = ErrorCode.ALERT_NOT_FOUND
    status_code = 404


class SettlementNotFound(LedgerError):
    code = ErrorCode.SETTLEMENT_NOT_FOUND
    status_code = 404


class InvalidSplitTransition(LedgerError):
    code = ErrorCode.INVALID_SPLIT_TRANSITION
    status_code = 409


class SplitAccessDenied(LedgerError):
    code = ErrorCode.SPLIT_ACCESS_DENIED
    status_code = 403


class ConcurrentBudgetUpdateConflict(LedgerError):
    """Raised only by stores that cannot increment atomically and ran out of retries."""
    code = ErrorCode.CONCURRENT_BUDGET_UPDATE
    status_code = 409


class ConversionFailed(LedgerError):
    code = ErrorCode.CONVERSION_FAILED
    status_code = 502


class LedgerWriteFailed(LedgerError):
    """A ledger transaction was rolled back; the underlying error is in `cause`."""
    code = ErrorCode.LEDGER_WRITE_FAILED
    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
