"""
Errors - Failure taxonomy and structured operation results.

Inside a unit of work failures are raised as MarketError subclasses so the
transaction rolls back. Every public operation converts them into an
OperationResult, so callers never see an uncaught fault for a business
outcome.

Categories:
- VALIDATION: definitive rule violations, never retried
- CONCURRENCY: lock contention, retried with backoff
- INTEGRITY: reconciliation anomalies, reported and never auto-healed
- TERMINAL: retries exhausted or unexpected failures
"""

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Coarse classification deciding retry behaviour."""
    VALIDATION = "VALIDATION"
    CONCURRENCY = "CONCURRENCY"
    INTEGRITY = "INTEGRITY"
    TERMINAL = "TERMINAL"


class ErrorKind(Enum):
    """Every failure a core operation can report."""
    # Credit
    NO_CREDIT_ACCOUNT = "NO_CREDIT_ACCOUNT"
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    INSUFFICIENT_CREDIT = "INSUFFICIENT_CREDIT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    RELATIONSHIP_EXISTS = "RELATIONSHIP_EXISTS"
    NOT_FOUND = "NOT_FOUND"
    NOT_REVERSIBLE = "NOT_REVERSIBLE"
    # Bidding
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_ELIGIBLE = "ORDER_NOT_ELIGIBLE"
    ORDER_NOT_OPEN = "ORDER_NOT_OPEN"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    MISSING_FIELDS = "MISSING_FIELDS"
    NO_PENDING_OFFERS = "NO_PENDING_OFFERS"
    SELLER_NOT_ELIGIBLE = "SELLER_NOT_ELIGIBLE"
    INVALID_INPUT = "INVALID_INPUT"
    # Concurrency
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    DEADLOCK = "DEADLOCK"
    # Integrity
    BALANCE_DRIFT = "BALANCE_DRIFT"
    # Terminal
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    UNEXPECTED = "UNEXPECTED"

    @property
    def category(self) -> ErrorCategory:
        if self in (ErrorKind.LOCK_TIMEOUT, ErrorKind.DEADLOCK):
            return ErrorCategory.CONCURRENCY
        if self is ErrorKind.BALANCE_DRIFT:
            return ErrorCategory.INTEGRITY
        if self in (ErrorKind.MAX_RETRIES_EXCEEDED, ErrorKind.UNEXPECTED):
            return ErrorCategory.TERMINAL
        return ErrorCategory.VALIDATION

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.CONCURRENCY


# =============================================================================
# Exceptions
# =============================================================================


class MarketError(Exception):
    """Base class for failures raised inside the core."""

    def __init__(self, kind: ErrorKind, detail: str = "", **data: Any):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail or kind.value
        self.data = data


class ValidationError(MarketError):
    """Definitive business-rule violation."""


class ConcurrencyError(MarketError):
    """Transient lock contention (timeout or deadlock)."""


def classify_operational_error(error: sqlite3.OperationalError) -> Optional[ConcurrencyError]:
    """
    Map a sqlite OperationalError to a retryable concurrency failure.

    Returns None when the error is not contention related.
    """
    message = str(error).lower()
    if "deadlock" in message:
        return ConcurrencyError(ErrorKind.DEADLOCK, "Deadlock detected, transaction rolled back")
    if "locked" in message or "busy" in message:
        return ConcurrencyError(ErrorKind.LOCK_TIMEOUT, "Store is locked by another transaction")
    return None


# =============================================================================
# Results
# =============================================================================


@dataclass
class OperationResult:
    """
    Structured outcome of a core operation.

    Attributes:
        success: Whether the operation committed
        error_kind: What went wrong (None on success)
        detail: Human-readable explanation
        data: Operation-specific payload (ids, balances, scores...)
        attempts: Number of attempts consumed (retrying operations only)
    """
    success: bool
    error_kind: Optional[ErrorKind] = None
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, detail: str = "", **data: Any) -> "OperationResult":
        return cls(success=False, error_kind=kind, detail=detail or kind.value, data=data)

    @classmethod
    def from_error(cls, error: MarketError) -> "OperationResult":
        return cls.fail(error.kind, error.detail, **error.data)

    @property
    def error_category(self) -> Optional[ErrorCategory]:
        return self.error_kind.category if self.error_kind else None

    @property
    def retryable(self) -> bool:
        return bool(self.error_kind and self.error_kind.retryable)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "errorCategory": self.error_category.value if self.error_category else None,
            "detail": self.detail,
            "data": self.data,
            "attempts": self.attempts,
        }
