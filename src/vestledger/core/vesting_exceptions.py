"""
Vesting-specific exception hierarchy for vestledger.

Provides typed exceptions for vesting operations so callers can tell a
rejected request (validation, authorization, pause) apart from a failure of
the external token ledger, and so diagnostics can carry structured context.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VestingError(Exception):
    """Base exception for all vesting engine errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the caller may retry the operation
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


# ==================== Validation Errors ====================


class ValidationError(VestingError):
    """Raised when operation parameters fail validation.

    Examples: zero amount or duration, cliff exceeding duration, malformed
    beneficiary identity, cap below the already allocated amount.
    """
    pass


class InsufficientCustodyError(ValidationError):
    """Raised when custody balance cannot cover a new vesting obligation."""
    pass


class InvalidReasonError(ValidationError):
    """Raised when an emergency withdrawal is requested without a reason."""
    pass


# ==================== Allocation Errors ====================


class AllocationExceededError(VestingError):
    """Raised when a schedule would push a category past its cap."""

    def __init__(
        self,
        message: str,
        category: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.category = category


class DuplicateBeneficiaryError(VestingError):
    """Raised when a beneficiary already has a vesting schedule."""
    pass


class ScheduleNotFoundError(VestingError):
    """Raised when no schedule exists for the requested beneficiary."""
    pass


# ==================== Authorization & State Errors ====================


class UnauthorizedError(VestingError):
    """Raised when the caller lacks the capability for an operation."""
    pass


class PausedError(VestingError):
    """Raised when a release is attempted while the pause gate is engaged."""
    recoverable = True


class AlreadyStartedError(VestingError):
    """Raised when the global vesting start is changed after it has passed."""
    pass


# ==================== Ledger Errors ====================


class TransferFailedError(VestingError):
    """Raised when the token ledger refuses or fails a transfer.

    Bookkeeping is left untouched; the engine never retries on its own.
    """
    recoverable = True


# ==================== Utility Functions ====================


def is_recoverable_error(exc: Exception) -> bool:
    """Check if an exception represents a recoverable error.

    Args:
        exc: The exception to check

    Returns:
        True if the error is recoverable and the operation can be retried
    """
    if isinstance(exc, VestingError):
        return exc.recoverable
    return isinstance(exc, (ConnectionError, TimeoutError))


def get_error_context(exc: Exception) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    if isinstance(exc, VestingError):
        context["recoverable"] = exc.recoverable
        if exc.details:
            context["details"] = exc.details

    if isinstance(exc, AllocationExceededError) and exc.category:
        context["category"] = exc.category

    return context
