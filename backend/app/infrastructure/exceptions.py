"""
Custom Exceptions for the Exam Prep backend

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class ExamPrepError(Exception):
    """Base exception for all Exam Prep backend errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(ExamPrepError):
    """Raised when input validation fails."""
    pass


class DatabaseError(ExamPrepError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class DuplicateError(DatabaseError):
    """Raised when attempting to create a duplicate resource."""
    pass


# =============================================================================
# Subscription lifecycle
# =============================================================================

class ProvisioningError(ExamPrepError):
    """Raised when a completed payment cannot be turned into a subscription."""

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        tier_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if transaction_id:
            details["transaction_id"] = transaction_id
        if tier_id:
            details["tier_id"] = tier_id
        super().__init__(message, details, original_error)


class TierNotFoundError(ProvisioningError):
    """Raised when a transaction references an unknown or inactive tier."""
    pass


class InvalidTransitionError(ExamPrepError):
    """Raised when a ledger or subscription status change is not allowed."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
    ):
        details = {}
        if current_status:
            details["current_status"] = current_status
        if target_status:
            details["target_status"] = target_status
        super().__init__(message, details)


class InsufficientPointsError(ValidationError):
    """Raised when a referral points redemption exceeds the balance."""

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"Insufficient points: {balance} available, {required} required",
            {"points_balance": balance, "points_required": required},
        )


class PaymentProviderError(ExamPrepError):
    """Raised when a payment provider call or verification fails."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if provider:
            details["provider"] = provider
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class ConfigurationError(ExamPrepError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
