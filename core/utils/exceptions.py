# Structured exception hierarchy for Neural Core trading system

from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum


class NeuralCoreException(Exception):
    """Base exception for all Neural Core specific errors"""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.reason = reason
        self.timestamp = datetime.now(timezone.utc)


class TransientError(NeuralCoreException):
    """Base class for transient errors that should be retried with exponential backoff"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 5,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None,
                 reason: Optional[str] = None):
        super().__init__(message, details, correlation_id, reason)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.retryable = retry_count < max_retries


class PermanentError(NeuralCoreException):
    """Base class for permanent errors that are reported back to the caller as-is"""
    pass


class DepositFailureKind(str, Enum):
    """Distinct deposit rejection kinds, in the order they are checked"""
    INVALID_AMOUNT = "InvalidAmount"
    TOO_SMALL = "TooSmall"
    SINGLE_LIMIT_EXCEEDED = "SingleLimitExceeded"
    TOTAL_LIMIT_EXCEEDED = "TotalLimitExceeded"


# Input errors
class ValidationError(PermanentError):
    """Malformed or out-of-range input"""

    status_code = 400
    error = "Validation failed"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None,
                 kind: Optional[DepositFailureKind] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.kind = kind


class NotFound(PermanentError):
    """Unknown broker, deposit, user or account"""

    status_code = 404
    error = "Not found"

    def __init__(self, message: str, resource: str, resource_id: Any, **kwargs):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.resource_id = resource_id


# Safety rule errors
class LimitExceeded(PermanentError):
    """Deposit cap or trading limit breached"""

    status_code = 400
    error = "Limit exceeded"

    def __init__(self, message: str, limit: Optional[float] = None,
                 attempted: Optional[float] = None,
                 kind: Optional[DepositFailureKind] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit
        self.attempted = attempted
        self.kind = kind


class ComplianceViolation(PermanentError):
    """Pattern day trading rule would be breached"""

    status_code = 403
    error = "PDT compliance violation"

    def __init__(self, message: str, day_trade_count: int, day_trade_limit: int,
                 equity: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.day_trade_count = day_trade_count
        self.day_trade_limit = day_trade_limit
        self.equity = equity


# Infrastructure errors
class TransactionFailure(TransientError):
    """Atomic commit failed and was fully rolled back"""

    status_code = 500
    error = "Transaction failed"

    def __init__(self, message: str, operation: str, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation


class ConnectivityError(TransientError):
    """Upstream broker API unreachable"""

    status_code = 502
    error = "Broker unavailable"

    def __init__(self, message: str, broker: str, **kwargs):
        super().__init__(message, **kwargs)
        self.broker = broker


class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, config_value: Any,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def get_retry_delay(error: TransientError, base_delay: float = 1.0) -> float:
    """
    Calculate exponential backoff delay for retrying transient errors

    Args:
        error: The transient error to retry
        base_delay: Base delay in seconds

    Returns:
        Delay in seconds before retry
    """
    if not isinstance(error, TransientError):
        return 0.0

    # Exponential backoff: base_delay * (2 ^ retry_count)
    return base_delay * (2 ** error.retry_count)


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, NeuralCoreException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details
        if error.reason:
            context["reason"] = error.reason

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries
            context["next_retry_delay"] = get_retry_delay(error)

        if isinstance(error, ConnectivityError):
            context["broker"] = error.broker

        if isinstance(error, (ValidationError, LimitExceeded)) and error.kind is not None:
            context["failure_kind"] = error.kind.value

    if additional_context:
        context.update(additional_context)

    return context
