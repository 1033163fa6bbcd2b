"""
Custom exception classes for the application.

All custom exceptions inherit from base AppException for consistent error handling.
"""

from typing import Optional


class AppException(Exception):
    """
    Base application exception.

    All custom exceptions should inherit from this class.

    Attributes:
        message: Error message
        code: Error code
        status_code: HTTP status code
    """

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: int = 500
    ):
        """
        Initialize AppException.

        Args:
            message: Error message
            code: Error code
            status_code: HTTP status code
        """
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


# Position Exceptions

class PositionNotFoundError(AppException):
    """Position id is unknown."""

    def __init__(self, message: str = "Position not found"):
        super().__init__(message=message, code="NOT_FOUND", status_code=404)


class InvalidPositionStateError(AppException):
    """Position is not in a state that allows the requested transition."""

    def __init__(self, message: str = "Position is not open", status: Optional[str] = None):
        self.status = status
        super().__init__(message=message, code="INVALID_STATE", status_code=409)


class AlreadyClosingError(AppException):
    """Another closer claimed the position between our read and our write."""

    def __init__(self, message: str = "Position is already being closed"):
        super().__init__(message=message, code="ALREADY_CLOSING", status_code=409)


class SettlementFailedError(AppException):
    """Exchange did not execute the closing order. Position stays open."""

    def __init__(self, message: str = "Failed to close position on exchange"):
        super().__init__(message=message, code="SETTLEMENT_FAILED", status_code=502)


class SettlementIncompleteError(AppException):
    """
    Exit order executed but the settlement could not be recorded.

    The position keeps its closing claim with the executed exit order
    attached; a close retried after the claim goes stale finishes it
    without sending another order.
    """

    def __init__(self, message: str = "Settlement was not recorded", exit_order_id: Optional[str] = None):
        self.exit_order_id = exit_order_id
        super().__init__(message=message, code="SETTLEMENT_INCOMPLETE", status_code=500)


class CancellationFailedError(AppException):
    """A dependent conditional order could not be cancelled (non-fatal)."""

    def __init__(self, message: str = "Failed to cancel conditional order", order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message=message, code="CANCELLATION_FAILED", status_code=502)


# Exchange Exceptions

class ExchangeError(AppException):
    """Base exception for exchange errors."""

    def __init__(
        self,
        message: str = "Exchange error",
        code: str = "EXCHANGE_ERROR",
        status_code: int = 502,
        ret_code: Optional[int] = None
    ):
        self.ret_code = ret_code
        super().__init__(message=message, code=code, status_code=status_code)


class ExchangeUnavailableError(ExchangeError):
    """Transport failure, timeout or unusable upstream response."""

    def __init__(self, message: str = "Exchange unavailable"):
        super().__init__(message=message, code="EXCHANGE_UNAVAILABLE", status_code=503)


class ExchangeRejectedError(ExchangeError):
    """Exchange answered but refused the request (non-zero retCode / 4xx)."""

    def __init__(self, message: str = "Exchange rejected the request", ret_code: Optional[int] = None):
        super().__init__(message=message, code="EXCHANGE_REJECTED", status_code=502, ret_code=ret_code)


class ExchangeAuthFailedError(ExchangeRejectedError):
    """Missing credentials or the exchange refused the signature."""

    def __init__(self, message: str = "Exchange authentication failed", ret_code: Optional[int] = None):
        super().__init__(message=message, ret_code=ret_code)
        self.code = "EXCHANGE_AUTH_FAILED"


# Validation Exceptions

class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=422)


# Import Exceptions

class MetricsRollupError(AppException):
    """Imported positions were stored but their metrics increments failed."""

    def __init__(self, message: str = "Metrics rollup failed", imported_count: int = 0, pending_count: int = 0):
        self.imported_count = imported_count
        self.pending_count = pending_count
        super().__init__(message=message, code="METRICS_ROLLUP_FAILED", status_code=500)


# Database Exceptions

class DatabaseError(AppException):
    """Database error."""

    def __init__(self, message: str = "Database error"):
        super().__init__(message=message, code="DATABASE_ERROR", status_code=500)
