"""
Custom exceptions for the Travel Booking Engine.
"""

from typing import Any, Dict, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the engine."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Business logic errors
    NOT_AVAILABLE = "NOT_AVAILABLE"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    HOLD_EXPIRED = "HOLD_EXPIRED"
    MODIFICATION_NOT_ALLOWED = "MODIFICATION_NOT_ALLOWED"

    # Concurrency errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # Payment gateway errors
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class BookingEngineError(Exception):
    """Base exception class for the booking engine."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        """Initialize the exception with comprehensive error information."""
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(BookingEngineError):
    """Exception raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.VALIDATION_ERROR,
            details={"field_errors": field_errors} if field_errors else None,
            **kwargs
        )
        self.field_errors = field_errors or {}


class NotFoundError(BookingEngineError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class BookingNotFoundError(NotFoundError):
    """Exception raised when a booking is not found."""

    def __init__(self, booking_id: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} not found",
            resource_type="booking",
            resource_id=booking_id,
            suggestions=["Check the booking ID", "View your booking history"],
            **kwargs
        )


class HoldNotFoundError(NotFoundError):
    """Exception raised when a reservation hold is unknown or already released."""

    def __init__(self, hold_id: str, **kwargs):
        super().__init__(
            f"Reservation hold {hold_id} not found",
            resource_type="reservation_hold",
            resource_id=hold_id,
            **kwargs
        )


class BusinessLogicError(BookingEngineError):
    """Base exception for business logic violations."""
    pass


class NotAvailableError(BusinessLogicError):
    """Exception raised when the requested stay overlaps an active hold or allocation."""

    def __init__(self, resource_id: str, check_in: str, check_out: str, reason: str = "overlap", **kwargs):
        super().__init__(
            f"Resource {resource_id} is not available from {check_in} to {check_out}",
            error_code=ErrorCode.NOT_AVAILABLE,
            details={
                "resource_id": resource_id,
                "check_in": check_in,
                "check_out": check_out,
                "reason": reason,
            },
            suggestions=["Try different dates", "Search for similar accommodations"],
            **kwargs
        )


class HoldExpiredError(BusinessLogicError):
    """Exception raised when a hold lapsed before it could be confirmed."""

    def __init__(self, hold_id: str, booking_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Reservation hold {hold_id} has expired",
            error_code=ErrorCode.HOLD_EXPIRED,
            details={"hold_id": hold_id, "booking_id": booking_id},
            suggestions=["Create a new booking", "Complete payment within the hold window"],
            **kwargs
        )


class InvalidStatusTransitionError(BusinessLogicError):
    """Exception raised when a booking cannot move from its current status to the target."""

    def __init__(
        self,
        booking_id: str,
        current_status: str,
        target_status: str,
        terms: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        details = {
            "booking_id": booking_id,
            "current_status": current_status,
            "target_status": target_status,
        }
        if terms is not None:
            details["terms"] = terms
        super().__init__(
            f"Booking {booking_id} cannot move from {current_status} to {target_status}",
            error_code=ErrorCode.INVALID_STATUS_TRANSITION,
            details=details,
            **kwargs
        )
        self.current_status = current_status
        self.target_status = target_status


class ModificationNotAllowedError(BusinessLogicError):
    """Exception raised when the modification policy rejects a change."""

    def __init__(self, booking_id: str, reason: str, terms: Dict[str, Any], **kwargs):
        super().__init__(
            reason,
            error_code=ErrorCode.MODIFICATION_NOT_ALLOWED,
            details={"booking_id": booking_id, "terms": terms},
            suggestions=["Cancel the booking instead", "Contact the property directly"],
            **kwargs
        )


class ConcurrencyError(BookingEngineError):
    """Exception raised for concurrency-related issues."""

    def __init__(self, message: str, retry_after: int = 1, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.CONCURRENCY_CONFLICT)
        super().__init__(
            message,
            retry_after=retry_after,
            suggestions=["Please try again", "Wait a moment and retry"],
            **kwargs
        )


class OptimisticLockError(ConcurrencyError):
    """Exception raised when a conditional write loses against a concurrent writer."""

    def __init__(self, resource_type: str, resource_id: str, **kwargs):
        super().__init__(
            f"{resource_type} {resource_id} was modified by another transaction",
            details={"resource_type": resource_type, "resource_id": resource_id},
            **kwargs
        )


class InvalidSignatureError(BookingEngineError):
    """Exception raised when a webhook fails signature verification."""

    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.INVALID_SIGNATURE,
            **kwargs
        )


class GatewayError(BookingEngineError):
    """Exception raised for payment gateway failures."""

    def __init__(self, service_name: str, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.GATEWAY_ERROR)
        kwargs.setdefault("details", {"service_name": service_name, "status_code": status_code})
        super().__init__(
            f"{service_name} service error: {message}",
            suggestions=["Try again later", "Contact support if problem persists"],
            **kwargs
        )
        self.status_code = status_code


class GatewayRequestRejected(GatewayError):
    """The gateway refused the request itself (4xx); retrying cannot help."""
    pass


# Errors that the webhook dispatcher treats as transient: the event stays
# unprocessed so the gateway redelivers it.
TRANSIENT_ERRORS = (ConcurrencyError, GatewayError)
