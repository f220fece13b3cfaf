"""
Custom exceptions for the Bus Booking Engine.
"""

from typing import Any, Dict, Optional, List, Sequence
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the engine."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Inventory errors
    INVALID_LAYOUT = "INVALID_LAYOUT"
    SEAT_CONFLICT = "SEAT_CONFLICT"
    SEAT_UNAVAILABLE = "SEAT_UNAVAILABLE"
    TRIP_HAS_ACTIVE_BOOKINGS = "TRIP_HAS_ACTIVE_BOOKINGS"
    TRIP_COMPLETED = "TRIP_COMPLETED"

    # Order lifecycle errors
    COUPON_INVALID = "COUPON_INVALID"
    INVALID_ORDER_STATE = "INVALID_ORDER_STATE"
    REFUND_INELIGIBLE = "REFUND_INELIGIBLE"

    # Gateway errors
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    CALLBACK_VERIFICATION_FAILED = "CALLBACK_VERIFICATION_FAILED"
    REFUND_GATEWAY_ERROR = "REFUND_GATEWAY_ERROR"


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
            "error_code": self.error_code.value,
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
    """Exception raised for malformed requests."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        kwargs.setdefault("details", {"field_errors": field_errors} if field_errors else None)
        super().__init__(message, error_code=ErrorCode.VALIDATION_ERROR, **kwargs)
        self.field_errors = field_errors or {}


class InvalidLayoutError(BookingEngineError):
    """Exception raised when a vehicle layout cannot produce seats."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.INVALID_LAYOUT,
            suggestions=["Provide a positive total_seats value", "Check the seat matrix"],
            **kwargs
        )


class NotFoundError(BookingEngineError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class OrderNotFoundError(NotFoundError):
    """Exception raised when an order is not found."""

    def __init__(self, order_id: str, **kwargs):
        super().__init__(
            f"Order {order_id} not found",
            resource_type="order",
            resource_id=order_id,
            suggestions=["Check the order ID"],
            **kwargs
        )


class TicketNotFoundError(NotFoundError):
    """Exception raised when tickets do not belong to the given order."""

    def __init__(self, order_id: str, ticket_ids: Sequence[str], **kwargs):
        super().__init__(
            f"Tickets {', '.join(ticket_ids)} not found in order {order_id}",
            resource_type="ticket",
            resource_id=",".join(ticket_ids),
            **kwargs
        )


class PaymentNotFoundError(NotFoundError):
    """Exception raised when a payment is not found."""

    def __init__(self, reference: str, **kwargs):
        super().__init__(
            f"Payment {reference} not found",
            resource_type="payment",
            resource_id=reference,
            **kwargs
        )


class SeatNotFoundError(NotFoundError):
    """Exception raised when seats are not found."""

    def __init__(self, seat_ids: Sequence[str], **kwargs):
        super().__init__(
            f"Seats not found: {', '.join(seat_ids)}",
            resource_type="seat",
            resource_id=",".join(seat_ids),
            suggestions=["Refresh the seat map"],
            **kwargs
        )


class TripNotFoundError(NotFoundError):
    """Exception raised when a trip is not found."""

    def __init__(self, trip_id: str, **kwargs):
        super().__init__(
            f"Trip {trip_id} not found",
            resource_type="trip",
            resource_id=trip_id,
            **kwargs
        )


class InvalidTokenError(BookingEngineError):
    """Exception raised when a check-in token does not match the order."""

    def __init__(self, message: str = "Invalid check-in token", **kwargs):
        super().__init__(message, error_code=ErrorCode.INVALID_TOKEN, **kwargs)


class BusinessLogicError(BookingEngineError):
    """Base exception for business rule violations."""
    pass


class SeatConflictError(BusinessLogicError):
    """Exception raised when a conditional seat transition affects no row."""

    def __init__(self, seat_id: str, expected_status: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.SEAT_CONFLICT)
        kwargs.setdefault("details", {"seat_id": seat_id, "expected_status": expected_status})
        kwargs.setdefault("suggestions", ["Choose a different seat", "Refresh seat availability"])
        message = kwargs.pop("message", None) or (
            f"Seat {seat_id} is no longer {expected_status}" if expected_status else f"Seat {seat_id} changed concurrently"
        )
        super().__init__(message, **kwargs)
        self.seat_id = seat_id


class SeatUnavailableError(SeatConflictError):
    """Exception raised when a set of seats cannot be held together."""

    def __init__(self, seat_ids: Sequence[str], labels: Optional[Sequence[str]] = None, reason: Optional[str] = None, **kwargs):
        seat_names = ", ".join(labels) if labels else ", ".join(seat_ids)
        message = f"Seats unavailable: {seat_names}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            ",".join(seat_ids),
            message=message,
            error_code=ErrorCode.SEAT_UNAVAILABLE,
            details={"seat_ids": list(seat_ids), "labels": list(labels or []), "reason": reason},
            **kwargs
        )
        self.seat_ids = list(seat_ids)


class TripHasActiveBookingsError(BusinessLogicError):
    """Exception raised when deleting a trip that still holds reserved or booked seats."""

    def __init__(self, trip_id: str, seat_count: int, **kwargs):
        super().__init__(
            f"Cannot delete trip {trip_id} with {seat_count} reserved or booked seats",
            error_code=ErrorCode.TRIP_HAS_ACTIVE_BOOKINGS,
            details={"trip_id": trip_id, "seat_count": seat_count},
            suggestions=["Cancel or refund the orders first"],
            **kwargs
        )


class TripCompletedError(BusinessLogicError):
    """Exception raised when cancelling or refunding tickets of a trip that has already run."""

    def __init__(self, ticket_ids: Sequence[str], **kwargs):
        super().__init__(
            f"Tickets {', '.join(ticket_ids)} belong to a completed trip",
            error_code=ErrorCode.TRIP_COMPLETED,
            details={"ticket_ids": list(ticket_ids)},
            **kwargs
        )


class CouponInvalidError(BusinessLogicError):
    """Exception raised when a coupon cannot be applied."""

    def __init__(self, code: str, reason: str, **kwargs):
        super().__init__(
            f"Coupon {code} cannot be applied: {reason}",
            error_code=ErrorCode.COUPON_INVALID,
            details={"coupon_code": code, "reason": reason},
            suggestions=["Remove the coupon", "Use a different coupon"],
            **kwargs
        )
        self.code = code
        self.reason = reason


class InvalidOrderStateError(BusinessLogicError):
    """Exception raised when an order is in the wrong state for an operation."""

    def __init__(self, order_id: str, current_state: str, required_state: str, **kwargs):
        super().__init__(
            f"Order {order_id} is in {current_state} state, required {required_state}",
            error_code=ErrorCode.INVALID_ORDER_STATE,
            details={"order_id": order_id, "current_state": current_state, "required_state": required_state},
            **kwargs
        )


class RefundIneligibleError(BusinessLogicError):
    """Exception raised when tickets cannot be refunded."""

    def __init__(self, ticket_ids: Sequence[str], reason: str = "tickets are not confirmed", **kwargs):
        super().__init__(
            f"Tickets {', '.join(ticket_ids)} cannot be refunded: {reason}",
            error_code=ErrorCode.REFUND_INELIGIBLE,
            details={"ticket_ids": list(ticket_ids), "reason": reason},
            **kwargs
        )


class GatewayError(BookingEngineError):
    """Exception raised when a payment provider is unreachable or answers badly."""

    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.GATEWAY_ERROR)
        kwargs.setdefault("details", {"gateway": gateway, "status_code": status_code})
        kwargs.setdefault("suggestions", ["Try again later", "Choose another payment method"])
        super().__init__(f"{gateway} gateway error: {message}", **kwargs)
        self.gateway = gateway


class GatewayTimeoutError(GatewayError):
    """Exception raised when a provider call exceeds its timeout."""

    def __init__(self, gateway: str, timeout: float, **kwargs):
        super().__init__(
            gateway,
            f"request timed out after {timeout}s",
            error_code=ErrorCode.GATEWAY_TIMEOUT,
            details={"gateway": gateway, "timeout": timeout},
            **kwargs
        )


class GatewayUnavailableError(GatewayError):
    """Exception raised while a provider's circuit breaker is open."""

    def __init__(self, gateway: str, retry_after: int, **kwargs):
        super().__init__(
            gateway,
            "circuit breaker is open",
            error_code=ErrorCode.GATEWAY_UNAVAILABLE,
            retry_after=retry_after,
            **kwargs
        )


class CallbackVerificationError(GatewayError):
    """Exception raised when a gateway callback fails signature verification."""

    def __init__(self, gateway: str, reason: str = "invalid signature", **kwargs):
        super().__init__(
            gateway,
            f"callback rejected: {reason}",
            error_code=ErrorCode.CALLBACK_VERIFICATION_FAILED,
            details={"gateway": gateway, "reason": reason},
            suggestions=[],
            **kwargs
        )


class RefundGatewayError(GatewayError):
    """Exception raised when the provider rejects or fails a refund."""

    def __init__(self, gateway: str, message: str, **kwargs):
        super().__init__(
            gateway,
            f"refund failed: {message}",
            error_code=ErrorCode.REFUND_GATEWAY_ERROR,
            **kwargs
        )
