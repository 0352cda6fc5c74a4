"""
Domain errors for booking admission, cancellation and payment initiation.

Each error carries the HTTP status and a stable machine-readable code.
The handler registered in main.py renders them as
{"detail": ..., "code": ..., **extra}.
"""

from typing import Any, Dict, Optional


class BookingServiceError(Exception):
    status_code: int = 400
    code: str = "booking_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ListingNotFound(BookingServiceError):
    status_code = 404
    code = "listing_not_found"


class ListingNotBookable(BookingServiceError):
    status_code = 400
    code = "listing_not_bookable"


class InvalidBookingRequest(BookingServiceError):
    status_code = 400
    code = "invalid_booking_request"


class InvalidPhoneNumber(InvalidBookingRequest):
    code = "invalid_phone_number"


class CapacityExceeded(BookingServiceError):
    """Requested slots exceed what is left for the item on that date."""
    status_code = 409
    code = "capacity_exceeded"

    def __init__(self, remaining: int, message: Optional[str] = None):
        super().__init__(
            message or f"Only {remaining} slot(s) remaining for this date",
            remaining=remaining
        )
        self.remaining = remaining


class BookingNotFound(BookingServiceError):
    status_code = 404
    code = "booking_not_found"


class BookingAlreadyCancelled(BookingServiceError):
    status_code = 409
    code = "booking_already_cancelled"


class CancellationWindowClosed(BookingServiceError):
    status_code = 409
    code = "cancellation_window_closed"

    def __init__(self, hours_until_visit: float, window_hours: int):
        super().__init__(
            f"Bookings can only be cancelled more than {window_hours} hours before the visit",
            hours_until_visit=round(hours_until_visit, 2),
            window_hours=window_hours
        )


class PermissionDenied(BookingServiceError):
    status_code = 403
    code = "permission_denied"


class PaymentGatewayError(BookingServiceError):
    """M-Pesa refused the STK push or could not be reached."""
    status_code = 502
    code = "payment_gateway_error"

    def __init__(self, message: str, retryable: bool = False, gateway_code: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.gateway_code = gateway_code
