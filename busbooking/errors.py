"""Errors raised by the booking core.

Every error carries the HTTP status and machine code the REST layer renders,
so routers never translate them by hand.
"""
from typing import Dict, Iterable, Optional


class BookingError(Exception):
    status_code = 400
    code = "booking_error"

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(BookingError):
    """Malformed request, rejected before the ledger is touched."""

    status_code = 422
    code = "validation_error"


class SeatUnavailable(BookingError):
    status_code = 409
    code = "seat_unavailable"

    def __init__(self, seat_keys: Iterable[str]):
        self.seat_keys = list(seat_keys)
        super().__init__(
            "Seats already taken: %s" % ", ".join(self.seat_keys),
            details={"seat_keys": self.seat_keys},
        )


class Forbidden(BookingError):
    status_code = 403
    code = "forbidden"


class InvalidState(BookingError):
    status_code = 409
    code = "invalid_state"


class PaymentProviderError(BookingError):
    status_code = 502
    code = "payment_provider_error"


class NotFound(BookingError):
    status_code = 404
    code = "not_found"
