from .models import *

__all__ = [
    "Base",
    "Deck",
    "SeatCategory",
    "HoldState",
    "BookingStatus",
    "PaymentStatus",
    "PaymentMethod",
    "BusLayout",
    "LayoutSeat",
    "Vehicle",
    "Booking",
    "SeatHold",
    "PaymentIntentRecord",
    "AuditLog",
]
