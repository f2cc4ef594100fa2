from prometheus_client import Counter, Histogram

# Seat hold metrics
SEAT_HOLD_LATENCY = Histogram("busbooking_seat_hold_latency_seconds", "Latency for seat hold operations")
SEAT_HOLD_ATTEMPTS = Counter("busbooking_seat_hold_attempts_total", "Total seat hold attempts", ["result"])
HOLDS_EXPIRED = Counter("busbooking_holds_expired_total", "Seat holds released by expiry")

# Booking lifecycle metrics
BOOKING_TRANSITIONS = Counter("busbooking_booking_transitions_total", "Booking status transitions", ["status"])
SWEEP_FAILURES = Counter("busbooking_expiry_sweep_failures_total", "Expiry sweeps that raised")

# Payment metrics
PAYMENT_SUCCESS = Counter("busbooking_payments_success_total", "Successful payments processed", ["provider"])
PAYMENT_FAILURE = Counter("busbooking_payments_failure_total", "Failed payments", ["provider"])
PAYMENT_PROVIDER_ERRORS = Counter("busbooking_payment_provider_errors_total", "Payment provider call failures", ["provider", "operation"])
