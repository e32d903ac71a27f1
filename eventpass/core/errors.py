"""
Domain error taxonomy for the booking core.

Every error carries a stable `kind` (for API clients and logs) and the
HTTP status the API layer maps it to. Services raise these; they never
raise HTTPException directly.
"""


class BookingError(Exception):
    """Base exception for all booking-core domain errors."""

    kind = "booking_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BookingError):
    """Malformed input, rejected before the ledger is touched."""

    kind = "validation_error"
    status_code = 422


class EventNotBookable(BookingError):
    kind = "event_not_bookable"
    status_code = 409


class InsufficientAvailability(BookingError):
    kind = "insufficient_availability"
    status_code = 409

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Only {available} tickets available, requested {requested}")


class NotFoundError(BookingError):
    kind = "not_found"
    status_code = 404


class ForbiddenError(BookingError):
    kind = "forbidden"
    status_code = 403


class AlreadyConfirmed(BookingError):
    kind = "already_confirmed"
    status_code = 409


class AlreadyTerminal(BookingError):
    """Transition attempted on a CANCELLED or COMPLETED booking."""

    kind = "already_terminal"
    status_code = 409

    def __init__(self, booking_id: int, status: str):
        self.booking_id = booking_id
        self.status = status
        super().__init__(f"Booking {booking_id} is already {status}")


class HoldExpired(BookingError):
    """
    Confirmation attempted after the hold lapsed. By the time this is
    raised the booking has been cancelled and its inventory restored.
    """

    kind = "hold_expired"
    status_code = 410

    def __init__(self, booking_id: int):
        self.booking_id = booking_id
        super().__init__("Booking hold has expired. Please start a new booking.")


class SignatureError(BookingError):
    kind = "signature_error"
    status_code = 401


class UpstreamPaymentError(BookingError):
    """Provider call failed or timed out; the outcome is indeterminate."""

    kind = "upstream_payment_error"
    status_code = 502


class PaidAfterExpiry(BookingError):
    """Payment succeeded for a booking that had already lapsed; needs a manual refund."""

    kind = "paid_after_expiry"
    status_code = 409

    def __init__(self, payment_reference: str, booking_id: int):
        self.payment_reference = payment_reference
        self.booking_id = booking_id
        super().__init__(
            f"Payment {payment_reference} succeeded after booking {booking_id} expired; flagged for refund"
        )
