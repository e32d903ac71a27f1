"""
Booking and payment lifecycle.

Legal booking transitions:

    PENDING   -> CONFIRMED   payment succeeded inside the hold window
    PENDING   -> CANCELLED   payment failed, hold lapsed, or buyer cancelled
    CONFIRMED -> CANCELLED   cancelled after payment
    CONFIRMED -> COMPLETED   ticket scanned inside the event window

CANCELLED and COMPLETED are terminal.
"""

from enum import Enum
from typing import Dict, FrozenSet

from eventpass.core.errors import AlreadyTerminal, BookingError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class EventStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class InvalidTransition(BookingError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, from_status: BookingStatus, to_status: BookingStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Illegal booking transition: {from_status.value} -> {to_status.value}")


class BookingStateMachine:
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
        BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
        BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
        BookingStatus.CANCELLED: frozenset(),
        BookingStatus.COMPLETED: frozenset(),
    }

    @classmethod
    def can_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> bool:
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)
        return to_status in cls._ALLOWED_TRANSITIONS[from_status]

    @classmethod
    def validate_transition(cls, booking_id: int, from_status: BookingStatus, to_status: BookingStatus) -> None:
        """
        Raises AlreadyTerminal when leaving a terminal state, InvalidTransition
        for any other illegal edge.
        """
        if cls.can_transition(from_status, to_status):
            return
        if cls.is_terminal(from_status):
            raise AlreadyTerminal(booking_id, from_status.value)
        raise InvalidTransition(from_status, to_status)

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        cls._ensure_valid_status(status)
        return not cls._ALLOWED_TRANSITIONS[status]

    @classmethod
    def sources_for(cls, to_status: BookingStatus) -> FrozenSet[BookingStatus]:
        """States from which `to_status` may be entered; used as compare-and-set guards."""
        cls._ensure_valid_status(to_status)
        return frozenset(
            source for source, targets in cls._ALLOWED_TRANSITIONS.items() if to_status in targets
        )

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(f"Expected BookingStatus, got {type(status)}")


# Statuses whose quantity is currently held out of an event's available counter
INVENTORY_HOLDING_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.COMPLETED}
)
