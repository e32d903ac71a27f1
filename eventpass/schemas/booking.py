"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    event_id: int
    quantity: int = Field(default=1, gt=0)


class BookingCancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by user", min_length=1, max_length=255)


class BookingResponse(BaseModel):
    id: int
    user_id: str
    event_id: int
    quantity: int
    total_amount: Decimal
    status: str
    booking_reference: str
    payment_reference: Optional[str] = None
    cancellation_reason: Optional[str] = None
    has_ticket: bool = False
    created_at: datetime
    updated_at: datetime
    hold_expires_at: Optional[datetime] = None
    hold_active: Optional[bool] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_booking(
        cls, booking, hold_expires_at: Optional[datetime] = None, hold_active: Optional[bool] = None
    ) -> "BookingResponse":
        return cls(
            id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            quantity=booking.quantity,
            total_amount=booking.total_amount,
            status=booking.status.value,
            booking_reference=booking.booking_reference,
            payment_reference=booking.payment_reference,
            cancellation_reason=booking.cancellation_reason,
            has_ticket=bool(booking.ticket_artifact),
            created_at=booking.created_at,
            updated_at=booking.updated_at,
            hold_expires_at=hold_expires_at,
            hold_active=hold_active,
        )


class BookingStartResponse(BaseModel):
    booking: BookingResponse
    hold_expires_at: datetime
    message: str


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
    page: int
    page_size: int


class StatusBucketResponse(BaseModel):
    count: int
    tickets: int
    amount: Decimal

    model_config = {"from_attributes": True}


class BookingStatsResponse(BaseModel):
    total_bookings: int
    total_tickets: int
    total_amount: Decimal
    by_status: Dict[str, StatusBucketResponse]


class TicketResponse(BaseModel):
    booking_id: int
    booking_reference: str
    status: str
    ticket_artifact: str
