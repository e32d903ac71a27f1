"""
Booking endpoints: start, read, cancel and ticket re-issue.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.api.dependencies import get_current_user_id, get_hold_manager, get_renderer, get_request_notifier
from eventpass.core.logging import get_logger
from eventpass.db.session import get_db
from eventpass.domain.state_machine import BookingStatus
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.models.booking import Booking
from eventpass.schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingStartResponse,
    BookingStatsResponse,
    StatusBucketResponse,
    TicketResponse,
)
from eventpass.services import booking_service, ticket_service
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import Notifier

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _to_response(booking: Booking, holds: Optional[HoldManager] = None) -> BookingResponse:
    hold_expires_at = None
    hold_active = None
    if booking.status == BookingStatus.PENDING:
        hold_expires_at = booking_service.hold_expires_at(booking)
        if holds is not None:
            hold_active = await holds.is_held(booking.id)
    return BookingResponse.from_booking(booking, hold_expires_at=hold_expires_at, hold_active=hold_active)


@router.post("/", response_model=BookingStartResponse, status_code=status.HTTP_201_CREATED)
async def start_booking(
    booking_data: BookingCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
):
    """
    Reserve tickets for an event.

    Inventory is taken immediately; the booking stays PENDING until the
    payment is confirmed or the hold lapses.
    """
    reservation = await booking_service.start_booking(
        db, holds, booking_data.event_id, booking_data.quantity, user_id
    )
    return BookingStartResponse(
        booking=await _to_response(reservation.booking, holds),
        hold_expires_at=reservation.hold_expires_at,
        message="Booking started. Complete payment before the hold expires.",
    )


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    bookings, total = await booking_service.list_user_bookings(db, user_id, status_filter, page, page_size)
    return BookingListResponse(
        bookings=[await _to_response(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=BookingStatsResponse)
async def booking_stats(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Counts, tickets and amounts per status for the caller's bookings."""
    stats = await booking_service.booking_statistics(db, user_id)
    return BookingStatsResponse(
        total_bookings=stats["total_bookings"],
        total_tickets=stats["total_tickets"],
        total_amount=stats["total_amount"],
        by_status={k: StatusBucketResponse.model_validate(v) for k, v in stats["by_status"].items()},
    )


@router.get("/reference/{booking_reference}", response_model=BookingResponse)
async def get_booking_by_reference(
    booking_reference: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
):
    booking = await booking_service.get_booking_by_reference(db, booking_reference, actor_id=user_id)
    return await _to_response(booking, holds)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
):
    booking = await booking_service.get_booking(db, booking_id, actor_id=user_id)
    return await _to_response(booking, holds)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    body: Optional[BookingCancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
    notifier: Notifier = Depends(get_request_notifier),
):
    """Cancel a booking and release its tickets back to the event."""
    reason = body.reason if body else "Cancelled by user"
    booking = await booking_service.cancel_booking(
        db, holds, booking_id, actor_id=user_id, reason=reason, notifier=notifier
    )
    return await _to_response(booking)


@router.get("/{booking_id}/ticket", response_model=TicketResponse)
async def get_ticket(
    booking_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    renderer: TicketRenderer = Depends(get_renderer),
):
    """Re-render the ticket of a confirmed booking."""
    booking = await booking_service.get_booking(db, booking_id, actor_id=user_id)
    booking = await ticket_service.reissue_ticket(db, booking.booking_reference, renderer)
    return TicketResponse(
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        status=booking.status.value,
        ticket_artifact=booking.ticket_artifact,
    )
