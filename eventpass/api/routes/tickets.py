"""
Gate-side ticket verification.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.api.dependencies import get_renderer
from eventpass.db.session import get_db
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.schemas.ticket import TicketScanRequest, TicketVerificationResponse
from eventpass.services import ticket_service
from eventpass.services.ticket_service import TicketVerification

router = APIRouter(prefix="/tickets", tags=["Tickets"])


def _to_response(result: TicketVerification) -> TicketVerificationResponse:
    booking = result.booking
    return TicketVerificationResponse(
        valid=result.valid,
        status=result.status,
        message=result.message,
        booking_reference=booking.booking_reference if booking else None,
        booking_id=booking.id if booking else None,
        event_id=booking.event_id if booking else None,
        quantity=booking.quantity if booking else None,
    )


@router.get("/verify/{booking_reference}", response_model=TicketVerificationResponse)
async def verify_ticket(booking_reference: str, db: AsyncSession = Depends(get_db)):
    """Admit a booking by reference. A valid scan marks it COMPLETED."""
    return _to_response(await ticket_service.verify_ticket(db, booking_reference))


@router.post("/scan", response_model=TicketVerificationResponse)
async def scan_ticket(
    body: TicketScanRequest,
    db: AsyncSession = Depends(get_db),
    renderer: TicketRenderer = Depends(get_renderer),
):
    """Admit a booking by its rendered ticket artifact."""
    return _to_response(await ticket_service.verify_ticket_artifact(db, body.artifact, renderer))
