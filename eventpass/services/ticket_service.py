"""
Ticket issuance and gate verification.

A ticket is the rendered artifact of a booking reference. It is issued
inside confirm (best-effort), can be re-rendered any time, and is
consumed at the gate: scanning a CONFIRMED booking inside the event
window moves it to COMPLETED exactly once.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.core.clock import as_utc, utcnow
from eventpass.core.errors import AlreadyTerminal, NotFoundError
from eventpass.core.logging import get_logger
from eventpass.core.metrics import record_transition
from eventpass.domain.state_machine import BookingStatus
from eventpass.infrastructure.ticket_renderer import TicketRenderer, get_ticket_renderer
from eventpass.models.booking import Booking
from eventpass.services import ledger
from eventpass.services.best_effort import SideEffectResult, best_effort

logger = get_logger(__name__)


class TicketStatus:
    VALID = "VALID"
    EARLY = "EARLY"
    EXPIRED = "EXPIRED"
    USED = "USED"
    INVALID = "INVALID"


@dataclass
class TicketVerification:
    valid: bool
    status: str
    message: str
    booking: Optional[Booking] = None


async def issue_ticket(booking_reference: str, renderer: Optional[TicketRenderer] = None) -> SideEffectResult:
    """Render the artifact for a booking. Never raises."""
    renderer = renderer or get_ticket_renderer()
    return await best_effort("ticket_render", renderer.render(booking_reference), booking_reference=booking_reference)


async def verify_ticket(
    db: AsyncSession,
    booking_reference: str,
    now: Optional[datetime] = None,
) -> TicketVerification:
    """
    Classify a scanned booking against its event window.

    Only a CONFIRMED booking can be admitted. Inside [start, end] it is
    moved to COMPLETED; if two gates scan it at once only one wins and
    the other sees USED.
    """
    now = now or utcnow()
    booking = await ledger.load_booking_by_reference(db, booking_reference, with_event=True)

    if booking.status == BookingStatus.COMPLETED:
        return TicketVerification(False, TicketStatus.USED, "Ticket has already been used", booking)
    if booking.status != BookingStatus.CONFIRMED:
        return TicketVerification(False, TicketStatus.INVALID, "Booking is not confirmed", booking)

    event = booking.event
    if now < as_utc(event.start_date):
        return TicketVerification(True, TicketStatus.EARLY, "Ticket is valid but event has not started yet", booking)
    if now > as_utc(event.end_date):
        return TicketVerification(False, TicketStatus.EXPIRED, "Event has ended", booking)

    try:
        won = await ledger.compare_and_set_status(
            db, booking.id, BookingStatus.CONFIRMED, BookingStatus.COMPLETED
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    booking = await ledger.load_booking(db, booking.id)
    if not won:
        if booking.status == BookingStatus.COMPLETED:
            return TicketVerification(False, TicketStatus.USED, "Ticket has already been used", booking)
        return TicketVerification(False, TicketStatus.INVALID, "Booking is not confirmed", booking)

    record_transition(BookingStatus.COMPLETED.value)
    logger.info("ticket_admitted", booking_id=booking.id, booking_reference=booking_reference)
    return TicketVerification(True, TicketStatus.VALID, "Ticket is valid", booking)


async def verify_ticket_artifact(
    db: AsyncSession,
    artifact: str,
    renderer: Optional[TicketRenderer] = None,
    now: Optional[datetime] = None,
) -> TicketVerification:
    return await verify_ticket(db, read_ticket_artifact(artifact, renderer), now=now)


def read_ticket_artifact(artifact: str, renderer: Optional[TicketRenderer] = None) -> str:
    """Turn a scanned artifact back into its booking reference."""
    return (renderer or get_ticket_renderer()).parse(artifact)


async def reissue_ticket(
    db: AsyncSession,
    booking_reference: str,
    renderer: Optional[TicketRenderer] = None,
) -> Booking:
    """Re-render and store the artifact of a CONFIRMED or COMPLETED booking."""
    booking = await ledger.load_booking_by_reference(db, booking_reference, with_event=True)
    if booking.status == BookingStatus.CANCELLED:
        raise AlreadyTerminal(booking.id, booking.status.value)
    if booking.status == BookingStatus.PENDING:
        raise NotFoundError("No ticket for an unconfirmed booking")

    renderer = renderer or get_ticket_renderer()
    artifact = await renderer.render(booking.booking_reference)
    if artifact != booking.ticket_artifact:
        try:
            await ledger.set_ticket_artifact(db, booking.id, artifact)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("ticket_reissued", booking_id=booking.id, booking_reference=booking_reference)

    return await ledger.load_booking(db, booking.id)
