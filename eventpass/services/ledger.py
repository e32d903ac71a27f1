"""
Inventory ledger: the only writer of events.available.

CONCURRENCY STRATEGY: Conditional UPDATE (compare-and-set)
==========================================================

Problem:
  Two buyers try to take the last ticket simultaneously. Both read
  available=1, both decrement, both succeed. Result: oversell.

Solution:
  The decrement carries its own precondition:

    UPDATE events SET available = available - :qty
    WHERE id = :event_id AND status = 'ACTIVE'
      AND start_date > :now AND available >= :qty

  rows_affected == 1 means we won; 0 means the precondition no longer
  holds and nothing was written. The row lock taken by the UPDATE
  serializes concurrent reservations for the same event without any
  application-level lock, and the booking INSERT rides in the same
  transaction so a decrement without a booking (or vice versa) is never
  committed. The CHECK constraint (available >= 0) is the final net.

  Booking status changes use the same idea: UPDATE ... WHERE status =
  :observed. Whichever transaction commits first wins; the loser sees
  rowcount 0 and re-reads instead of overwriting.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from eventpass.core.clock import as_utc, hold_deadline, utcnow
from eventpass.core.config import get_settings
from eventpass.core.errors import EventNotBookable, InsufficientAvailability, NotFoundError
from eventpass.core.logging import get_logger
from eventpass.core.metrics import reserve_latency
from eventpass.core.references import generate_booking_reference
from eventpass.domain.state_machine import BookingStatus, EventStatus
from eventpass.models.booking import Booking
from eventpass.models.event import Event

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class Reservation:
    booking: Booking
    hold_expires_at: datetime


async def reserve(
    db: AsyncSession,
    event_id: int,
    quantity: int,
    user_id: str,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Atomically take `quantity` tickets from the event and record a PENDING
    booking for them. Commits on success, rolls back fully on any failure.
    """
    now = now or utcnow()
    started = time.perf_counter()

    try:
        result = await db.execute(
            update(Event)
            .where(
                Event.id == event_id,
                Event.status == EventStatus.ACTIVE,
                Event.start_date > now,
                Event.available >= quantity,
            )
            .values(available=Event.available - quantity)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await db.rollback()
            raise await _rejection_for(db, event_id, quantity, now)

        price = (await db.execute(select(Event.price).where(Event.id == event_id))).scalar_one()

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            quantity=quantity,
            total_amount=price * quantity,
            status=BookingStatus.PENDING,
            booking_reference=generate_booking_reference(),
            created_at=now,
            updated_at=now,
        )
        db.add(booking)
        await db.flush()
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    finally:
        reserve_latency.observe(time.perf_counter() - started)

    logger.info(
        "inventory_reserved",
        event_id=event_id,
        booking_id=booking.id,
        quantity=quantity,
    )
    return Reservation(
        booking=booking,
        hold_expires_at=hold_deadline(booking.created_at, settings.BOOKING_HOLD_SECONDS),
    )


async def _rejection_for(db: AsyncSession, event_id: int, quantity: int, now: datetime) -> Exception:
    """Re-read the event to explain why the conditional decrement matched nothing."""
    event = (
        await db.execute(select(Event).where(Event.id == event_id).execution_options(populate_existing=True))
    ).scalar_one_or_none()

    if event is None:
        return NotFoundError(f"Event {event_id} not found")
    if event.status != EventStatus.ACTIVE:
        return EventNotBookable("Event is not available for booking")
    if as_utc(event.start_date) <= now:
        return EventNotBookable("Cannot book tickets for past events")

    logger.warning(
        "reserve_rejected_no_availability",
        event_id=event_id,
        requested=quantity,
        available=event.available,
    )
    return InsufficientAvailability(requested=quantity, available=event.available)


async def restore(db: AsyncSession, event_id: int, quantity: int) -> None:
    """
    Give `quantity` tickets back to the event. Does not commit: it must
    ride in the same transaction as the status change that licenses it.
    """
    result = await db.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(available=Event.available + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Event {event_id} not found")


async def compare_and_set_status(
    db: AsyncSession,
    booking_id: int,
    expected: BookingStatus,
    to_status: BookingStatus,
    **values,
) -> bool:
    """
    Move a booking from `expected` to `to_status` iff it is still in
    `expected`. Returns False when another transaction got there first.
    Does not commit.
    """
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == expected)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def load_booking(db: AsyncSession, booking_id: int) -> Booking:
    """Fresh read of a booking, bypassing whatever the session has cached."""
    booking = (
        await db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    return booking


async def load_booking_by_reference(db: AsyncSession, reference: str, with_event: bool = False) -> Booking:
    query = select(Booking).where(Booking.booking_reference == reference)
    if with_event:
        query = query.options(selectinload(Booking.event))
    booking = (await db.execute(query.execution_options(populate_existing=True))).scalar_one_or_none()
    if booking is None:
        raise NotFoundError("Booking not found")
    return booking


async def set_ticket_artifact(db: AsyncSession, booking_id: int, artifact: Optional[str]) -> None:
    """Attach (or clear) a rendered ticket. Does not commit."""
    await db.execute(
        update(Booking)
        .where(Booking.id == booking_id)
        .values(ticket_artifact=artifact, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
