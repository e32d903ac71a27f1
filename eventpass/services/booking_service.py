"""
Booking state machine service.

Every operation takes its store handles explicitly (AsyncSession for the
relational store, HoldManager for the accelerator) and owns its
transaction: it commits what it changed before returning or raising a
domain error, so compensating work (e.g. the cancel behind HoldExpired)
is never lost to a request-level rollback.

Operations:
  start_booking   reserve inventory + PENDING booking, arm the hold
  confirm_booking PENDING -> CONFIRMED (+ ticket), or compensate if the hold lapsed
  cancel_booking  PENDING|CONFIRMED -> CANCELLED, restoring inventory exactly once
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.core.clock import hold_deadline, hold_lapsed
from eventpass.core.config import get_settings
from eventpass.core.errors import (
    AlreadyConfirmed,
    AlreadyTerminal,
    EventNotBookable,
    ForbiddenError,
    HoldExpired,
    InsufficientAvailability,
    NotFoundError,
    ValidationError,
)
from eventpass.core.logging import get_logger
from eventpass.core.metrics import record_booking_attempt, record_transition
from eventpass.domain.state_machine import BookingStateMachine, BookingStatus
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.models.booking import Booking
from eventpass.services import ledger
from eventpass.services.hold_service import HoldManager
from eventpass.services.ledger import Reservation
from eventpass.services.notification_service import NotificationEvent, Notifier, notify
from eventpass.services.ticket_service import issue_ticket

logger = get_logger(__name__)
settings = get_settings()

# PENDING -> CONFIRMED -> CANCELLED is the longest chain a cancel can race against
MAX_TRANSITION_ATTEMPTS = 3


def hold_expires_at(booking: Booking) -> datetime:
    return hold_deadline(booking.created_at, settings.BOOKING_HOLD_SECONDS)


async def start_booking(
    db: AsyncSession,
    holds: HoldManager,
    event_id: int,
    quantity: int,
    user_id: str,
    now: Optional[datetime] = None,
) -> Reservation:
    """Reserve tickets and open a hold window for payment."""
    if not user_id:
        raise ValidationError("user_id is required")
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    if quantity > settings.MAX_TICKETS_PER_BOOKING:
        raise ValidationError(f"At most {settings.MAX_TICKETS_PER_BOOKING} tickets per booking")

    try:
        reservation = await ledger.reserve(db, event_id, quantity, user_id, now=now)
    except InsufficientAvailability:
        record_booking_attempt("insufficient")
        raise
    except (EventNotBookable, NotFoundError):
        record_booking_attempt("not_bookable")
        raise
    except Exception:
        record_booking_attempt("error")
        raise

    booking = reservation.booking
    record_booking_attempt("reserved")
    await holds.arm(booking.id, settings.BOOKING_HOLD_SECONDS)

    logger.info(
        "booking_reserved",
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        user_id=user_id,
        event_id=event_id,
        quantity=quantity,
        hold_expires_at=reservation.hold_expires_at.isoformat(),
    )
    return reservation


async def confirm_booking(
    db: AsyncSession,
    holds: HoldManager,
    booking_id: int,
    payment_reference: str,
    renderer: Optional[TicketRenderer] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    PENDING -> CONFIRMED for a paid booking.

    The hold is judged by created_at + hold duration, not by the Redis
    marker. A lapsed hold is cancelled (inventory restored) and reported
    as HoldExpired. Repeating the call with the same payment reference
    returns the confirmed booking unchanged.
    """
    if not payment_reference:
        raise ValidationError("payment_reference is required")

    booking = await ledger.load_booking(db, booking_id)

    if booking.status != BookingStatus.PENDING:
        return _already_past_pending(booking, payment_reference)

    if hold_lapsed(booking.created_at, settings.BOOKING_HOLD_SECONDS, now):
        logger.warning(
            "hold_expired_on_confirm",
            booking_id=booking.id,
            payment_reference=payment_reference,
            hold_expired_at=hold_expires_at(booking).isoformat(),
        )
        try:
            await _cancel(db, holds, booking, reason="hold expired", require=BookingStatus.PENDING, notifier=notifier)
        except AlreadyTerminal:
            # Lost the race to someone else's transition; report what they did
            current = await ledger.load_booking(db, booking_id)
            if current.status != BookingStatus.CANCELLED:
                return _already_past_pending(current, payment_reference)
        raise HoldExpired(booking.id)

    marker = await holds.is_held(booking.id)
    if marker is False:
        logger.info("hold_marker_missing", booking_id=booking.id)

    won = await ledger.compare_and_set_status(
        db,
        booking.id,
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        payment_reference=payment_reference,
    )
    if not won:
        return _already_past_pending(await ledger.load_booking(db, booking_id), payment_reference)

    ticket = await issue_ticket(booking.booking_reference, renderer)
    if ticket.ok:
        await ledger.set_ticket_artifact(db, booking.id, ticket.value)

    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    record_transition(BookingStatus.CONFIRMED.value)
    await holds.release(booking.id)
    booking = await ledger.load_booking(db, booking_id)

    logger.info(
        "booking_confirmed",
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        payment_reference=payment_reference,
        ticket_issued=ticket.ok,
    )
    await notify(
        notifier,
        NotificationEvent(
            kind="booking_confirmed",
            user_id=booking.user_id,
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            data={"quantity": booking.quantity, "total_amount": str(booking.total_amount)},
        ),
    )
    return booking


def _already_past_pending(booking: Booking, payment_reference: str) -> Booking:
    """Resolve a confirm that found the booking no longer PENDING."""
    if booking.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
        if booking.payment_reference == payment_reference:
            logger.info("confirm_duplicate", booking_id=booking.id, payment_reference=payment_reference)
            return booking
        if booking.status == BookingStatus.CONFIRMED:
            raise AlreadyConfirmed(f"Booking {booking.id} is already confirmed by another payment")
    raise AlreadyTerminal(booking.id, booking.status.value)


async def cancel_booking(
    db: AsyncSession,
    holds: HoldManager,
    booking_id: int,
    actor_id: Optional[str] = None,
    reason: str = "Cancelled by user",
    notifier: Optional[Notifier] = None,
) -> Booking:
    """
    Cancel a booking and give its tickets back to the event.

    actor_id None means a system actor (sweeper, payment failure); any
    other actor may only cancel their own booking.
    """
    booking = await ledger.load_booking(db, booking_id)
    if actor_id is not None and booking.user_id != actor_id:
        raise ForbiddenError("Unauthorized to cancel this booking")
    return await _cancel(db, holds, booking, reason=reason, notifier=notifier)


async def fail_booking(
    db: AsyncSession,
    holds: HoldManager,
    booking_id: int,
    reason: str = "payment failed",
    notifier: Optional[Notifier] = None,
) -> Booking:
    """Payment-failure path: only a booking still waiting for payment is cancelled."""
    booking = await ledger.load_booking(db, booking_id)
    return await _cancel(db, holds, booking, reason=reason, require=BookingStatus.PENDING, notifier=notifier)


async def cancel_expired_booking(
    db: AsyncSession,
    holds: HoldManager,
    booking_id: int,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> Booking:
    """Sweeper path: cancel only if the booking is still PENDING and its hold has lapsed."""
    booking = await ledger.load_booking(db, booking_id)
    if booking.status != BookingStatus.PENDING:
        raise AlreadyTerminal(booking.id, booking.status.value)
    if not hold_lapsed(booking.created_at, settings.BOOKING_HOLD_SECONDS, now):
        raise ValidationError(f"Booking {booking.id} hold has not lapsed yet")
    return await _cancel(db, holds, booking, reason="hold expired", require=BookingStatus.PENDING, notifier=notifier)


async def _cancel(
    db: AsyncSession,
    holds: HoldManager,
    booking: Booking,
    reason: str,
    require: Optional[BookingStatus] = None,
    notifier: Optional[Notifier] = None,
) -> Booking:
    """
    Compare-and-set the booking to CANCELLED and restore its quantity in
    the same transaction. A lost race re-reads and retries from the new
    state, so the restore is applied by exactly one winner.
    """
    for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
        observed = booking.status
        if require is not None and observed != require:
            raise AlreadyTerminal(booking.id, observed.value)
        BookingStateMachine.validate_transition(booking.id, observed, BookingStatus.CANCELLED)

        try:
            won = await ledger.compare_and_set_status(
                db,
                booking.id,
                observed,
                BookingStatus.CANCELLED,
                cancellation_reason=reason[:255],
            )
            if won:
                await ledger.restore(db, booking.event_id, booking.quantity)
                await db.commit()
                break
        except Exception:
            await db.rollback()
            raise

        logger.info("cancel_retry", booking_id=booking.id, attempt=attempt, observed=observed.value)
        booking = await ledger.load_booking(db, booking.id)
    else:
        raise AlreadyTerminal(booking.id, booking.status.value)

    record_transition(BookingStatus.CANCELLED.value)
    await holds.release(booking.id)
    booking = await ledger.load_booking(db, booking.id)

    logger.info(
        "booking_cancelled",
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        event_id=booking.event_id,
        previous_status=observed.value,
        quantity_restored=booking.quantity,
        reason=reason,
    )
    await notify(
        notifier,
        NotificationEvent(
            kind="booking_cancelled",
            user_id=booking.user_id,
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            data={"reason": reason},
        ),
    )
    return booking


async def get_booking(db: AsyncSession, booking_id: int, actor_id: Optional[str] = None) -> Booking:
    booking = await ledger.load_booking(db, booking_id)
    if actor_id is not None and booking.user_id != actor_id:
        raise ForbiddenError("Unauthorized to view this booking")
    return booking


async def get_booking_by_reference(
    db: AsyncSession, booking_reference: str, actor_id: Optional[str] = None
) -> Booking:
    booking = await ledger.load_booking_by_reference(db, booking_reference)
    if actor_id is not None and booking.user_id != actor_id:
        raise ForbiddenError("Unauthorized to access this booking")
    return booking


async def list_user_bookings(
    db: AsyncSession,
    user_id: str,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Booking], int]:
    query = select(Booking).where(Booking.user_id == user_id)
    if status is not None:
        query = query.where(Booking.status == status)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar()
    result = await db.execute(
        query.order_by(Booking.created_at.desc(), Booking.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


@dataclass
class StatusBucket:
    count: int = 0
    tickets: int = 0
    amount: Decimal = Decimal("0")


async def booking_statistics(db: AsyncSession, user_id: Optional[str] = None) -> Dict[str, object]:
    """Count, tickets and amount per booking status, optionally for one user."""
    query = select(
        Booking.status,
        func.count(Booking.id),
        func.coalesce(func.sum(Booking.quantity), 0),
        func.coalesce(func.sum(Booking.total_amount), 0),
    ).group_by(Booking.status)
    if user_id is not None:
        query = query.where(Booking.user_id == user_id)

    by_status: Dict[str, StatusBucket] = {}
    for status, count, tickets, amount in (await db.execute(query)).all():
        key = status.value if isinstance(status, BookingStatus) else str(status)
        by_status[key.lower()] = StatusBucket(count=count, tickets=int(tickets), amount=Decimal(str(amount)))

    return {
        "total_bookings": sum(b.count for b in by_status.values()),
        "total_tickets": sum(b.tickets for b in by_status.values()),
        "total_amount": sum((b.amount for b in by_status.values()), Decimal("0")),
        "by_status": by_status,
    }
