"""
Payment reconciliation coordinator.

Two independent channels report the outcome of one payment:

  verify   the buyer's client asks us to check reference R with the provider
  webhook  the provider pushes a signed event whenever R resolves

They are not ordered and may both fire. Both go through apply_outcome(),
which makes the payment's own status the idempotency guard:

    UPDATE payments SET status = :terminal
    WHERE id = :id AND status = 'PENDING'

Only the signal that wins this compare-and-set moves the booking; every
later signal finds a terminal payment and returns the recorded result.
No retries happen here: the provider's webhook retries and the buyer's
repeated verify calls are safe because of the guard.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from eventpass.core.clock import hold_lapsed, utcnow
from eventpass.core.config import get_settings
from eventpass.core.errors import (
    AlreadyConfirmed,
    AlreadyTerminal,
    ForbiddenError,
    HoldExpired,
    NotFoundError,
    PaidAfterExpiry,
    SignatureError,
    ValidationError,
)
from eventpass.core.logging import get_logger
from eventpass.core.metrics import paid_after_expiry, record_payment_signal, webhook_rejections
from eventpass.core.references import generate_payment_reference
from eventpass.domain.state_machine import BookingStatus, PaymentStatus
from eventpass.infrastructure.payment_providers import (
    InitializeRequest,
    OutcomeStatus,
    PaymentProvider,
    ProviderOutcome,
    get_payment_provider,
)
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.models.booking import Booking
from eventpass.models.payment import Payment
from eventpass.services import ledger
from eventpass.services.booking_service import cancel_booking, cancel_expired_booking, confirm_booking, fail_booking
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import NotificationEvent, Notifier, notify

logger = get_logger(__name__)
settings = get_settings()

TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED, PaymentStatus.REFUNDED})


@dataclass
class PaymentInitialization:
    payment: Payment
    authorization_url: Optional[str]
    reference: str


@dataclass
class PaymentResolution:
    payment: Payment
    booking: Optional[Booking]
    status: str  # success, failed, pending
    duplicate: bool = False


@dataclass
class WebhookAck:
    status: str  # processed, duplicate, ignored, paid_after_expiry
    reference: Optional[str] = None


def _resolution_status(payment: Payment) -> str:
    if payment.status in (PaymentStatus.SUCCESSFUL, PaymentStatus.REFUNDED):
        return OutcomeStatus.SUCCESS
    if payment.status == PaymentStatus.FAILED:
        return OutcomeStatus.FAILED
    return OutcomeStatus.PENDING


async def _find_payment(db: AsyncSession, reference: str) -> Optional[Payment]:
    return (
        await db.execute(
            select(Payment)
            .where(Payment.payment_reference == reference)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _load_payment(db: AsyncSession, reference: str) -> Payment:
    payment = await _find_payment(db, reference)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def _payment_for_booking(db: AsyncSession, booking_id: int) -> Optional[Payment]:
    return (
        await db.execute(
            select(Payment).where(Payment.booking_id == booking_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


async def initialize_payment(
    db: AsyncSession,
    holds: HoldManager,
    booking_id: int,
    actor_id: Optional[str] = None,
    provider_name: Optional[str] = None,
    callback_url: Optional[str] = None,
    customer_email: Optional[str] = None,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> PaymentInitialization:
    """
    Open (or resume) the single payment attempt of a PENDING booking.

    A repeated call returns the existing PENDING attempt; if the first
    provider call never produced an authorization URL it is retried with
    the same reference.
    """
    booking = (
        await db.execute(
            select(Booking)
            .options(selectinload(Booking.event))
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    if actor_id is not None and booking.user_id != actor_id:
        raise ForbiddenError("Unauthorized to pay for this booking")
    if booking.status == BookingStatus.CONFIRMED:
        raise AlreadyConfirmed(f"Booking {booking.id} is already confirmed")
    if booking.status != BookingStatus.PENDING:
        raise AlreadyTerminal(booking.id, booking.status.value)

    if hold_lapsed(booking.created_at, settings.BOOKING_HOLD_SECONDS, now):
        try:
            await cancel_expired_booking(db, holds, booking.id, now=now)
        except AlreadyTerminal:
            pass
        raise HoldExpired(booking.id)

    payment = await _payment_for_booking(db, booking.id)
    if payment is not None:
        if payment.status != PaymentStatus.PENDING:
            raise ValidationError(f"Payment {payment.payment_reference} is already {payment.status.value}")
        if payment.authorization_url:
            logger.info("payment_initialize_reused", booking_id=booking.id, payment_reference=payment.payment_reference)
            return PaymentInitialization(payment, payment.authorization_url, payment.payment_reference)
    else:
        payment = await _create_payment(db, booking, provider.name if provider else provider_name)

    provider = provider or get_payment_provider(payment.provider)
    result = await provider.initialize(
        InitializeRequest(
            amount=payment.amount,
            currency=payment.currency,
            reference=payment.payment_reference,
            callback_url=callback_url or f"{settings.FRONTEND_URL}/payment/callback",
            customer_email=customer_email,
            metadata={
                "booking_id": booking.id,
                "booking_reference": booking.booking_reference,
                "event_title": booking.event.title,
                "quantity": booking.quantity,
            },
        )
    )

    try:
        await db.execute(
            update(Payment)
            .where(Payment.id == payment.id)
            .values(authorization_url=result.authorization_url, provider_reference=result.provider_reference)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    payment = await _load_payment(db, payment.payment_reference)
    logger.info(
        "payment_initialized",
        booking_id=booking.id,
        payment_reference=payment.payment_reference,
        provider=payment.provider,
        amount=str(payment.amount),
    )
    return PaymentInitialization(payment, payment.authorization_url, payment.payment_reference)


async def _create_payment(db: AsyncSession, booking: Booking, provider_name: Optional[str]) -> Payment:
    name = (provider_name or settings.DEFAULT_PAYMENT_PROVIDER).lower()
    get_payment_provider(name)  # rejects unknown names before anything is written

    payment = Payment(
        booking_id=booking.id,
        amount=booking.total_amount,
        currency=settings.CURRENCY,
        provider=name,
        status=PaymentStatus.PENDING,
        payment_reference=generate_payment_reference(),
    )
    try:
        db.add(payment)
        await db.flush()
        await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.PENDING)
            .values(payment_reference=payment.payment_reference)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        # Concurrent initialize for the same booking; use the winner's row
        await db.rollback()
        existing = await _payment_for_booking(db, booking.id)
        if existing is None:
            raise
        return existing
    except Exception:
        await db.rollback()
        raise
    return payment


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def handle_payment_verify(
    db: AsyncSession,
    holds: HoldManager,
    reference: str,
    provider: Optional[PaymentProvider] = None,
    renderer: Optional[TicketRenderer] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> PaymentResolution:
    """
    Buyer-triggered check. A provider timeout raises UpstreamPaymentError
    and leaves both payment and booking PENDING for a later retry.
    """
    payment = await _load_payment(db, reference)
    if payment.status in TERMINAL_PAYMENT_STATUSES:
        record_payment_signal("verify", "duplicate")
        booking = await ledger.load_booking(db, payment.booking_id)
        return PaymentResolution(payment, booking, _resolution_status(payment), duplicate=True)

    provider = provider or get_payment_provider(payment.provider)
    outcome = await provider.verify(reference)

    if not outcome.is_terminal:
        record_payment_signal("verify", "pending")
        booking = await ledger.load_booking(db, payment.booking_id)
        return PaymentResolution(payment, booking, OutcomeStatus.PENDING)

    return await apply_outcome(db, holds, outcome, "verify", renderer=renderer, notifier=notifier, now=now)


async def handle_payment_webhook(
    db: AsyncSession,
    holds: HoldManager,
    provider_name: str,
    headers: Mapping[str, str],
    raw_payload: bytes,
    provider: Optional[PaymentProvider] = None,
    renderer: Optional[TicketRenderer] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> WebhookAck:
    """
    Provider-pushed signal. The signature is checked before anything is
    read or written; everything after that is acknowledged so the
    provider stops retrying, including references we do not know.
    """
    provider = provider or get_payment_provider(provider_name)
    try:
        provider.authenticate_webhook(raw_payload, provider.signature_from_headers(headers))
    except SignatureError as e:
        webhook_rejections.labels(provider=provider.name).inc()
        logger.warning("webhook_rejected", provider=provider.name, reason=e.message)
        raise

    try:
        outcome = provider.parse_webhook(raw_payload)
    except (ValueError, AttributeError) as e:
        raise ValidationError("Malformed webhook payload") from e

    if outcome is None or not outcome.is_terminal:
        record_payment_signal("webhook", "ignored")
        logger.info("webhook_ignored", provider=provider.name, reference=outcome.reference if outcome else None)
        return WebhookAck("ignored", outcome.reference if outcome else None)

    if await _find_payment(db, outcome.reference) is None:
        record_payment_signal("webhook", "ignored")
        logger.warning("webhook_unknown_reference", provider=provider.name, reference=outcome.reference)
        return WebhookAck("ignored", outcome.reference)

    try:
        resolution = await apply_outcome(db, holds, outcome, "webhook", renderer=renderer, notifier=notifier, now=now)
    except PaidAfterExpiry:
        return WebhookAck("paid_after_expiry", outcome.reference)

    return WebhookAck("duplicate" if resolution.duplicate else "processed", outcome.reference)


async def apply_outcome(
    db: AsyncSession,
    holds: HoldManager,
    outcome: ProviderOutcome,
    channel: str,
    renderer: Optional[TicketRenderer] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> PaymentResolution:
    """Apply one terminal provider outcome exactly once per payment."""
    payment = await _load_payment(db, outcome.reference)

    if payment.status != PaymentStatus.PENDING:
        return await _duplicate(db, payment, outcome, channel)

    if outcome.amount is not None and outcome.amount != payment.amount:
        logger.warning(
            "payment_amount_mismatch",
            payment_reference=payment.payment_reference,
            expected=str(payment.amount),
            reported=str(outcome.amount),
        )

    succeeded = outcome.status == OutcomeStatus.SUCCESS
    values = {
        "status": PaymentStatus.SUCCESSFUL if succeeded else PaymentStatus.FAILED,
        "provider_reference": outcome.provider_reference or payment.provider_reference,
        "updated_at": utcnow(),
    }
    if succeeded:
        values["paid_at"] = outcome.paid_at or now or utcnow()

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # The other channel got there first
        await db.rollback()
        return await _duplicate(db, await _load_payment(db, outcome.reference), outcome, channel)

    # The payment update rides in the booking transition's transaction
    if succeeded:
        try:
            booking = await confirm_booking(
                db,
                holds,
                payment.booking_id,
                payment.payment_reference,
                renderer=renderer,
                notifier=notifier,
                now=now,
            )
        except (HoldExpired, AlreadyTerminal, AlreadyConfirmed) as e:
            await _flag_for_refund(db, payment, e, channel, notifier)
            raise PaidAfterExpiry(payment.payment_reference, payment.booking_id) from e
    else:
        try:
            booking = await fail_booking(db, holds, payment.booking_id, reason="payment failed", notifier=notifier)
        except AlreadyTerminal:
            await db.commit()
            booking = await ledger.load_booking(db, payment.booking_id)

    payment = await _load_payment(db, outcome.reference)
    record_payment_signal(channel, outcome.status)
    logger.info(
        "payment_signal_applied",
        channel=channel,
        provider=outcome.provider,
        payment_reference=payment.payment_reference,
        payment_status=payment.status.value,
        booking_id=booking.id,
        booking_status=booking.status.value,
    )
    if succeeded:
        await notify(
            notifier,
            NotificationEvent(
                kind="payment_confirmed",
                user_id=booking.user_id,
                booking_id=booking.id,
                booking_reference=booking.booking_reference,
                data={"payment_reference": payment.payment_reference, "amount": str(payment.amount)},
            ),
        )
    return PaymentResolution(payment, booking, outcome.status)


async def _duplicate(db: AsyncSession, payment: Payment, outcome: ProviderOutcome, channel: str) -> PaymentResolution:
    record_payment_signal(channel, "duplicate")
    logger.info(
        "payment_signal_duplicate",
        channel=channel,
        payment_reference=payment.payment_reference,
        recorded_status=payment.status.value,
        reported_status=outcome.status,
    )
    booking = await ledger.load_booking(db, payment.booking_id)
    return PaymentResolution(payment, booking, _resolution_status(payment), duplicate=True)


async def _flag_for_refund(
    db: AsyncSession,
    payment: Payment,
    cause: Exception,
    channel: str,
    notifier: Optional[Notifier],
) -> None:
    """Money was taken for a booking that can no longer be confirmed."""
    await _mark_for_refund(db, payment)

    paid_after_expiry.inc()
    record_payment_signal(channel, "paid_after_expiry")
    booking = await ledger.load_booking(db, payment.booking_id)
    logger.error(
        "paid_after_expiry",
        channel=channel,
        payment_reference=payment.payment_reference,
        booking_id=booking.id,
        booking_status=booking.status.value,
        amount=str(payment.amount),
        cause=type(cause).__name__,
    )
    await notify(
        notifier,
        NotificationEvent(
            kind="refund_required",
            user_id=booking.user_id,
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            data={"payment_reference": payment.payment_reference, "amount": str(payment.amount)},
        ),
    )


# ---------------------------------------------------------------------------
# Refunds and reads
# ---------------------------------------------------------------------------


async def refund_payment(
    db: AsyncSession,
    holds: HoldManager,
    reference: str,
    reason: str = "Booking cancelled",
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
) -> Payment:
    """
    Refund a SUCCESSFUL payment with its provider and mark it REFUNDED.

    Money only goes back for a booking that no longer holds tickets. A
    still-CONFIRMED booking is cancelled first and its payment flagged,
    so a provider failure leaves the payment in the refund queue rather
    than a refunded booking still admitting at the gate.
    """
    payment = await _load_payment(db, reference)
    if payment.status != PaymentStatus.SUCCESSFUL:
        raise ValidationError("Cannot refund unsuccessful payment")

    booking = await ledger.load_booking(db, payment.booking_id)
    if booking.status == BookingStatus.COMPLETED:
        raise AlreadyTerminal(booking.id, booking.status.value)

    if not payment.requires_manual_refund and booking.status != BookingStatus.CANCELLED:
        booking = await cancel_booking(db, holds, booking.id, reason=f"Refunded: {reason}"[:255], notifier=notifier)
        await _mark_for_refund(db, payment)
        logger.info("booking_cancelled_for_refund", booking_id=booking.id, payment_reference=reference)

    provider = provider or get_payment_provider(payment.provider)
    await provider.refund(payment.payment_reference, payment.amount, reason)

    try:
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.SUCCESSFUL)
            .values(status=PaymentStatus.REFUNDED, requires_manual_refund=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.rowcount != 1:
        logger.warning("payment_refund_raced", payment_reference=reference)
    else:
        logger.info("payment_refunded", payment_reference=reference, amount=str(payment.amount), reason=reason)
    return await _load_payment(db, reference)


async def _mark_for_refund(db: AsyncSession, payment: Payment) -> None:
    try:
        await db.execute(
            update(Payment)
            .where(Payment.id == payment.id)
            .values(requires_manual_refund=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def list_payments_requiring_refund(db: AsyncSession) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.requires_manual_refund.is_(True), Payment.status == PaymentStatus.SUCCESSFUL)
        .order_by(Payment.paid_at.asc(), Payment.id.asc())
    )
    return list(result.scalars().all())


async def get_payment_by_reference(db: AsyncSession, reference: str, actor_id: Optional[str] = None) -> Payment:
    payment = (
        await db.execute(
            select(Payment)
            .options(selectinload(Payment.booking))
            .where(Payment.payment_reference == reference)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    if actor_id is not None and payment.booking.user_id != actor_id:
        raise ForbiddenError("Unauthorized to view this payment")
    return payment


async def list_user_payments(
    db: AsyncSession,
    user_id: str,
    status: Optional[PaymentStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Payment], int]:
    """The caller's own payments, newest first."""
    query = select(Payment).join(Booking, Payment.booking_id == Booking.id).where(Booking.user_id == user_id)
    if status is not None:
        query = query.where(Payment.status == status)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar()
    result = await db.execute(
        query.options(selectinload(Payment.booking))
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


@dataclass
class PaymentBucket:
    count: int = 0
    amount: Decimal = Decimal("0")


async def payment_statistics(db: AsyncSession, user_id: Optional[str] = None) -> Dict[str, object]:
    """Count and amount per payment status, optionally for one buyer."""
    query = select(
        Payment.status,
        func.count(Payment.id),
        func.coalesce(func.sum(Payment.amount), 0),
    ).group_by(Payment.status)
    if user_id is not None:
        query = query.join(Booking, Payment.booking_id == Booking.id).where(Booking.user_id == user_id)

    by_status: Dict[str, PaymentBucket] = {}
    for status, count, amount in (await db.execute(query)).all():
        key = status.value if isinstance(status, PaymentStatus) else str(status)
        by_status[key.lower()] = PaymentBucket(count=count, amount=Decimal(str(amount)))

    return {
        "total_payments": sum(b.count for b in by_status.values()),
        "total_amount": sum((b.amount for b in by_status.values()), Decimal("0")),
        "by_status": by_status,
    }
