"""
Expiry sweeper: the durable backstop for lapsed holds.

Finds PENDING bookings whose created_at + hold duration is in the past
and cancels each one through the same compensating path as a failed
payment. Each booking gets its own session and transaction, so one
failure (typically a booking confirmed between the query and the
cancel) never aborts the rest of the sweep.

Two sweeps racing over the same rows are safe: the cancel is a
compare-and-set on PENDING, so exactly one of them restores inventory
and the other sees AlreadyTerminal.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.core.clock import utcnow
from eventpass.core.config import get_settings
from eventpass.core.errors import AlreadyTerminal, NotFoundError
from eventpass.core.logging import get_logger
from eventpass.core.metrics import record_swept, sweep_duration
from eventpass.domain.state_machine import BookingStatus
from eventpass.models.booking import Booking
from eventpass.services.booking_service import cancel_expired_booking
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import Notifier

logger = get_logger(__name__)
settings = get_settings()

SessionFactory = Callable[[], AsyncSession]


@dataclass
class SweepReport:
    scanned: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled_ids: List[int] = field(default_factory=list)


async def find_expired_booking_ids(db: AsyncSession, now: datetime, limit: Optional[int] = None) -> List[int]:
    cutoff = now - timedelta(seconds=settings.BOOKING_HOLD_SECONDS)
    query = (
        select(Booking.id)
        .where(Booking.status == BookingStatus.PENDING, Booking.created_at <= cutoff)
        .order_by(Booking.created_at.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return list((await db.execute(query)).scalars().all())


async def sweep_expired_bookings(
    session_factory: SessionFactory,
    holds: HoldManager,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> SweepReport:
    """Run one sweep. Never raises for a single booking's failure."""
    with structlog.contextvars.bound_contextvars(sweep_id=uuid.uuid4().hex[:12]):
        return await _sweep(session_factory, holds, now or utcnow(), notifier)


async def _sweep(
    session_factory: SessionFactory,
    holds: HoldManager,
    now: datetime,
    notifier: Optional[Notifier],
) -> SweepReport:
    started = time.perf_counter()
    report = SweepReport()

    async with session_factory() as db:
        booking_ids = await find_expired_booking_ids(db, now)
    report.scanned = len(booking_ids)
    logger.info("sweep_started", candidates=report.scanned, now=now.isoformat())

    for booking_id in booking_ids:
        async with session_factory() as db:
            try:
                await cancel_expired_booking(db, holds, booking_id, now=now, notifier=notifier)
            except (AlreadyTerminal, NotFoundError) as e:
                report.skipped += 1
                record_swept("skipped")
                logger.info("sweep_booking_skipped", booking_id=booking_id, reason=str(e))
            except Exception as e:
                report.failed += 1
                record_swept("failed")
                logger.error("sweep_booking_failed", booking_id=booking_id, error=str(e), exc_info=True)
            else:
                report.cancelled += 1
                report.cancelled_ids.append(booking_id)
                record_swept("cancelled")

    sweep_duration.observe(time.perf_counter() - started)
    logger.info(
        "sweep_completed",
        scanned=report.scanned,
        cancelled=report.cancelled,
        skipped=report.skipped,
        failed=report.failed,
    )
    return report


class ExpirySweeper:
    """Runs sweep_expired_bookings every `interval` seconds inside the API process."""

    def __init__(
        self,
        session_factory: SessionFactory,
        holds: HoldManager,
        interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.holds = holds
        self.interval = interval if interval is not None else settings.SWEEP_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="expiry-sweeper")
        logger.info("sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sweeper_stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await sweep_expired_bookings(self.session_factory, self.holds)
            except Exception as e:
                # Store outage: try again next tick
                logger.error("sweep_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
