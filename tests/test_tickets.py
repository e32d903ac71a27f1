"""
Tests for ticket issuance and gate-side verification.
"""

import asyncio
from datetime import timedelta

import pytest

from eventpass.core.clock import as_utc
from eventpass.core.errors import AlreadyTerminal, NotFoundError, ValidationError
from eventpass.domain.state_machine import BookingStatus
from eventpass.infrastructure.ticket_renderer import SignedTicketRenderer
from eventpass.models.booking import Booking
from eventpass.services import booking_service, ticket_service
from eventpass.services.ticket_service import TicketStatus

from helpers import TICKET_SECRET, load


async def _confirmed(session_factory, holds, event, renderer, quantity=1):
    async with session_factory() as db:
        booking = (await booking_service.start_booking(db, holds, event.id, quantity, "user-a")).booking
    async with session_factory() as db:
        return await booking_service.confirm_booking(db, holds, booking.id, "PAYTEST" + str(booking.id), renderer=renderer)


@pytest.fixture
def during(test_event):
    return as_utc(test_event.start_date) + timedelta(hours=1)


@pytest.mark.asyncio
async def test_artifact_round_trip(renderer):
    artifact = await renderer.render("BK1A2B3C4D")
    assert artifact.startswith("EPT1.")
    assert renderer.parse(artifact) == "BK1A2B3C4D"


@pytest.mark.asyncio
async def test_forged_artifact_rejected(renderer):
    artifact = await SignedTicketRenderer("another-secret").render("BK1A2B3C4D")
    with pytest.raises(ValidationError):
        renderer.parse(artifact)


@pytest.mark.parametrize("artifact", ["", "EPT1", "EPT1.!!.??", "EPT2.QksxMjM.AAAA", "a.b.c.d"])
def test_malformed_artifact_rejected(renderer, artifact):
    with pytest.raises(ValidationError):
        renderer.parse(artifact)


@pytest.mark.asyncio
async def test_valid_scan_completes_booking(session_factory, holds, test_event, renderer, during):
    booking = await _confirmed(session_factory, holds, test_event, renderer)

    async with session_factory() as db:
        result = await ticket_service.verify_ticket(db, booking.booking_reference, now=during)

    assert result.valid
    assert result.status == TicketStatus.VALID
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.COMPLETED

    async with session_factory() as db:
        again = await ticket_service.verify_ticket(db, booking.booking_reference, now=during)
    assert not again.valid
    assert again.status == TicketStatus.USED


@pytest.mark.asyncio
async def test_scan_before_start_and_after_end(session_factory, holds, test_event, renderer):
    booking = await _confirmed(session_factory, holds, test_event, renderer)

    async with session_factory() as db:
        early = await ticket_service.verify_ticket(
            db, booking.booking_reference, now=as_utc(test_event.start_date) - timedelta(minutes=1)
        )
        late = await ticket_service.verify_ticket(
            db, booking.booking_reference, now=as_utc(test_event.end_date) + timedelta(minutes=1)
        )

    assert early.status == TicketStatus.EARLY
    assert late.status == TicketStatus.EXPIRED
    assert early.valid
    assert early.message == "Ticket is valid but event has not started yet"
    assert not late.valid
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_pending_and_cancelled_are_invalid(session_factory, holds, test_event, during):
    async with session_factory() as db:
        pending = (await booking_service.start_booking(db, holds, test_event.id, 1, "user-a")).booking
        cancelled = (await booking_service.start_booking(db, holds, test_event.id, 1, "user-a")).booking
    async with session_factory() as db:
        await booking_service.cancel_booking(db, holds, cancelled.id)

    async with session_factory() as db:
        for booking in (pending, cancelled):
            result = await ticket_service.verify_ticket(db, booking.booking_reference, now=during)
            assert result.status == TicketStatus.INVALID

        with pytest.raises(NotFoundError):
            await ticket_service.verify_ticket(db, "BKNOSUCHREF", now=during)


@pytest.mark.asyncio
async def test_simultaneous_scans_admit_once(session_factory, holds, test_event, renderer, during):
    booking = await _confirmed(session_factory, holds, test_event, renderer)

    async def scan():
        async with session_factory() as db:
            return await ticket_service.verify_ticket(db, booking.booking_reference, now=during)

    results = await asyncio.gather(scan(), scan(), scan())
    assert sorted(r.status for r in results) == [TicketStatus.USED, TicketStatus.USED, TicketStatus.VALID]


@pytest.mark.asyncio
async def test_scan_artifact(session_factory, holds, test_event, renderer, during):
    booking = await _confirmed(session_factory, holds, test_event, renderer)

    async with session_factory() as db:
        result = await ticket_service.verify_ticket_artifact(db, booking.ticket_artifact, renderer, now=during)
    assert result.valid
    assert result.booking.booking_reference == booking.booking_reference


@pytest.mark.asyncio
async def test_reissue_restores_missing_artifact(session_factory, holds, test_event, renderer):
    booking = await _confirmed(session_factory, holds, test_event, renderer)
    async with session_factory() as db:
        await booking_service.ledger.set_ticket_artifact(db, booking.id, None)
        await db.commit()

    async with session_factory() as db:
        reissued = await ticket_service.reissue_ticket(db, booking.booking_reference, renderer)

    assert reissued.ticket_artifact == booking.ticket_artifact
    assert renderer.parse(reissued.ticket_artifact) == booking.booking_reference


@pytest.mark.asyncio
async def test_reissue_refuses_cancelled_booking(session_factory, holds, test_event, renderer):
    async with session_factory() as db:
        booking = (await booking_service.start_booking(db, holds, test_event.id, 1, "user-a")).booking
    async with session_factory() as db:
        await booking_service.cancel_booking(db, holds, booking.id)
    async with session_factory() as db:
        with pytest.raises(AlreadyTerminal):
            await ticket_service.reissue_ticket(db, booking.booking_reference, renderer)


@pytest.mark.asyncio
async def test_scan_endpoint_rejects_forged_artifact(client):
    forged = await SignedTicketRenderer("not-" + TICKET_SECRET).render("BK1A2B3C4D")
    response = await client.post("/api/v1/tickets/scan", json={"artifact": forged})
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_ticket_endpoints(client, session_factory, holds, test_event, renderer, user_headers):
    booking = await _confirmed(session_factory, holds, test_event, renderer, quantity=2)

    ticket = await client.get(f"/api/v1/bookings/{booking.id}/ticket", headers=user_headers)
    assert ticket.status_code == 200
    assert ticket.json()["ticket_artifact"] == booking.ticket_artifact

    # The event has not started yet
    scan = await client.post("/api/v1/tickets/scan", json={"artifact": booking.ticket_artifact})
    assert scan.status_code == 200
    assert scan.json()["status"] == "EARLY"
    assert scan.json()["valid"] is True
    assert scan.json()["quantity"] == 2

    lookup = await client.get(f"/api/v1/tickets/verify/{booking.booking_reference}")
    assert lookup.json()["status"] == "EARLY"
