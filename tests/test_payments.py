"""
Tests for payment initialization, buyer-side verification, refunds and reads.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from eventpass.core.clock import as_utc, utcnow
from eventpass.core.errors import AlreadyTerminal, HoldExpired, PaidAfterExpiry, UpstreamPaymentError, ValidationError
from eventpass.domain.state_machine import BookingStatus, PaymentStatus
from eventpass.models.booking import Booking
from eventpass.models.payment import Payment
from eventpass.services import booking_service, payment_service, ticket_service

from helpers import assert_inventory_invariant, event_available, load


async def _booking(session_factory, holds, event_id, quantity=2, now=None, user_id="user-a"):
    async with session_factory() as db:
        return (await booking_service.start_booking(db, holds, event_id, quantity, user_id, now=now)).booking


async def _initialize(session_factory, holds, booking_id, provider, user_id="user-a", now=None):
    async with session_factory() as db:
        return await payment_service.initialize_payment(
            db, holds, booking_id, actor_id=user_id, provider=provider, now=now
        )


async def _verify(session_factory, holds, reference, renderer=None, notifier=None, now=None):
    async with session_factory() as db:
        return await payment_service.handle_payment_verify(
            db, holds, reference, renderer=renderer, notifier=notifier, now=now
        )


async def _paid(session_factory, holds, event_id, paystack, paystack_api, quantity=2, user_id="user-a"):
    booking = await _booking(session_factory, holds, event_id, quantity=quantity, user_id=user_id)
    init = await _initialize(session_factory, holds, booking.id, paystack, user_id=user_id)
    paystack_api.statuses[init.reference] = "success"
    await _verify(session_factory, holds, init.reference)
    return booking, init.reference


@pytest.mark.asyncio
async def test_initialize_creates_single_pending_attempt(session_factory, holds, test_event, paystack):
    booking = await _booking(session_factory, holds, test_event.id)

    first = await _initialize(session_factory, holds, booking.id, paystack)
    again = await _initialize(session_factory, holds, booking.id, paystack)

    assert first.reference.startswith("PAY")
    assert first.authorization_url == f"https://checkout.paystack.test/{first.reference}"
    assert again.reference == first.reference
    assert first.payment.amount == Decimal("10000.00")
    assert first.payment.status == PaymentStatus.PENDING
    assert (await load(session_factory, Booking, id=booking.id)).payment_reference == first.reference


@pytest.mark.asyncio
async def test_initialize_after_hold_lapsed_cancels(session_factory, holds, test_event, paystack):
    booking = await _booking(session_factory, holds, test_event.id, now=utcnow() - timedelta(seconds=1000))

    with pytest.raises(HoldExpired):
        await _initialize(session_factory, holds, booking.id, paystack)

    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CANCELLED
    assert await event_available(session_factory, test_event.id) == 10


@pytest.mark.asyncio
async def test_initialize_provider_outage_is_retried_with_same_reference(
    session_factory, holds, test_event, paystack, paystack_api
):
    booking = await _booking(session_factory, holds, test_event.id)
    paystack_api.timeout = True
    with pytest.raises(UpstreamPaymentError):
        await _initialize(session_factory, holds, booking.id, paystack)

    pending = await load(session_factory, Payment, booking_id=booking.id)
    assert pending.authorization_url is None

    paystack_api.timeout = False
    result = await _initialize(session_factory, holds, booking.id, paystack)
    assert result.reference == pending.payment_reference
    assert result.authorization_url is not None


@pytest.mark.asyncio
async def test_initialize_api(client, test_event, user_headers):
    created = await client.post(
        "/api/v1/bookings/", json={"event_id": test_event.id, "quantity": 1}, headers=user_headers
    )
    booking_id = created.json()["booking"]["id"]

    response = await client.post(
        "/api/v1/payments/initialize",
        json={"booking_id": booking_id, "provider": "paystack"},
        headers=user_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["reference"].startswith("PAY")
    assert data["payment"]["status"] == "PENDING"
    assert data["payment"]["provider"] == "paystack"

    other = await client.post(
        "/api/v1/payments/initialize",
        json={"booking_id": booking_id, "provider": "paystack"},
        headers={"X-User-Id": "user-b"},
    )
    assert other.status_code == 403


@pytest.mark.asyncio
async def test_initialize_rejects_unknown_provider(client, test_event, user_headers):
    created = await client.post(
        "/api/v1/bookings/", json={"event_id": test_event.id, "quantity": 1}, headers=user_headers
    )
    response = await client.post(
        "/api/v1/payments/initialize",
        json={"booking_id": created.json()["booking"]["id"], "provider": "stripe"},
        headers=user_headers,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_successful_verify_confirms_and_issues_ticket(
    session_factory, holds, hold_store, test_event, paystack, paystack_api, renderer, notifier
):
    booking = await _booking(session_factory, holds, test_event.id, quantity=3)
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.statuses[init.reference] = "success"

    resolution = await _verify(session_factory, holds, init.reference, renderer, notifier)

    assert resolution.status == "success"
    assert not resolution.duplicate
    assert resolution.booking.status == BookingStatus.CONFIRMED
    assert resolution.booking.payment_reference == init.reference
    assert renderer.parse(resolution.booking.ticket_artifact) == booking.booking_reference
    assert resolution.payment.status == PaymentStatus.SUCCESSFUL
    assert resolution.payment.paid_at is not None
    assert "booking_hold:%d" % booking.id not in hold_store.keys
    assert notifier.kinds() == ["booking_confirmed", "payment_confirmed"]
    assert await event_available(session_factory, test_event.id) == 7
    await assert_inventory_invariant(session_factory, test_event.id)


@pytest.mark.asyncio
async def test_repeated_verify_is_a_duplicate_without_provider_call(
    session_factory, holds, test_event, paystack, paystack_api
):
    booking = await _booking(session_factory, holds, test_event.id)
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.statuses[init.reference] = "success"
    await _verify(session_factory, holds, init.reference)
    calls = len(paystack_api.calls)

    again = await _verify(session_factory, holds, init.reference)

    assert again.duplicate
    assert again.status == "success"
    assert again.booking.status == BookingStatus.CONFIRMED
    assert len(paystack_api.calls) == calls


@pytest.mark.asyncio
async def test_pending_outcome_changes_nothing(session_factory, holds, test_event, paystack):
    booking = await _booking(session_factory, holds, test_event.id)
    init = await _initialize(session_factory, holds, booking.id, paystack)

    resolution = await _verify(session_factory, holds, init.reference)

    assert resolution.status == "pending"
    assert (await load(session_factory, Payment, payment_reference=init.reference)).status == PaymentStatus.PENDING
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_provider_timeout_leaves_booking_pending(
    client, session_factory, holds, test_event, paystack, paystack_api
):
    booking = await _booking(session_factory, holds, test_event.id)
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.timeout = True

    response = await client.get(f"/api/v1/payments/verify/{init.reference}")

    assert response.status_code == 502
    assert response.json()["kind"] == "upstream_payment_error"
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.PENDING
    assert (await load(session_factory, Payment, payment_reference=init.reference)).status == PaymentStatus.PENDING
    assert await event_available(session_factory, test_event.id) == 8


@pytest.mark.asyncio
async def test_failed_payment_cancels_and_restores(session_factory, holds, test_event, paystack, paystack_api, notifier):
    booking = await _booking(session_factory, holds, test_event.id, quantity=4)
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.statuses[init.reference] = "failed"

    resolution = await _verify(session_factory, holds, init.reference, notifier=notifier)

    assert resolution.status == "failed"
    assert resolution.booking.status == BookingStatus.CANCELLED
    assert resolution.payment.status == PaymentStatus.FAILED
    assert notifier.kinds() == ["booking_cancelled"]
    assert await event_available(session_factory, test_event.id) == 10
    await assert_inventory_invariant(session_factory, test_event.id)


@pytest.mark.asyncio
async def test_paid_after_expiry_is_flagged_for_refund(
    session_factory, holds, test_event, paystack, paystack_api, notifier
):
    t0 = utcnow() - timedelta(seconds=600)
    booking = await _booking(session_factory, holds, test_event.id, quantity=2, now=t0)
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.statuses[init.reference] = "success"

    with pytest.raises(PaidAfterExpiry):
        await _verify(session_factory, holds, init.reference, notifier=notifier, now=t0 + timedelta(seconds=901))

    payment = await load(session_factory, Payment, payment_reference=init.reference)
    assert payment.status == PaymentStatus.SUCCESSFUL
    assert payment.requires_manual_refund
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CANCELLED
    assert "refund_required" in notifier.kinds()
    assert await event_available(session_factory, test_event.id) == 10

    async with session_factory() as db:
        flagged = await payment_service.list_payments_requiring_refund(db)
    assert [p.payment_reference for p in flagged] == [init.reference]


@pytest.mark.asyncio
async def test_paid_after_expiry_api(
    client, session_factory, holds, test_event, paystack, paystack_api, operator_headers
):
    booking = await _booking(session_factory, holds, test_event.id, now=utcnow() - timedelta(seconds=850))
    init = await _initialize(session_factory, holds, booking.id, paystack)
    paystack_api.statuses[init.reference] = "success"

    async with session_factory() as db:
        await booking_service.cancel_expired_booking(db, holds, booking.id, now=utcnow() + timedelta(seconds=60))

    response = await client.get(f"/api/v1/payments/verify/{init.reference}")
    assert response.status_code == 409
    assert response.json()["kind"] == "paid_after_expiry"

    pending = await client.get("/api/v1/payments/refunds/pending", headers=operator_headers)
    assert [p["payment_reference"] for p in pending.json()] == [init.reference]

    refunded = await client.post(
        f"/api/v1/payments/{init.reference}/refund", json={"reason": "Hold lapsed"}, headers=operator_headers
    )
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "REFUNDED"
    assert await event_available(session_factory, test_event.id) == 10

    after = await client.get("/api/v1/payments/refunds/pending", headers=operator_headers)
    assert after.json() == []


@pytest.mark.asyncio
async def test_refund_cancels_confirmed_booking_first(
    session_factory, holds, test_event, paystack, paystack_api, notifier
):
    booking, reference = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)
    assert await event_available(session_factory, test_event.id) == 8

    async with session_factory() as db:
        payment = await payment_service.refund_payment(
            db, holds, reference, reason="Event postponed", notifier=notifier
        )

    assert payment.status == PaymentStatus.REFUNDED
    assert not payment.requires_manual_refund
    assert "/refund" in paystack_api.calls
    refunded_booking = await load(session_factory, Booking, id=booking.id)
    assert refunded_booking.status == BookingStatus.CANCELLED
    assert refunded_booking.cancellation_reason == "Refunded: Event postponed"
    assert "booking_cancelled" in notifier.kinds()
    assert await event_available(session_factory, test_event.id) == 10
    await assert_inventory_invariant(session_factory, test_event.id)


@pytest.mark.asyncio
async def test_failed_provider_refund_leaves_payment_queued(session_factory, holds, test_event, paystack, paystack_api):
    booking, reference = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)
    paystack_api.timeout = True

    async with session_factory() as db:
        with pytest.raises(UpstreamPaymentError):
            await payment_service.refund_payment(db, holds, reference)

    payment = await load(session_factory, Payment, payment_reference=reference)
    assert payment.status == PaymentStatus.SUCCESSFUL
    assert payment.requires_manual_refund
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CANCELLED
    assert await event_available(session_factory, test_event.id) == 10

    paystack_api.timeout = False
    async with session_factory() as db:
        retried = await payment_service.refund_payment(db, holds, reference)
    assert retried.status == PaymentStatus.REFUNDED
    assert await event_available(session_factory, test_event.id) == 10


@pytest.mark.asyncio
async def test_refund_refused_after_admission(session_factory, holds, test_event, paystack, paystack_api):
    booking, reference = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)
    during = as_utc(test_event.start_date) + timedelta(hours=1)
    async with session_factory() as db:
        scan = await ticket_service.verify_ticket(db, booking.booking_reference, now=during)
    assert scan.status == "VALID"

    async with session_factory() as db:
        with pytest.raises(AlreadyTerminal):
            await payment_service.refund_payment(db, holds, reference)

    assert (await load(session_factory, Payment, payment_reference=reference)).status == PaymentStatus.SUCCESSFUL
    assert "/refund" not in paystack_api.calls


@pytest.mark.asyncio
async def test_refund_requires_successful_payment(session_factory, holds, test_event, paystack):
    booking = await _booking(session_factory, holds, test_event.id)
    init = await _initialize(session_factory, holds, booking.id, paystack)

    async with session_factory() as db:
        with pytest.raises(ValidationError):
            await payment_service.refund_payment(db, holds, init.reference)

    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_refund_routes_require_operator(
    client, session_factory, holds, test_event, paystack, paystack_api, user_headers
):
    booking, reference = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)

    refund = await client.post(f"/api/v1/payments/{reference}/refund", json={}, headers=user_headers)
    assert refund.status_code == 403
    assert refund.json()["kind"] == "forbidden"

    wrong_role = await client.post(
        f"/api/v1/payments/{reference}/refund",
        json={},
        headers={"X-User-Id": "user-b", "X-User-Role": "USER"},
    )
    assert wrong_role.status_code == 403

    queue = await client.get("/api/v1/payments/refunds/pending", headers=user_headers)
    assert queue.status_code == 403

    assert (await load(session_factory, Payment, payment_reference=reference)).status == PaymentStatus.SUCCESSFUL
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CONFIRMED
    assert "/refund" not in paystack_api.calls


@pytest.mark.asyncio
async def test_operator_refund_api(client, session_factory, holds, test_event, paystack, paystack_api, operator_headers):
    booking, reference = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)

    response = await client.post(
        f"/api/v1/payments/{reference}/refund", json={"reason": "Event postponed"}, headers=operator_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "REFUNDED"
    assert (await load(session_factory, Booking, id=booking.id)).status == BookingStatus.CANCELLED
    assert await event_available(session_factory, test_event.id) == 10


@pytest.mark.asyncio
async def test_get_payment_api(client, session_factory, holds, test_event, paystack, user_headers):
    booking = await _booking(session_factory, holds, test_event.id)
    init = await _initialize(session_factory, holds, booking.id, paystack)

    response = await client.get(f"/api/v1/payments/{init.reference}", headers=user_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["booking"]["booking_reference"] == booking.booking_reference
    assert data["status"] == "PENDING"

    forbidden = await client.get(f"/api/v1/payments/{init.reference}", headers={"X-User-Id": "user-b"})
    assert forbidden.status_code == 403

    missing = await client.get("/api/v1/payments/PAYNOPE", headers=user_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_list_user_payments(session_factory, holds, test_event, paystack, paystack_api):
    _, paid = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)
    pending_booking = await _booking(session_factory, holds, test_event.id, quantity=1)
    pending = await _initialize(session_factory, holds, pending_booking.id, paystack)
    other_booking = await _booking(session_factory, holds, test_event.id, quantity=1, user_id="user-b")
    await _initialize(session_factory, holds, other_booking.id, paystack, user_id="user-b")

    async with session_factory() as db:
        payments, total = await payment_service.list_user_payments(db, "user-a")
        successful, successful_total = await payment_service.list_user_payments(
            db, "user-a", status=PaymentStatus.SUCCESSFUL
        )
        first_page, _ = await payment_service.list_user_payments(db, "user-a", page=1, page_size=1)

    assert total == 2
    assert {p.payment_reference for p in payments} == {paid, pending.reference}
    assert successful_total == 1
    assert [p.payment_reference for p in successful] == [paid]
    assert len(first_page) == 1


@pytest.mark.asyncio
async def test_payment_statistics(session_factory, holds, test_event, paystack, paystack_api):
    await _paid(session_factory, holds, test_event.id, paystack, paystack_api, quantity=2)
    pending_booking = await _booking(session_factory, holds, test_event.id, quantity=1)
    await _initialize(session_factory, holds, pending_booking.id, paystack)
    other_booking = await _booking(session_factory, holds, test_event.id, quantity=3, user_id="user-b")
    await _initialize(session_factory, holds, other_booking.id, paystack, user_id="user-b")

    async with session_factory() as db:
        mine = await payment_service.payment_statistics(db, "user-a")
        everyone = await payment_service.payment_statistics(db)

    assert mine["total_payments"] == 2
    assert mine["total_amount"] == Decimal("15000")
    assert mine["by_status"]["successful"].count == 1
    assert mine["by_status"]["successful"].amount == Decimal("10000")
    assert mine["by_status"]["pending"].amount == Decimal("5000")
    assert everyone["total_payments"] == 3
    assert everyone["by_status"]["pending"].count == 2
    assert everyone["total_amount"] == Decimal("30000")


@pytest.mark.asyncio
async def test_payment_reads_api(client, session_factory, holds, test_event, paystack, paystack_api, user_headers):
    _, paid = await _paid(session_factory, holds, test_event.id, paystack, paystack_api)

    listed = await client.get("/api/v1/payments/", headers=user_headers)
    assert listed.status_code == 200
    data = listed.json()
    assert data["total"] == 1
    assert data["payments"][0]["payment_reference"] == paid

    filtered = await client.get("/api/v1/payments/", params={"status": "FAILED"}, headers=user_headers)
    assert filtered.json()["total"] == 0

    stats = await client.get("/api/v1/payments/stats", headers=user_headers)
    assert stats.status_code == 200
    body = stats.json()
    assert body["total_payments"] == 1
    assert Decimal(str(body["total_amount"])) == Decimal("10000")
    assert body["by_status"]["successful"]["count"] == 1

    empty = await client.get("/api/v1/payments/stats", headers={"X-User-Id": "user-b"})
    assert empty.json()["total_payments"] == 0
