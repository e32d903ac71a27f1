"""
Test doubles and assertions shared across test modules.
"""

import hashlib
import hmac
import json
from typing import Dict, List, Optional

import httpx
from sqlalchemy import func, select

from eventpass.domain.state_machine import INVENTORY_HOLDING_STATUSES
from eventpass.models.booking import Booking
from eventpass.models.event import Event
from eventpass.services.notification_service import NotificationEvent, Notifier

PAYSTACK_SECRET = "sk_test_paystack"
OPAY_SECRET = "opay_test_secret"
OPAY_PUBLIC = "opay_test_public"
OPAY_MERCHANT = "256000000000001"
TICKET_SECRET = "ticket-test-secret"


class InMemoryHoldStore:
    """The subset of the redis.asyncio client the hold manager uses."""

    def __init__(self):
        self.keys: Dict[str, Optional[int]] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise ConnectionError("hold store is down")

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self._check()
        self.keys[key] = ex
        return True

    async def delete(self, key: str):
        self._check()
        return 1 if self.keys.pop(key, "missing") != "missing" else 0

    async def exists(self, key: str):
        self._check()
        return 1 if key in self.keys else 0


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.events: List[NotificationEvent] = []
        self.fail = fail

    async def send(self, event: NotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


class PaystackStub:
    """Programmable Paystack API behind httpx.MockTransport."""

    def __init__(self):
        self.statuses: Dict[str, str] = {}
        self.timeout = False
        self.calls: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if self.timeout:
            raise httpx.ReadTimeout("provider timed out", request=request)
        if request.headers.get("Authorization") != f"Bearer {PAYSTACK_SECRET}":
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        if path == "/transaction/initialize":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "authorization_url": f"https://checkout.paystack.test/{body['reference']}",
                        "access_code": f"AC_{body['reference']}",
                        "reference": body["reference"],
                    },
                },
            )
        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "id": 4099260516,
                        "reference": reference,
                        "status": self.statuses.get(reference, "ongoing"),
                        "paid_at": "2026-10-19T10:00:00.000Z",
                    },
                },
            )
        if path == "/refund":
            return httpx.Response(200, json={"status": True, "data": {"status": "pending"}})
        return httpx.Response(404, json={"status": False})


def paystack_signature(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def paystack_event(event: str, reference: str) -> bytes:
    return json.dumps(
        {
            "event": event,
            "data": {"id": 4099260516, "reference": reference, "status": event.split(".")[1]},
        }
    ).encode()


async def event_available(session_factory, event_id: int) -> int:
    async with session_factory() as session:
        return (await session.execute(select(Event.available).where(Event.id == event_id))).scalar_one()


async def load(session_factory, model, **filters):
    async with session_factory() as session:
        return (await session.execute(select(model).filter_by(**filters))).scalar_one()


async def assert_inventory_invariant(session_factory, event_id: int) -> None:
    """available + quantity held by live bookings == capacity."""
    async with session_factory() as session:
        event = (await session.execute(select(Event).where(Event.id == event_id))).scalar_one()
        held = (
            await session.execute(
                select(func.coalesce(func.sum(Booking.quantity), 0)).where(
                    Booking.event_id == event_id,
                    Booking.status.in_(list(INVENTORY_HOLDING_STATUSES)),
                )
            )
        ).scalar_one()
    assert 0 <= event.available <= event.capacity
    assert event.available + held == event.capacity
