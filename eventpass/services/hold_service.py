"""
Hold manager: a time-boxed "permission to pay" marker per PENDING booking.

HOLD STRATEGY
=============

Two signals, one authoritative:

  Fast, non-durable:  Redis key "booking_hold:{id}" with TTL = hold duration,
                      written on reserve, deleted on confirm/cancel.
  Slow, durable:      bookings.created_at + hold duration, checked by
                      confirm() and by the expiry sweeper.

The Redis marker is never required for correctness. Every call is bounded
by HOLD_STORE_TIMEOUT_SECONDS and failures degrade to "unknown" (None)
rather than raising, so a Redis outage only costs the fast path.
"""

from typing import Optional

import redis.asyncio as redis

from eventpass.core.config import get_settings
from eventpass.core.logging import get_logger
from eventpass.core.metrics import record_hold_operation
from eventpass.services.best_effort import SideEffectResult, best_effort

logger = get_logger(__name__)
settings = get_settings()

HOLD_KEY_PREFIX = "booking_hold:"


def hold_key(booking_id: int) -> str:
    return f"{HOLD_KEY_PREFIX}{booking_id}"


class HoldManager:
    def __init__(self, client: Optional[redis.Redis], timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout if timeout is not None else settings.HOLD_STORE_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def arm(self, booking_id: int, ttl_seconds: int) -> SideEffectResult:
        """Write the presence marker for a freshly reserved booking."""
        if not self.enabled:
            record_hold_operation("arm", "disabled")
            return SideEffectResult(effect="hold_arm", ok=False, error="disabled")
        result = await best_effort(
            "hold_arm",
            self.client.set(hold_key(booking_id), "1", ex=ttl_seconds),
            timeout=self.timeout,
            booking_id=booking_id,
        )
        record_hold_operation("arm", "ok" if result.ok else "error")
        return result

    async def release(self, booking_id: int) -> SideEffectResult:
        """Drop the marker once the booking left PENDING."""
        if not self.enabled:
            record_hold_operation("release", "disabled")
            return SideEffectResult(effect="hold_release", ok=False, error="disabled")
        result = await best_effort(
            "hold_release",
            self.client.delete(hold_key(booking_id)),
            timeout=self.timeout,
            booking_id=booking_id,
        )
        record_hold_operation("release", "ok" if result.ok else "error")
        return result

    async def is_held(self, booking_id: int) -> Optional[bool]:
        """
        True/False when the accelerator answered, None when it could not.
        False does NOT prove the hold lapsed; callers must fall back to
        the booking's created_at.
        """
        if not self.enabled:
            return None
        result = await best_effort(
            "hold_check",
            self.client.exists(hold_key(booking_id)),
            timeout=self.timeout,
            booking_id=booking_id,
        )
        if not result.ok:
            record_hold_operation("check", "error")
            logger.warning("hold_store_unavailable", booking_id=booking_id)
            return None
        held = bool(result.value)
        record_hold_operation("check", "hit" if held else "miss")
        return held
