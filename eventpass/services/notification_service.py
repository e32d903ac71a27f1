"""
Notification collaborator boundary.

Email/SMS delivery lives outside the booking core. The core only emits
NotificationEvents through a Notifier and never lets a delivery failure
reach a committed transition.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from eventpass.core.logging import get_logger
from eventpass.services.best_effort import SideEffectResult, best_effort

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    kind: str  # booking_confirmed, booking_cancelled, payment_confirmed, refund_required
    user_id: str
    booking_id: int
    booking_reference: str
    data: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    @abstractmethod
    async def send(self, event: NotificationEvent) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default notifier: records the event in the structured log for a downstream shipper."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_emitted",
            kind=event.kind,
            user_id=event.user_id,
            booking_id=event.booking_id,
            booking_reference=event.booking_reference,
            **event.data,
        )


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = LoggingNotifier()
    return _notifier


async def notify(notifier: Optional[Notifier], event: NotificationEvent) -> SideEffectResult:
    return await best_effort(
        "notification",
        (notifier or get_notifier()).send(event),
        kind=event.kind,
        booking_id=event.booking_id,
    )
