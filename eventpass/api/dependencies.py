"""
FastAPI dependencies: caller identity and the collaborators each request uses.
"""

from typing import Optional

from fastapi import Depends, Header

from eventpass.core.config import get_settings
from eventpass.core.errors import ForbiddenError
from eventpass.infrastructure.redis_client import get_redis
from eventpass.infrastructure.ticket_renderer import TicketRenderer, get_ticket_renderer
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import Notifier, get_notifier


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Identity is asserted upstream by the authentication gateway."""
    if not x_user_id or not x_user_id.strip():
        raise ForbiddenError("Missing caller identity")
    return x_user_id.strip()


async def require_operator(
    user_id: str = Depends(get_current_user_id),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> str:
    """Refunds and the refund queue are for operators only."""
    if (x_user_role or "").strip().upper() != get_settings().OPERATOR_ROLE.upper():
        raise ForbiddenError("Operator role required")
    return user_id


async def get_hold_manager() -> HoldManager:
    return HoldManager(await get_redis())


def get_renderer() -> TicketRenderer:
    return get_ticket_renderer()


def get_request_notifier() -> Notifier:
    return get_notifier()
