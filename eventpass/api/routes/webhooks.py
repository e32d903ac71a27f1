"""
Provider webhook endpoint.

The raw body is read before any parsing: signatures are computed over
the exact bytes (Paystack) or their canonical form (OPay).
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.api.dependencies import get_hold_manager, get_renderer, get_request_notifier
from eventpass.core.logging import get_logger
from eventpass.db.session import get_db
from eventpass.infrastructure.payment_providers import get_payment_provider
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.schemas.payment import WebhookAckResponse
from eventpass.services import payment_service
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import Notifier

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookAckResponse)
async def payment_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
    renderer: TicketRenderer = Depends(get_renderer),
    notifier: Notifier = Depends(get_request_notifier),
):
    raw_payload = await request.body()
    ack = await payment_service.handle_payment_webhook(
        db,
        holds,
        provider,
        request.headers,
        raw_payload,
        provider=get_payment_provider(provider),
        renderer=renderer,
        notifier=notifier,
    )
    logger.info("webhook_acknowledged", provider=provider, status=ack.status, reference=ack.reference)
    return WebhookAckResponse(status=ack.status, reference=ack.reference)
