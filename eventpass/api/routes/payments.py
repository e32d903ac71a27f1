"""
Payment endpoints: initialize, buyer-side verify, reads and operator refunds.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from eventpass.api.dependencies import (
    get_current_user_id,
    get_hold_manager,
    get_renderer,
    get_request_notifier,
    require_operator,
)
from eventpass.core.logging import get_logger
from eventpass.db.session import get_db
from eventpass.domain.state_machine import PaymentStatus
from eventpass.infrastructure.ticket_renderer import TicketRenderer
from eventpass.schemas.booking import BookingResponse
from eventpass.schemas.payment import (
    PaymentDetailResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatsResponse,
    PaymentStatusBucketResponse,
    PaymentVerifyResponse,
    RefundRequest,
)
from eventpass.services import payment_service
from eventpass.services.hold_service import HoldManager
from eventpass.services.notification_service import Notifier

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/initialize", response_model=PaymentInitializeResponse)
async def initialize_payment(
    body: PaymentInitializeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
):
    result = await payment_service.initialize_payment(
        db,
        holds,
        body.booking_id,
        actor_id=user_id,
        provider_name=body.provider,
        callback_url=body.callback_url,
        customer_email=body.email,
    )
    return PaymentInitializeResponse(
        reference=result.reference,
        authorization_url=result.authorization_url,
        payment=PaymentResponse.from_payment(result.payment),
    )


@router.get("/verify/{reference}", response_model=PaymentVerifyResponse)
async def verify_payment(
    reference: str,
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
    renderer: TicketRenderer = Depends(get_renderer),
    notifier: Notifier = Depends(get_request_notifier),
):
    """
    Called by the buyer's client after the provider redirect.
    502 means the provider could not be reached; retry later.
    """
    resolution = await payment_service.handle_payment_verify(
        db, holds, reference, renderer=renderer, notifier=notifier
    )
    return PaymentVerifyResponse(
        status=resolution.status,
        duplicate=resolution.duplicate,
        payment=PaymentResponse.from_payment(resolution.payment),
        booking=BookingResponse.from_booking(resolution.booking) if resolution.booking else None,
    )


@router.get("/", response_model=PaymentListResponse)
async def list_payments(
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    payments, total = await payment_service.list_user_payments(db, user_id, status_filter, page, page_size)
    return PaymentListResponse(
        payments=[PaymentResponse.from_payment(p) for p in payments],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=PaymentStatsResponse)
async def payment_stats(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Count and amount per status for the caller's payments."""
    stats = await payment_service.payment_statistics(db, user_id)
    return PaymentStatsResponse(
        total_payments=stats["total_payments"],
        total_amount=stats["total_amount"],
        by_status={k: PaymentStatusBucketResponse.model_validate(v) for k, v in stats["by_status"].items()},
    )


@router.get("/refunds/pending", response_model=list[PaymentResponse])
async def payments_requiring_refund(
    operator_id: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Payments taken for bookings that had already lapsed."""
    return [PaymentResponse.from_payment(p) for p in await payment_service.list_payments_requiring_refund(db)]


@router.get("/{reference}", response_model=PaymentDetailResponse)
async def get_payment(
    reference: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    payment = await payment_service.get_payment_by_reference(db, reference, actor_id=user_id)
    return PaymentDetailResponse(
        **PaymentResponse.from_payment(payment).model_dump(),
        booking=BookingResponse.from_booking(payment.booking),
    )


@router.post("/{reference}/refund", response_model=PaymentResponse)
async def refund_payment(
    reference: str,
    body: RefundRequest,
    operator_id: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    holds: HoldManager = Depends(get_hold_manager),
    notifier: Notifier = Depends(get_request_notifier),
):
    """Refund a payment. A booking still holding tickets is cancelled first."""
    payment = await payment_service.refund_payment(db, holds, reference, reason=body.reason, notifier=notifier)
    logger.info("refund_requested", payment_reference=reference, operator_id=operator_id)
    return PaymentResponse.from_payment(payment)
