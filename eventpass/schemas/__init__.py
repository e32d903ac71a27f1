from eventpass.schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingStartResponse,
    BookingStatsResponse,
    TicketResponse,
)
from eventpass.schemas.payment import (
    PaymentDetailResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatsResponse,
    PaymentVerifyResponse,
    RefundRequest,
    WebhookAckResponse,
)
from eventpass.schemas.ticket import TicketScanRequest, TicketVerificationResponse

__all__ = [
    "BookingCreate", "BookingCancelRequest", "BookingResponse", "BookingStartResponse",
    "BookingListResponse", "BookingStatsResponse", "TicketResponse",
    "PaymentInitializeRequest", "PaymentInitializeResponse", "PaymentResponse",
    "PaymentVerifyResponse", "PaymentDetailResponse", "PaymentListResponse", "PaymentStatsResponse",
    "RefundRequest", "WebhookAckResponse",
    "TicketScanRequest", "TicketVerificationResponse",
]
