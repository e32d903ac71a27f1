"""
Pydantic schemas for payment initialization, verification and webhooks.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from eventpass.schemas.booking import BookingResponse


class PaymentInitializeRequest(BaseModel):
    booking_id: int
    provider: Optional[str] = Field(None, pattern="^(paystack|opay)$")
    callback_url: Optional[str] = Field(None, max_length=500)
    email: Optional[str] = Field(None, max_length=255)


class PaymentResponse(BaseModel):
    id: int
    booking_id: int
    amount: Decimal
    currency: str
    provider: str
    status: str
    payment_reference: str
    provider_reference: Optional[str] = None
    authorization_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    requires_manual_refund: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_payment(cls, payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            booking_id=payment.booking_id,
            amount=payment.amount,
            currency=payment.currency,
            provider=payment.provider,
            status=payment.status.value,
            payment_reference=payment.payment_reference,
            provider_reference=payment.provider_reference,
            authorization_url=payment.authorization_url,
            paid_at=payment.paid_at,
            requires_manual_refund=payment.requires_manual_refund,
            created_at=payment.created_at,
        )


class PaymentInitializeResponse(BaseModel):
    reference: str
    authorization_url: Optional[str]
    payment: PaymentResponse


class PaymentVerifyResponse(BaseModel):
    status: str
    duplicate: bool = False
    payment: PaymentResponse
    booking: Optional[BookingResponse] = None


class PaymentDetailResponse(PaymentResponse):
    booking: BookingResponse


class PaymentListResponse(BaseModel):
    payments: list[PaymentResponse]
    total: int
    page: int
    page_size: int


class PaymentStatusBucketResponse(BaseModel):
    count: int
    amount: Decimal

    model_config = {"from_attributes": True}


class PaymentStatsResponse(BaseModel):
    total_payments: int
    total_amount: Decimal
    by_status: dict[str, PaymentStatusBucketResponse]


class RefundRequest(BaseModel):
    reason: str = Field(default="Booking cancelled", min_length=1, max_length=255)


class WebhookAckResponse(BaseModel):
    received: bool = True
    status: str
    reference: Optional[str] = None
