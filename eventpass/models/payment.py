"""
Payment model: one provider payment attempt for a booking.

- `payment_reference` is our idempotency key, unique across providers
- one row per booking (unique booking_id): a failed attempt cancels the
  booking, so a second attempt never exists alongside a live one
- `requires_manual_refund` marks money taken for a booking that had
  already lapsed
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eventpass.db.base import Base, TimestampMixin
from eventpass.domain.state_machine import PaymentStatus


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", native_enum=False, length=20),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    authorization_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    requires_manual_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    booking: Mapped["Booking"] = relationship(back_populates="payments")  # noqa: F821

    def __repr__(self) -> str:
        return f"<Payment(ref={self.payment_reference}, status={self.status})>"
