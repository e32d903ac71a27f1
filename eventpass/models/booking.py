"""
Booking model: one buyer's reservation of `quantity` tickets for an event.

Key design decisions:
- Status changes go through compare-and-set UPDATEs in the ledger, never
  through attribute assignment on a loaded row
- Cancellation is a terminal status, rows are never deleted
- `created_at` is the durable hold-start marker; (status, created_at) is
  indexed for the expiry sweep
- `booking_reference` is unique and immutable, safe to show to buyers
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eventpass.db.base import Base, TimestampMixin
from eventpass.domain.state_machine import BookingStatus


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    booking_reference: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ticket_artifact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    event: Mapped["Event"] = relationship(back_populates="bookings")  # noqa: F821
    payments: Mapped[List["Payment"]] = relationship(back_populates="booking")  # noqa: F821

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="check_booking_amount_non_negative"),
        Index("ix_bookings_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, ref={self.booking_reference}, status={self.status})>"
