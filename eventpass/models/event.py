"""
Event model, reduced to the fields the booking core reads.

Key design decisions:
- `available` is denormalized (avoids SUM over bookings on every reserve)
  and is written only by the inventory ledger's conditional updates
- CHECK constraints keep 0 <= available <= capacity at the DB level
- Composite index on (status, start_date) serves the bookability predicate
"""

from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eventpass.db.base import Base, TimestampMixin
from eventpass.domain.state_machine import EventStatus


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    available: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, name="event_status", native_enum=False, length=20),
        nullable=False,
        default=EventStatus.ACTIVE,
    )

    bookings: Mapped[List["Booking"]] = relationship(back_populates="event")  # noqa: F821

    __table_args__ = (
        CheckConstraint("capacity > 0", name="check_capacity_positive"),
        CheckConstraint("available >= 0", name="check_available_non_negative"),
        CheckConstraint("available <= capacity", name="check_available_lte_capacity"),
        CheckConstraint("price >= 0", name="check_price_non_negative"),
        CheckConstraint("end_date >= start_date", name="check_event_window"),
        Index("ix_events_status_start", "status", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title}, available={self.available}/{self.capacity})>"
