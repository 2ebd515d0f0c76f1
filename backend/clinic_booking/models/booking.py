from __future__ import annotations

import enum
from datetime import date, datetime, time

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Time, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_booking.models.base import Base, TimestampMixin


class BookingStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    canceled = "canceled"


ACTIVE_STATUSES = (BookingStatus.pending, BookingStatus.confirmed)

_ACTIVE_ONLY = text("status <> 'canceled'")


class BookingSlot(Base):
    """Lock row for a (date, time) slot; bookings are counted against it."""

    __tablename__ = "booking_slots"

    slot_date: Mapped[date] = mapped_column(Date, primary_key=True)
    slot_time: Mapped[time] = mapped_column(Time, primary_key=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_slot", "slot_date", "slot_time"),
        Index(
            "uq_bookings_one_active_per_patient",
            "patient_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reserve_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    patient_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("patients.patient_id"), nullable=False, index=True
    )
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot_time: Mapped[time] = mapped_column(Time, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        default=BookingStatus.pending,
        nullable=False,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    patient = relationship("Patient", back_populates="bookings")

    @property
    def is_active(self) -> bool:
        return self.status != BookingStatus.canceled
