from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import Date, DateTime, Enum, ForeignKey, String, Time, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_booking.models.base import Base
from clinic_booking.models.booking import BookingStatus


class PatientProjection(Base):
    """Patient-facing copy of the current booking.

    Written only by the booking transactor and the reconciler.
    """

    __tablename__ = "patient_projections"

    patient_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("patients.patient_id"), primary_key=True
    )
    reserve_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reserved_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reserved_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    status: Mapped[BookingStatus | None] = mapped_column(
        Enum(BookingStatus, name="booking_status"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def is_empty(self) -> bool:
        return self.reserve_id is None
