from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_booking.models.booking import ACTIVE_STATUSES, Booking
from clinic_booking.models.projection import PatientProjection


def get_projection(db: Session, patient_id: str, *, for_update: bool = False) -> PatientProjection | None:
    stmt = select(PatientProjection).where(PatientProjection.patient_id == patient_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def point_projection(db: Session, patient_id: str, booking: Booking) -> PatientProjection:
    projection = get_projection(db, patient_id)
    if projection is None:
        projection = PatientProjection(patient_id=patient_id)
        db.add(projection)
    projection.reserve_id = booking.reserve_id
    projection.reserved_date = booking.slot_date
    projection.reserved_time = booking.slot_time
    projection.status = booking.status
    return projection


def clear_projection(projection: PatientProjection) -> None:
    projection.reserve_id = None
    projection.reserved_date = None
    projection.reserved_time = None
    projection.status = None


def clear_if_pointing(db: Session, patient_id: str, reserve_id: str) -> bool:
    projection = get_projection(db, patient_id)
    if projection is None or projection.reserve_id != reserve_id:
        return False
    clear_projection(projection)
    return True


def matches_booking(projection: PatientProjection, booking: Booking) -> bool:
    return (
        projection.reserve_id == booking.reserve_id
        and projection.reserved_date == booking.slot_date
        and projection.reserved_time == booking.slot_time
        and projection.status == booking.status
    )


def active_booking_for(db: Session, patient_id: str) -> Booking | None:
    return db.scalar(
        select(Booking)
        .where(Booking.patient_id == patient_id, Booking.status.in_(ACTIVE_STATUSES))
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(1)
    )


def refresh_projection(db: Session, patient_id: str) -> PatientProjection | None:
    """Rebuild a patient's projection from the booking table."""
    booking = active_booking_for(db, patient_id)
    if booking is not None:
        return point_projection(db, patient_id, booking)
    projection = get_projection(db, patient_id)
    if projection is not None:
        clear_projection(projection)
    return projection
