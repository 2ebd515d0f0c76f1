"""Atomic booking transactor.

Every mutation takes the patient row lock first, then the booking or slot row,
checks its preconditions under those locks and commits the booking, the
patient projection, the ledger outbox row and the audit entry together.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinic_booking.core.errors import (
    BookingCoreError,
    BookingNotActive,
    BookingNotFound,
    CapacityExceeded,
    DuplicateActiveBooking,
    IdentityConflict,
    SlotUnavailable,
)
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingSlot, BookingStatus
from clinic_booking.models.user import Role, User
from clinic_booking.services.audit import log_event, snapshot_model
from clinic_booking.services.identity import canonical_patient, get_patient, is_placeholder_patient_id
from clinic_booking.services.ledger_sync import enqueue_ledger_sync
from clinic_booking.services.projection import active_booking_for, clear_if_pointing, point_projection
from clinic_booking.services.schedule import load_schedule, slot_capacity, validate_slot
from clinic_booking.services.transactions import run_in_transaction

logger = logging.getLogger("clinic_booking.bookings")

BUSINESS_REJECTIONS = (
    CapacityExceeded,
    DuplicateActiveBooking,
    SlotUnavailable,
    IdentityConflict,
    BookingNotActive,
)


def new_reserve_id() -> str:
    return f"resv-{uuid4().hex[:16]}"


def actor_label(actor: User | str | None) -> str:
    if isinstance(actor, User):
        return actor.actor_label
    return actor or "system"


def can_override_hours(actor: User | str | None) -> bool:
    return isinstance(actor, User) and actor.role in (Role.admin, Role.staff)


def get_booking(db: Session, reserve_id: str) -> Booking:
    booking = db.scalar(select(Booking).where(Booking.reserve_id == reserve_id))
    if booking is None:
        raise BookingNotFound(f"Booking {reserve_id} not found.")
    return booking


def lock_slot(db: Session, slot_date: date, slot_time: time) -> BookingSlot:
    """Ensure the slot row exists and hold its row lock until commit."""
    dialect = db.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        db.execute(
            insert(BookingSlot)
            .values(slot_date=slot_date, slot_time=slot_time)
            .on_conflict_do_nothing(index_elements=["slot_date", "slot_time"])
        )
    elif db.get(BookingSlot, (slot_date, slot_time)) is None:
        db.add(BookingSlot(slot_date=slot_date, slot_time=slot_time))
        db.flush()
    return db.scalar(
        select(BookingSlot)
        .where(BookingSlot.slot_date == slot_date, BookingSlot.slot_time == slot_time)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def count_active_in_slot(db: Session, slot_date: date, slot_time: time) -> int:
    return (
        db.scalar(
            select(func.count(Booking.id)).where(
                Booking.slot_date == slot_date,
                Booking.slot_time == slot_time,
                Booking.status.in_(ACTIVE_STATUSES),
            )
        )
        or 0
    )


def _check_slot_open(db: Session, slot_date: date, slot_time: time, allow_outside_hours: bool):
    schedule = load_schedule(db)
    if not allow_outside_hours:
        ok, reason = validate_slot(slot_date, slot_time, schedule)
        if not ok:
            raise SlotUnavailable(reason)
    return schedule


def _claim_seat(db: Session, slot_date: date, slot_time: time, schedule) -> None:
    slot = lock_slot(db, slot_date, slot_time)
    capacity = slot_capacity(slot, slot_date, schedule)
    taken = count_active_in_slot(db, slot_date, slot_time)
    if taken >= capacity:
        raise CapacityExceeded(
            f"Slot {slot_date.isoformat()} {slot_time.strftime('%H:%M')} is full ({taken}/{capacity})."
        )


def _lock_booking(db: Session, reserve_id: str) -> Booking:
    # Patient before booking, matching the create path.
    owner = db.scalar(select(Booking.patient_id).where(Booking.reserve_id == reserve_id))
    if owner is None:
        raise BookingNotFound(f"Booking {reserve_id} not found.")
    get_patient(db, owner, for_update=True)
    booking = db.scalar(
        select(Booking)
        .where(Booking.reserve_id == reserve_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if booking is None:
        raise BookingNotFound(f"Booking {reserve_id} not found.")
    return booking


def _log_rejection(operation: str, exc: BookingCoreError, **fields) -> None:
    logger.info(
        "Booking %s rejected: %s",
        operation,
        exc.code,
        extra={"operation": operation, "reason": exc.detail, **fields},
    )


def create_booking(
    db: Session,
    patient_id: str,
    slot_date: date,
    slot_time: time,
    *,
    actor: User | str | None,
    allow_outside_hours: bool = False,
) -> Booking:
    if is_placeholder_patient_id(patient_id):
        raise IdentityConflict(f"Placeholder patient {patient_id} cannot hold bookings.")
    allow_outside_hours = allow_outside_hours and can_override_hours(actor)

    def work(session: Session) -> Booking:
        patient = canonical_patient(session, patient_id, for_update=True)
        if is_placeholder_patient_id(patient.patient_id):
            raise IdentityConflict(f"Placeholder patient {patient.patient_id} cannot hold bookings.")
        schedule = _check_slot_open(session, slot_date, slot_time, allow_outside_hours)
        _claim_seat(session, slot_date, slot_time, schedule)

        existing = active_booking_for(session, patient.patient_id)
        if existing is not None:
            raise DuplicateActiveBooking(
                f"Patient {patient.patient_id} already holds active booking {existing.reserve_id}."
            )

        booking = Booking(
            reserve_id=new_reserve_id(),
            patient_id=patient.patient_id,
            slot_date=slot_date,
            slot_time=slot_time,
            status=BookingStatus.pending,
        )
        session.add(booking)
        session.flush()
        point_projection(session, patient.patient_id, booking)
        enqueue_ledger_sync(session, booking.reserve_id, reason="created")
        log_event(
            session,
            actor=actor,
            action="booking.created",
            entity_type="booking",
            entity_id=booking.reserve_id,
            after_obj=booking,
        )
        return booking

    try:
        booking = run_in_transaction(db, work, operation="create_booking")
    except BUSINESS_REJECTIONS as exc:
        _log_rejection("create", exc, patient_id=patient_id, slot=f"{slot_date} {slot_time}")
        raise
    logger.info(
        "Booking created",
        extra={"reserve_id": booking.reserve_id, "patient_id": booking.patient_id},
    )
    return booking


def cancel_booking(
    db: Session,
    reserve_id: str,
    *,
    actor: User | str | None,
    reason: str | None = None,
) -> Booking:
    """Cancel a booking and clear the projection that points at it.

    Cancelling an already-canceled booking returns it unchanged.
    """

    def work(session: Session) -> Booking:
        booking = _lock_booking(session, reserve_id)
        if booking.status == BookingStatus.canceled:
            return booking
        before = snapshot_model(booking)
        booking.status = BookingStatus.canceled
        booking.canceled_at = datetime.now(timezone.utc)
        booking.canceled_by = actor_label(actor)
        booking.cancel_reason = reason
        clear_if_pointing(session, booking.patient_id, booking.reserve_id)
        enqueue_ledger_sync(session, booking.reserve_id, reason="canceled")
        session.flush()
        log_event(
            session,
            actor=actor,
            action="booking.canceled",
            entity_type="booking",
            entity_id=booking.reserve_id,
            before_data=before,
            after_obj=booking,
        )
        return booking

    booking = run_in_transaction(db, work, operation="cancel_booking")
    logger.info("Booking canceled", extra={"reserve_id": reserve_id})
    return booking


def reschedule_booking(
    db: Session,
    reserve_id: str,
    slot_date: date,
    slot_time: time,
    *,
    actor: User | str | None,
    allow_outside_hours: bool = False,
) -> Booking:
    allow_outside_hours = allow_outside_hours and can_override_hours(actor)

    def work(session: Session) -> Booking:
        booking = _lock_booking(session, reserve_id)
        if not booking.is_active:
            raise BookingNotActive(f"Booking {reserve_id} is canceled.")
        if booking.slot_date == slot_date and booking.slot_time == slot_time:
            return booking
        schedule = _check_slot_open(session, slot_date, slot_time, allow_outside_hours)
        _claim_seat(session, slot_date, slot_time, schedule)

        before = snapshot_model(booking)
        booking.slot_date = slot_date
        booking.slot_time = slot_time
        session.flush()
        point_projection(session, booking.patient_id, booking)
        enqueue_ledger_sync(session, booking.reserve_id, reason="rescheduled")
        log_event(
            session,
            actor=actor,
            action="booking.rescheduled",
            entity_type="booking",
            entity_id=booking.reserve_id,
            before_data=before,
            after_obj=booking,
        )
        return booking

    try:
        booking = run_in_transaction(db, work, operation="reschedule_booking")
    except BUSINESS_REJECTIONS as exc:
        _log_rejection("reschedule", exc, reserve_id=reserve_id, slot=f"{slot_date} {slot_time}")
        raise
    return booking


def confirm_booking(db: Session, reserve_id: str, *, actor: User | str | None) -> Booking:
    def work(session: Session) -> Booking:
        booking = _lock_booking(session, reserve_id)
        if booking.status == BookingStatus.canceled:
            raise BookingNotActive(f"Booking {reserve_id} is canceled.")
        if booking.status == BookingStatus.confirmed:
            return booking
        before = snapshot_model(booking)
        booking.status = BookingStatus.confirmed
        session.flush()
        point_projection(session, booking.patient_id, booking)
        enqueue_ledger_sync(session, booking.reserve_id, reason="confirmed")
        log_event(
            session,
            actor=actor,
            action="booking.confirmed",
            entity_type="booking",
            entity_id=booking.reserve_id,
            before_data=before,
            after_obj=booking,
        )
        return booking

    return run_in_transaction(db, work, operation="confirm_booking")
