import threading
from datetime import date, time

import pytest
from sqlalchemy import func, select

from clinic_booking.core.errors import (
    BookingCoreError,
    BookingNotActive,
    CapacityExceeded,
    DuplicateActiveBooking,
    IdentityConflict,
    PatientNotFound,
    SlotUnavailable,
)
from clinic_booking.db.session import SessionLocal
from clinic_booking.models.audit_log import AuditLog
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingStatus
from clinic_booking.models.ledger_sync import LedgerSyncState, LedgerSyncTask
from clinic_booking.services.bookings import (
    cancel_booking,
    confirm_booking,
    create_booking,
    reschedule_booking,
)
from clinic_booking.services.projection import get_projection
from clinic_booking.services.slots import list_availability, set_slot_capacity

SLOT_DATE = date(2026, 2, 20)
SLOT_TIME = time(10, 0)


def active_in_slot(session, slot_date=SLOT_DATE, slot_time=SLOT_TIME) -> int:
    session.expire_all()
    return session.scalar(
        select(func.count(Booking.id)).where(
            Booking.slot_date == slot_date,
            Booking.slot_time == slot_time,
            Booking.status.in_(ACTIVE_STATUSES),
        )
    )


def test_create_booking_writes_projection_outbox_and_audit(session, make_patient):
    make_patient("P1", name="Hanako Sato")

    booking = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    assert booking.reserve_id.startswith("resv-")
    assert booking.status == BookingStatus.pending
    projection = get_projection(session, "P1")
    assert projection.reserve_id == booking.reserve_id
    assert projection.reserved_date == SLOT_DATE
    assert projection.reserved_time == SLOT_TIME
    assert projection.status == BookingStatus.pending

    task = session.scalar(select(LedgerSyncTask).where(LedgerSyncTask.reserve_id == booking.reserve_id))
    assert task.state == LedgerSyncState.pending
    assert task.reason == "created"

    actions = session.scalars(select(AuditLog.action).where(AuditLog.entity_id == booking.reserve_id)).all()
    assert "booking.created" in actions


def test_second_patient_rejected_when_slot_full(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    make_patient("P2", name="Taro Suzuki")
    first = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    with pytest.raises(CapacityExceeded):
        create_booking(session, "P2", SLOT_DATE, SLOT_TIME, actor="test")

    assert active_in_slot(session) == 1
    assert get_projection(session, "P2") is None
    assert get_projection(session, "P1").reserve_id == first.reserve_id


def test_patient_cannot_hold_two_active_bookings(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    with pytest.raises(DuplicateActiveBooking):
        create_booking(session, "P1", SLOT_DATE, time(11, 0), actor="test")

    assert active_in_slot(session, SLOT_DATE, time(11, 0)) == 0


def test_cancel_clears_projection_and_frees_the_seat(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    make_patient("P2", name="Taro Suzuki")
    booking = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    canceled = cancel_booking(session, booking.reserve_id, actor="test", reason="called in")

    assert canceled.status == BookingStatus.canceled
    assert canceled.canceled_by == "test"
    assert canceled.cancel_reason == "called in"
    assert get_projection(session, "P1").reserve_id is None

    again = cancel_booking(session, booking.reserve_id, actor="test")
    assert again.status == BookingStatus.canceled
    assert again.cancel_reason == "called in"

    replacement = create_booking(session, "P2", SLOT_DATE, SLOT_TIME, actor="test")
    assert replacement.status == BookingStatus.pending
    rebook = create_booking(session, "P1", SLOT_DATE, time(10, 15), actor="test")
    assert get_projection(session, "P1").reserve_id == rebook.reserve_id


def test_cancel_leaves_projection_pointing_elsewhere(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    old = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")
    cancel_booking(session, old.reserve_id, actor="test")
    current = create_booking(session, "P1", SLOT_DATE, time(11, 0), actor="test")

    cancel_booking(session, old.reserve_id, actor="test")

    assert get_projection(session, "P1").reserve_id == current.reserve_id


def test_reschedule_moves_booking_and_projection(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    booking = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    moved = reschedule_booking(session, booking.reserve_id, SLOT_DATE, time(14, 30), actor="test")

    assert moved.reserve_id == booking.reserve_id
    assert moved.slot_time == time(14, 30)
    projection = get_projection(session, "P1")
    assert projection.reserved_time == time(14, 30)
    assert active_in_slot(session) == 0
    task = session.scalar(select(LedgerSyncTask).where(LedgerSyncTask.reserve_id == booking.reserve_id))
    assert task.reason == "rescheduled"


def test_reschedule_into_full_slot_keeps_original(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    make_patient("P2", name="Taro Suzuki")
    mine = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")
    create_booking(session, "P2", SLOT_DATE, time(11, 0), actor="test")

    with pytest.raises(CapacityExceeded):
        reschedule_booking(session, mine.reserve_id, SLOT_DATE, time(11, 0), actor="test")

    session.expire_all()
    assert session.scalar(select(Booking.slot_time).where(Booking.reserve_id == mine.reserve_id)) == SLOT_TIME
    assert get_projection(session, "P1").reserved_time == SLOT_TIME


def test_canceled_booking_cannot_be_rescheduled_or_confirmed(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    booking = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")
    cancel_booking(session, booking.reserve_id, actor="test")

    with pytest.raises(BookingNotActive):
        reschedule_booking(session, booking.reserve_id, SLOT_DATE, time(11, 0), actor="test")
    with pytest.raises(BookingNotActive):
        confirm_booking(session, booking.reserve_id, actor="test")


def test_confirm_updates_projection_status(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    booking = create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")

    confirmed = confirm_booking(session, booking.reserve_id, actor="test")

    assert confirmed.status == BookingStatus.confirmed
    assert get_projection(session, "P1").status == BookingStatus.confirmed


def test_slot_outside_clinic_hours_rejected(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    saturday = date(2026, 2, 21)

    with pytest.raises(SlotUnavailable):
        create_booking(session, "P1", saturday, SLOT_TIME, actor="test")
    with pytest.raises(SlotUnavailable):
        create_booking(session, "P1", SLOT_DATE, time(10, 7), actor="test")
    with pytest.raises(SlotUnavailable):
        create_booking(session, "P1", SLOT_DATE, time(18, 0), actor="test")


def test_placeholder_and_unknown_patients_cannot_book(session, make_patient):
    make_patient("LINE_abc123")

    with pytest.raises(IdentityConflict):
        create_booking(session, "LINE_abc123", SLOT_DATE, SLOT_TIME, actor="test")
    with pytest.raises(PatientNotFound):
        create_booking(session, "P404", SLOT_DATE, SLOT_TIME, actor="test")
    assert active_in_slot(session) == 0


def test_slot_capacity_override_and_availability(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    make_patient("P2", name="Taro Suzuki")
    set_slot_capacity(session, SLOT_DATE, SLOT_TIME, 2, actor="test")

    create_booking(session, "P1", SLOT_DATE, SLOT_TIME, actor="test")
    create_booking(session, "P2", SLOT_DATE, SLOT_TIME, actor="test")

    slots = {(s.slot_date, s.slot_time): s for s in list_availability(session, SLOT_DATE, SLOT_DATE)}
    target = slots[(SLOT_DATE, SLOT_TIME)]
    assert target.capacity == 2
    assert target.booked == 2
    assert target.remaining == 0
    assert slots[(SLOT_DATE, time(9, 0))].remaining == 1


def test_concurrent_bookings_never_exceed_capacity(session, make_patient):
    patients = [f"P{i}" for i in range(6)]
    for patient_id in patients:
        make_patient(patient_id, name=f"Patient {patient_id}")
    set_slot_capacity(session, SLOT_DATE, SLOT_TIME, 2, actor="test")

    barrier = threading.Barrier(len(patients))
    successes: list[str] = []
    failures: list[BookingCoreError] = []
    lock = threading.Lock()

    def attempt(patient_id: str) -> None:
        db = SessionLocal()
        try:
            barrier.wait()
            booking = create_booking(db, patient_id, SLOT_DATE, SLOT_TIME, actor="test")
            with lock:
                successes.append(booking.reserve_id)
        except BookingCoreError as exc:
            with lock:
                failures.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=attempt, args=(pid,)) for pid in patients]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 2
    assert len(failures) == 4
    assert all(isinstance(exc, CapacityExceeded) for exc in failures)
    assert active_in_slot(session) == 2


def test_concurrent_bookings_for_one_patient_keep_one_active(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    slots = [time(9, 0), time(9, 15), time(9, 30), time(9, 45)]
    barrier = threading.Barrier(len(slots))
    outcomes: list[object] = []
    lock = threading.Lock()

    def attempt(slot_time: time) -> None:
        db = SessionLocal()
        try:
            barrier.wait()
            booking = create_booking(db, "P1", SLOT_DATE, slot_time, actor="test")
            result: object = booking.reserve_id
        except BookingCoreError as exc:
            result = exc
        finally:
            db.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(slot,)) for slot in slots]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [o for o in outcomes if isinstance(o, str)]
    assert len(winners) == 1
    assert all(isinstance(o, DuplicateActiveBooking) for o in outcomes if not isinstance(o, str))
    session.expire_all()
    active = session.scalars(
        select(Booking.reserve_id).where(Booking.patient_id == "P1", Booking.status.in_(ACTIVE_STATUSES))
    ).all()
    assert active == winners
    assert get_projection(session, "P1").reserve_id == winners[0]


def test_two_patients_racing_for_single_seat(session, make_patient):
    make_patient("P1", name="Hanako Sato")
    make_patient("P2", name="Taro Suzuki")
    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def attempt(patient_id: str) -> None:
        db = SessionLocal()
        try:
            barrier.wait()
            outcomes[patient_id] = create_booking(db, patient_id, SLOT_DATE, SLOT_TIME, actor="test").reserve_id
        except BookingCoreError as exc:
            outcomes[patient_id] = exc
        finally:
            db.close()

    threads = [threading.Thread(target=attempt, args=(pid,)) for pid in ("P1", "P2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    reserve_ids = [o for o in outcomes.values() if isinstance(o, str)]
    rejected = [o for o in outcomes.values() if isinstance(o, CapacityExceeded)]
    assert len(reserve_ids) == 1
    assert len(rejected) == 1
    assert active_in_slot(session) == 1
