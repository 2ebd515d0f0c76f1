from datetime import date, time

from clinic_booking.models.booking import BookingSlot
from clinic_booking.models.clinic_schedule import ClinicClosure, ClinicOverride
from clinic_booking.services.schedule import (
    get_clinic_day,
    iter_day_slots,
    load_schedule,
    slot_capacity,
    validate_slot,
)

FRIDAY = date(2026, 2, 20)
SATURDAY = date(2026, 2, 21)


def test_default_week_opens_weekdays_on_a_fifteen_minute_grid(session):
    schedule = load_schedule(session)

    assert validate_slot(FRIDAY, time(9, 0), schedule) == (True, None)
    assert validate_slot(FRIDAY, time(17, 15), schedule) == (True, None)
    ok, reason = validate_slot(FRIDAY, time(17, 30), schedule)
    assert not ok and "outside" in reason
    ok, reason = validate_slot(FRIDAY, time(9, 10), schedule)
    assert not ok and "grid" in reason
    ok, _ = validate_slot(SATURDAY, time(10, 0), schedule)
    assert not ok

    slots = list(iter_day_slots(get_clinic_day(FRIDAY, schedule)))
    assert slots[0] == time(9, 0)
    assert slots[-1] == time(17, 15)
    assert len(slots) == 34
    session.commit()


def test_closures_and_overrides(session):
    session.add(ClinicClosure(start_date=FRIDAY, end_date=FRIDAY, reason="Foundation day"))
    session.add(
        ClinicOverride(
            date=SATURDAY,
            start_time=time(9, 0),
            end_time=time(12, 0),
            slot_minutes=30,
            capacity=3,
            is_closed=False,
        )
    )
    session.commit()
    schedule = load_schedule(session)

    assert validate_slot(FRIDAY, time(10, 0), schedule) == (False, "Foundation day")
    assert validate_slot(SATURDAY, time(9, 30), schedule) == (True, None)
    assert not validate_slot(SATURDAY, time(9, 15), schedule)[0]

    saturday = get_clinic_day(SATURDAY, schedule)
    assert saturday.capacity == 3
    assert slot_capacity(None, SATURDAY, schedule) == 3
    assert slot_capacity(BookingSlot(slot_date=SATURDAY, slot_time=time(9, 0), capacity=5), SATURDAY, schedule) == 5
    session.commit()
