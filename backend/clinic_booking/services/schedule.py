from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from clinic_booking.core.settings import settings
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingSlot
from clinic_booking.models.clinic_schedule import ClinicClosure, ClinicHour, ClinicOverride
from clinic_booking.services.audit import log_event

logger = logging.getLogger("clinic_booking.schedule")

DEFAULT_SLOT_MINUTES = 15


@dataclass(frozen=True)
class ClinicSchedule:
    hours: list[ClinicHour]
    closures: list[ClinicClosure]
    overrides: list[ClinicOverride]


@dataclass(frozen=True)
class ClinicDay:
    start: time | None
    end: time | None
    slot_minutes: int
    capacity: int
    reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.start is not None and self.end is not None


def ensure_default_hours(db: Session) -> bool:
    existing = db.scalar(select(ClinicHour.id))
    if existing:
        return False
    defaults = [
        (0, time(9, 0), time(17, 30), False),
        (1, time(9, 0), time(17, 30), False),
        (2, time(9, 0), time(17, 30), False),
        (3, time(9, 0), time(17, 30), False),
        (4, time(9, 0), time(17, 30), False),
        (5, None, None, True),
        (6, None, None, True),
    ]
    for day, start, end, closed in defaults:
        db.add(
            ClinicHour(
                day_of_week=day,
                start_time=start,
                end_time=end,
                slot_minutes=DEFAULT_SLOT_MINUTES,
                is_closed=closed,
            )
        )
    db.commit()
    return True


def load_schedule(db: Session) -> ClinicSchedule:
    hours = list(db.scalars(select(ClinicHour).order_by(ClinicHour.day_of_week)))
    closures = list(db.scalars(select(ClinicClosure).order_by(ClinicClosure.start_date)))
    overrides = list(db.scalars(select(ClinicOverride).order_by(ClinicOverride.date)))
    return ClinicSchedule(hours=hours, closures=closures, overrides=overrides)


def _is_date_closed(target: date, closures: list[ClinicClosure]) -> ClinicClosure | None:
    for closure in closures:
        if closure.start_date <= target <= closure.end_date:
            return closure
    return None


def get_clinic_day(target: date, schedule: ClinicSchedule) -> ClinicDay:
    default_capacity = settings.default_slot_capacity
    day_hours = {row.day_of_week: row for row in schedule.hours}.get(target.weekday())
    weekly_capacity = day_hours.capacity if day_hours and day_hours.capacity else default_capacity
    weekly_minutes = day_hours.slot_minutes if day_hours and day_hours.slot_minutes else DEFAULT_SLOT_MINUTES

    override = next((item for item in schedule.overrides if item.date == target), None)
    if override:
        if override.is_closed:
            return ClinicDay(None, None, weekly_minutes, weekly_capacity, override.reason or "Clinic closed (override).")
        start = override.start_time or (day_hours.start_time if day_hours else None)
        end = override.end_time or (day_hours.end_time if day_hours else None)
        if start and end:
            return ClinicDay(
                start,
                end,
                override.slot_minutes or weekly_minutes,
                override.capacity or weekly_capacity,
            )

    closure = _is_date_closed(target, schedule.closures)
    if closure:
        return ClinicDay(None, None, weekly_minutes, weekly_capacity, closure.reason or "Clinic closed (holiday).")

    if not day_hours or day_hours.is_closed:
        return ClinicDay(None, None, weekly_minutes, weekly_capacity, "Clinic closed.")
    if not day_hours.start_time or not day_hours.end_time:
        return ClinicDay(None, None, weekly_minutes, weekly_capacity, "Clinic hours not configured.")
    return ClinicDay(day_hours.start_time, day_hours.end_time, weekly_minutes, weekly_capacity)


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def validate_slot(slot_date: date, slot_time: time, schedule: ClinicSchedule) -> tuple[bool, str | None]:
    day = get_clinic_day(slot_date, schedule)
    if not day.is_open:
        return False, day.reason or "Clinic closed."
    assert day.start is not None and day.end is not None
    if slot_time.second or slot_time.microsecond:
        return False, "Slot time must be on a whole minute."
    if not (day.start <= slot_time < day.end):
        return False, "Slot falls outside clinic hours."
    if day.slot_minutes > 0 and (_minutes(slot_time) - _minutes(day.start)) % day.slot_minutes:
        return False, f"Slot time must fall on the {day.slot_minutes}-minute grid."
    return True, None


def slot_capacity(slot: BookingSlot | None, slot_date: date, schedule: ClinicSchedule) -> int:
    if slot is not None and slot.capacity:
        return slot.capacity
    return get_clinic_day(slot_date, schedule).capacity


def iter_day_slots(day: ClinicDay):
    if not day.is_open or day.slot_minutes <= 0:
        return
    assert day.start is not None and day.end is not None
    cursor = datetime.combine(date.min, day.start)
    end = datetime.combine(date.min, day.end)
    step = timedelta(minutes=day.slot_minutes)
    while cursor + step <= end:
        yield cursor.time()
        cursor += step


def replace_schedule(db: Session, update, *, actor) -> list[str]:
    """Swap in a new weekly grid, closures and overrides in one transaction.

    Returns the reserve ids of active bookings that the new schedule no longer
    admits. They are left alone; moving or canceling them is a staff decision.
    """
    db.execute(delete(ClinicHour))
    db.execute(delete(ClinicClosure))
    db.execute(delete(ClinicOverride))
    for entry in update.hours:
        db.add(ClinicHour(**entry.model_dump()))
    for entry in update.closures:
        db.add(ClinicClosure(**entry.model_dump()))
    for entry in update.overrides:
        db.add(ClinicOverride(**entry.model_dump()))
    db.flush()

    schedule = load_schedule(db)
    active = db.execute(
        select(Booking.reserve_id, Booking.slot_date, Booking.slot_time)
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .order_by(Booking.slot_date, Booking.slot_time)
    ).all()
    stranded = [
        reserve_id
        for reserve_id, slot_date, slot_time in active
        if not validate_slot(slot_date, slot_time, schedule)[0]
    ]
    log_event(
        db,
        actor=actor,
        action="schedule.updated",
        entity_type="schedule",
        entity_id="clinic",
        after_data={**update.model_dump(mode="json"), "stranded_reserve_ids": stranded},
    )
    db.commit()
    if stranded:
        logger.warning("Schedule change leaves %d active bookings outside hours", len(stranded))
    return stranded
