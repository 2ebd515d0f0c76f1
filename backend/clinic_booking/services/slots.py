from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingSlot
from clinic_booking.models.user import User
from clinic_booking.services.audit import log_event, snapshot_model
from clinic_booking.services.bookings import lock_slot
from clinic_booking.services.schedule import get_clinic_day, iter_day_slots, load_schedule
from clinic_booking.services.transactions import run_in_transaction

MAX_RANGE_DAYS = 62


@dataclass(frozen=True)
class SlotAvailability:
    slot_date: date
    slot_time: time
    capacity: int
    booked: int

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.booked)


def list_availability(db: Session, start: date, end: date) -> list[SlotAvailability]:
    """Open slots in ``[start, end]`` with their effective capacity and active count."""
    if end < start:
        return []
    end = min(end, start + timedelta(days=MAX_RANGE_DAYS))
    schedule = load_schedule(db)
    counts = {
        (row.slot_date, row.slot_time): row.booked
        for row in db.execute(
            select(Booking.slot_date, Booking.slot_time, func.count(Booking.id).label("booked"))
            .where(
                Booking.slot_date >= start,
                Booking.slot_date <= end,
                Booking.status.in_(ACTIVE_STATUSES),
            )
            .group_by(Booking.slot_date, Booking.slot_time)
        )
    }
    overrides = {
        (row.slot_date, row.slot_time): row.capacity
        for row in db.scalars(
            select(BookingSlot).where(
                BookingSlot.slot_date >= start,
                BookingSlot.slot_date <= end,
                BookingSlot.capacity.is_not(None),
            )
        )
    }
    out: list[SlotAvailability] = []
    cursor = start
    while cursor <= end:
        day = get_clinic_day(cursor, schedule)
        for slot_time in iter_day_slots(day):
            key = (cursor, slot_time)
            out.append(
                SlotAvailability(
                    slot_date=cursor,
                    slot_time=slot_time,
                    capacity=overrides.get(key) or day.capacity,
                    booked=counts.get(key, 0),
                )
            )
        cursor += timedelta(days=1)
    return out


def set_slot_capacity(
    db: Session,
    slot_date: date,
    slot_time: time,
    capacity: int | None,
    *,
    actor: User | str | None,
) -> BookingSlot:
    """Pin an explicit capacity on one slot; ``None`` falls back to the schedule.

    Lowering capacity below the current active count is allowed; the capacity
    audit reports the overflow instead of canceling anyone.
    """

    def work(session: Session) -> BookingSlot:
        slot = lock_slot(session, slot_date, slot_time)
        before = snapshot_model(slot)
        slot.capacity = capacity
        session.flush()
        log_event(
            session,
            actor=actor,
            action="slot.capacity_set",
            entity_type="slot",
            entity_id=f"{slot_date.isoformat()}T{slot_time.strftime('%H:%M')}",
            before_data=before,
            after_obj=slot,
        )
        return slot

    return run_in_transaction(db, work, operation="set_slot_capacity")
