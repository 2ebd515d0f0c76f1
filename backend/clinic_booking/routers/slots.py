from datetime import date, time

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from clinic_booking.db.session import get_db
from clinic_booking.deps import get_current_user, require_staff
from clinic_booking.models.user import User
from clinic_booking.schemas.slot import SlotCapacityOut, SlotCapacityUpdate, SlotOut
from clinic_booking.services.slots import list_availability, set_slot_capacity

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("", response_model=list[SlotOut])
def availability(
    start: date,
    end: date,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")
    return [
        SlotOut(
            slot_date=slot.slot_date,
            slot_time=slot.slot_time,
            capacity=slot.capacity,
            booked=slot.booked,
            remaining=slot.remaining,
        )
        for slot in list_availability(db, start, end)
    ]


@router.put("/{slot_date}/{slot_time}/capacity", response_model=SlotCapacityOut)
def update_capacity(
    slot_date: date,
    slot_time: time,
    payload: SlotCapacityUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
):
    return set_slot_capacity(db, slot_date, slot_time.replace(tzinfo=None), payload.capacity, actor=user)
