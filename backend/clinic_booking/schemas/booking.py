import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinic_booking.models.booking import BookingStatus


class SlotRequest(BaseModel):
    date: dt.date
    time: dt.time
    allow_outside_hours: bool = False

    @field_validator("time")
    @classmethod
    def _whole_minute(cls, value: dt.time) -> dt.time:
        if value.second or value.microsecond:
            raise ValueError("time must be on a whole minute")
        return value.replace(tzinfo=None)


class BookingCreate(SlotRequest):
    patient_id: str = Field(min_length=1, max_length=64)


class BookingReschedule(SlotRequest):
    pass


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    reserve_id: str
    patient_id: str
    date: dt.date = Field(validation_alias="slot_date")
    time: dt.time = Field(validation_alias="slot_time")
    status: BookingStatus
    created_at: dt.datetime
    updated_at: dt.datetime
    canceled_at: Optional[dt.datetime] = None
    canceled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
