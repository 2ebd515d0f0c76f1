from datetime import date, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_date: date
    slot_time: time
    capacity: int
    booked: int
    remaining: int


class SlotCapacityUpdate(BaseModel):
    capacity: Optional[int] = Field(default=None, ge=1)


class SlotCapacityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_date: date
    slot_time: time
    capacity: Optional[int] = None
