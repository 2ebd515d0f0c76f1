from datetime import date, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClinicHourBase(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    slot_minutes: int = Field(default=15, ge=1, le=240)
    capacity: Optional[int] = Field(default=None, ge=1)
    is_closed: bool = False


class ClinicHourIn(ClinicHourBase):
    @model_validator(mode="after")
    def _open_days_have_hours(self):
        if self.is_closed:
            self.start_time = self.end_time = None
            return self
        if not self.start_time or not self.end_time:
            raise ValueError("open days require start_time and end_time")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ClinicHourOut(ClinicHourBase):
    model_config = ConfigDict(from_attributes=True)

    id: int


class ClinicClosureBase(BaseModel):
    start_date: date
    end_date: date
    reason: Optional[str] = None


class ClinicClosureIn(ClinicClosureBase):
    @model_validator(mode="after")
    def _ordered(self):
        if self.end_date < self.start_date:
            raise ValueError("closure end_date must not be before start_date")
        return self


class ClinicClosureOut(ClinicClosureBase):
    model_config = ConfigDict(from_attributes=True)

    id: int


class ClinicOverrideBase(BaseModel):
    date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    slot_minutes: Optional[int] = Field(default=None, ge=1, le=240)
    capacity: Optional[int] = Field(default=None, ge=1)
    is_closed: bool = False
    reason: Optional[str] = None


class ClinicOverrideIn(ClinicOverrideBase):
    @model_validator(mode="after")
    def _ordered(self):
        if self.is_closed:
            self.start_time = self.end_time = None
        elif self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("override end_time must be after start_time")
        return self


class ClinicOverrideOut(ClinicOverrideBase):
    model_config = ConfigDict(from_attributes=True)

    id: int


class ClinicScheduleOut(BaseModel):
    hours: list[ClinicHourOut]
    closures: list[ClinicClosureOut]
    overrides: list[ClinicOverrideOut]
    # Active bookings that no longer fit the saved schedule; staff move or cancel them.
    stranded_reserve_ids: list[str] = []


class ClinicScheduleUpdate(BaseModel):
    hours: list[ClinicHourIn]
    closures: list[ClinicClosureIn] = []
    overrides: list[ClinicOverrideIn] = []

    @model_validator(mode="after")
    def _one_row_per_weekday(self):
        days = [entry.day_of_week for entry in self.hours]
        if len(days) != len(set(days)):
            raise ValueError("day_of_week listed more than once")
        return self
