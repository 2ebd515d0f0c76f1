from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_booking.models.booking import BookingStatus


class PatientCreate(BaseModel):
    patient_id: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = Field(default=None, max_length=320)
    messaging_uid: Optional[str] = Field(default=None, max_length=128)


class PatientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    messaging_uid: Optional[str] = None
    merged_into_patient_id: Optional[str] = None
    merged_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class MessagingIdentityLink(BaseModel):
    messaging_uid: str = Field(min_length=1, max_length=128)


class MergeRequest(BaseModel):
    primary_id: str
    duplicate_id: str


class MergeOut(BaseModel):
    primary_patient_id: str
    duplicate_patient_id: str
    rows_reassigned: int
    already_merged: bool = False


class CurrentBookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    reserve_id: Optional[str] = None
    reserved_date: Optional[date] = None
    reserved_time: Optional[time] = None
    status: Optional[BookingStatus] = None
