from __future__ import annotations

import re
import datetime as dt
from datetime import date, datetime, time
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from clinic_booking.models.booking import Booking, BookingStatus

_STATUS_ALIASES = {
    "": BookingStatus.pending.value,
    "cancelled": BookingStatus.canceled.value,
    "cancel": BookingStatus.canceled.value,
    "キャンセル": BookingStatus.canceled.value,
}

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2}(?:\.\d+)?)?$")


def normalize_ledger_time(value: Any) -> str:
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text_value = str(value or "").strip()
    match = _TIME_RE.match(text_value)
    if not match:
        raise ValueError(f"unrecognised ledger time {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    return f"{hour:02d}:{minute:02d}"


def normalize_ledger_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text_value = str(value or "").strip().replace("/", "-")
    return date.fromisoformat(text_value[:10])


class LedgerEntry(BaseModel):
    """Flat record exchanged with the external ledger service."""

    model_config = ConfigDict(frozen=True)

    reserve_id: str
    patient_id: str
    date: dt.date
    time: str
    status: BookingStatus

    @field_validator("reserve_id", "patient_id", mode="before")
    @classmethod
    def _strip(cls, value):
        return str(value or "").strip()

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return normalize_ledger_date(value)

    @field_validator("time", mode="before")
    @classmethod
    def _parse_time(cls, value):
        return normalize_ledger_time(value)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        if isinstance(value, BookingStatus):
            return value
        lowered = str(value or "").strip().lower()
        return _STATUS_ALIASES.get(lowered, lowered)

    @classmethod
    def from_booking(cls, booking: Booking) -> "LedgerEntry":
        return cls(
            reserve_id=booking.reserve_id,
            patient_id=booking.patient_id,
            date=booking.slot_date,
            time=booking.slot_time,
            status=booking.status,
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "reserve_id": self.reserve_id,
            "patient_id": self.patient_id,
            "date": self.date.isoformat(),
            "time": self.time,
            "status": self.status.value,
        }

    def differs_from(self, other: "LedgerEntry") -> bool:
        return (self.patient_id, self.date, self.time, self.status) != (
            other.patient_id,
            other.date,
            other.time,
            other.status,
        )
