from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinic_booking.db.session import get_db
from clinic_booking.deps import get_current_user, require_admin
from clinic_booking.models.user import User
from clinic_booking.schemas.schedule import ClinicScheduleOut, ClinicScheduleUpdate
from clinic_booking.services.schedule import load_schedule, replace_schedule

router = APIRouter(prefix="/settings", tags=["settings"])


def _schedule_out(db: Session, stranded: list[str] | None = None) -> ClinicScheduleOut:
    schedule = load_schedule(db)
    db.commit()
    return ClinicScheduleOut.model_validate(
        {
            "hours": schedule.hours,
            "closures": schedule.closures,
            "overrides": schedule.overrides,
            "stranded_reserve_ids": stranded or [],
        },
        from_attributes=True,
    )


@router.get("/schedule", response_model=ClinicScheduleOut)
def get_schedule(
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return _schedule_out(db)


@router.put("/schedule", response_model=ClinicScheduleOut)
def update_schedule(
    payload: ClinicScheduleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    stranded = replace_schedule(db, payload, actor=user)
    return _schedule_out(db, stranded)
