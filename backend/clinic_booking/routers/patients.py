from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from clinic_booking.db.session import get_db
from clinic_booking.deps import get_current_user, require_admin, require_staff
from clinic_booking.models.user import User
from clinic_booking.schemas.patient import (
    CurrentBookingOut,
    MergeOut,
    MergeRequest,
    MessagingIdentityLink,
    PatientCreate,
    PatientOut,
)
from clinic_booking.services.identity import (
    canonical_patient,
    create_patient,
    link_messaging_identity,
    merge_identities,
    resolve_identity,
)
from clinic_booking.services.projection import get_projection

router = APIRouter(prefix="/patients", tags=["patients"])
identity_router = APIRouter(prefix="/identities", tags=["patients"])


@router.post("", response_model=PatientOut, status_code=status.HTTP_201_CREATED)
def register_patient(
    payload: PatientCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
):
    return create_patient(db, actor=user, **payload.model_dump())


@router.post("/merge", response_model=MergeOut)
def merge_patients(
    payload: MergeRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    result = merge_identities(db, payload.primary_id, payload.duplicate_id, actor=user)
    return MergeOut(
        primary_patient_id=result.primary_patient_id,
        duplicate_patient_id=result.duplicate_patient_id,
        rows_reassigned=result.rows_reassigned,
        already_merged=result.already_merged,
    )


@router.get("/{patient_id}", response_model=PatientOut)
def get_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return canonical_patient(db, patient_id)


@router.get("/{patient_id}/current-booking", response_model=CurrentBookingOut)
def get_current_booking(
    patient_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    patient = canonical_patient(db, patient_id)
    projection = get_projection(db, patient.patient_id)
    if projection is None:
        return CurrentBookingOut(patient_id=patient.patient_id)
    return projection


@router.post("/{patient_id}/messaging-identity", response_model=PatientOut)
def link_identity(
    patient_id: str,
    payload: MessagingIdentityLink,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return link_messaging_identity(db, patient_id, payload.messaging_uid, actor=user)


@identity_router.get("/{messaging_uid}", response_model=PatientOut)
def resolve_messaging_identity(
    messaging_uid: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return resolve_identity(db, messaging_uid)


@identity_router.post("/{messaging_uid}/resolve", response_model=PatientOut)
def merge_messaging_identity(
    messaging_uid: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_staff),
):
    return resolve_identity(db, messaging_uid, actor=user, merge=True)
