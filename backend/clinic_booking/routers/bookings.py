from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.db.session import get_db, get_session_factory
from clinic_booking.deps import get_current_user, get_ledger_client
from clinic_booking.models.booking import Booking
from clinic_booking.models.user import User
from clinic_booking.schemas.booking import BookingCancel, BookingCreate, BookingOut, BookingReschedule
from clinic_booking.services.bookings import (
    cancel_booking,
    confirm_booking,
    create_booking,
    get_booking,
    reschedule_booking,
)
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.ledger_sync import sync_to_ledger

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _hand_off(
    background_tasks: BackgroundTasks,
    session_factory: sessionmaker[Session],
    ledger: LedgerClient | None,
    booking: Booking,
) -> None:
    if ledger is not None:
        background_tasks.add_task(sync_to_ledger, session_factory, ledger, booking.reserve_id)


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def book_slot(
    payload: BookingCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    ledger: LedgerClient | None = Depends(get_ledger_client),
    user: User = Depends(get_current_user),
):
    booking = create_booking(
        db,
        payload.patient_id,
        payload.date,
        payload.time,
        actor=user,
        allow_outside_hours=payload.allow_outside_hours,
    )
    _hand_off(background_tasks, session_factory, ledger, booking)
    return booking


@router.get("/{reserve_id}", response_model=BookingOut)
def read_booking(
    reserve_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return get_booking(db, reserve_id)


@router.post("/{reserve_id}/cancel", response_model=BookingOut)
def cancel(
    reserve_id: str,
    background_tasks: BackgroundTasks,
    payload: BookingCancel | None = None,
    db: Session = Depends(get_db),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    ledger: LedgerClient | None = Depends(get_ledger_client),
    user: User = Depends(get_current_user),
):
    reason = payload.reason if payload else None
    booking = cancel_booking(db, reserve_id, actor=user, reason=reason)
    _hand_off(background_tasks, session_factory, ledger, booking)
    return booking


@router.post("/{reserve_id}/reschedule", response_model=BookingOut)
def reschedule(
    reserve_id: str,
    payload: BookingReschedule,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    ledger: LedgerClient | None = Depends(get_ledger_client),
    user: User = Depends(get_current_user),
):
    booking = reschedule_booking(
        db,
        reserve_id,
        payload.date,
        payload.time,
        actor=user,
        allow_outside_hours=payload.allow_outside_hours,
    )
    _hand_off(background_tasks, session_factory, ledger, booking)
    return booking


@router.post("/{reserve_id}/confirm", response_model=BookingOut)
def confirm(
    reserve_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    ledger: LedgerClient | None = Depends(get_ledger_client),
    user: User = Depends(get_current_user),
):
    booking = confirm_booking(db, reserve_id, actor=user)
    _hand_off(background_tasks, session_factory, ledger, booking)
    return booking
