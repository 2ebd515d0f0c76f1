"""Read-only divergence checks.

Each check takes a session positioned on a consistent snapshot and returns the
divergences it sees. Nothing here writes; repairs live in the engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinic_booking.core.errors import IdentityConflict
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingSlot
from clinic_booking.models.ledger_sync import LedgerSyncState, LedgerSyncTask
from clinic_booking.models.patient import Patient
from clinic_booking.models.projection import PatientProjection
from clinic_booking.schemas.ledger import LedgerEntry
from clinic_booking.services.identity import choose_primary, is_placeholder_patient_id
from clinic_booking.services.schedule import ClinicSchedule, slot_capacity

# divergence kinds
BOOKING_MISSING = "booking_missing"
BOOKING_CANCELED = "booking_canceled"
OWNER_MISMATCH = "owner_mismatch"
SLOT_MISMATCH = "slot_mismatch"
STATUS_MISMATCH = "status_mismatch"
PROJECTION_MISSING = "projection_missing"
OVER_CAPACITY = "over_capacity"
LEDGER_MISSING = "ledger_missing"
LEDGER_STALE = "ledger_stale"
LEDGER_ORPHAN = "ledger_orphan"
IDENTITY_DUPLICATE = "identity_duplicate"
IDENTITY_CONFLICT = "identity_conflict"
PLACEHOLDER_IDENTITY = "placeholder_identity"

# actions
PROJECTION_CLEARED = "projection_cleared"
PROJECTION_OVERWRITTEN = "projection_overwritten"
SYNC_ENQUEUED = "sync_enqueued"
FLAGGED_FOR_REVIEW = "flagged_for_review"
IDENTITY_MERGED = "identity_merged"
IDENTITY_DETACHED = "identity_detached"
REPORTED = "reported"

REPORT_ONLY_KINDS = frozenset({OVER_CAPACITY, LEDGER_ORPHAN, IDENTITY_CONFLICT})


@dataclass(frozen=True)
class Divergence:
    entity_type: str
    entity_id: str
    kind: str
    action: str
    detail: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.entity_type, self.entity_id, self.kind)


def slot_key(slot_date: date, slot_time: time) -> str:
    return f"{slot_date.isoformat()}T{slot_time.strftime('%H:%M')}"


def check_projections(db: Session) -> list[Divergence]:
    active_by_patient = {
        b.patient_id: b
        for b in db.scalars(select(Booking).where(Booking.status.in_(ACTIVE_STATUSES)))
    }
    projections = list(db.scalars(select(PatientProjection)))
    reserve_ids = [p.reserve_id for p in projections if p.reserve_id]
    bookings = {
        b.reserve_id: b
        for b in db.scalars(select(Booking).where(Booking.reserve_id.in_(reserve_ids)))
    } if reserve_ids else {}

    found: list[Divergence] = []
    seen: set[str] = set()
    for projection in projections:
        seen.add(projection.patient_id)
        if projection.reserve_id is None:
            continue
        booking = bookings.get(projection.reserve_id)
        kind = None
        if booking is None:
            kind = BOOKING_MISSING
        elif not booking.is_active:
            kind = BOOKING_CANCELED
        elif booking.patient_id != projection.patient_id:
            kind = OWNER_MISMATCH
        elif booking.slot_date != projection.reserved_date or booking.slot_time != projection.reserved_time:
            kind = SLOT_MISMATCH
        elif booking.status != projection.status:
            kind = STATUS_MISMATCH
        if kind is None:
            continue
        replacement = active_by_patient.get(projection.patient_id)
        found.append(
            Divergence(
                entity_type="projection",
                entity_id=projection.patient_id,
                kind=kind,
                action=PROJECTION_OVERWRITTEN if replacement is not None else PROJECTION_CLEARED,
                detail={
                    "reserve_id": projection.reserve_id,
                    "replacement_reserve_id": replacement.reserve_id if replacement else None,
                },
            )
        )

    by_patient = {p.patient_id: p for p in projections}
    for patient_id, booking in active_by_patient.items():
        projection = by_patient.get(patient_id)
        if projection is not None and projection.reserve_id is not None:
            continue
        found.append(
            Divergence(
                entity_type="projection",
                entity_id=patient_id,
                kind=PROJECTION_MISSING,
                action=PROJECTION_OVERWRITTEN,
                detail={"replacement_reserve_id": booking.reserve_id},
            )
        )
    return found


def check_capacity(db: Session, schedule: ClinicSchedule) -> list[Divergence]:
    crowded = db.execute(
        select(Booking.slot_date, Booking.slot_time, func.count(Booking.id).label("active"))
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .group_by(Booking.slot_date, Booking.slot_time)
        .having(func.count(Booking.id) > 1)
    ).all()
    found: list[Divergence] = []
    for row in crowded:
        slot = db.get(BookingSlot, (row.slot_date, row.slot_time))
        capacity = slot_capacity(slot, row.slot_date, schedule)
        if row.active <= capacity:
            continue
        reserve_ids = list(
            db.scalars(
                select(Booking.reserve_id)
                .where(
                    Booking.slot_date == row.slot_date,
                    Booking.slot_time == row.slot_time,
                    Booking.status.in_(ACTIVE_STATUSES),
                )
                .order_by(Booking.created_at, Booking.id)
            )
        )
        found.append(
            Divergence(
                entity_type="slot",
                entity_id=slot_key(row.slot_date, row.slot_time),
                kind=OVER_CAPACITY,
                action=REPORTED,
                detail={"capacity": capacity, "active": row.active, "reserve_ids": reserve_ids},
            )
        )
    return found


def check_ledger(
    db: Session,
    ledger_entries: list[LedgerEntry],
    start: date,
    end: date,
) -> tuple[list[Divergence], int]:
    """Compare bookings dated in ``[start, end]`` with the ledger snapshot.

    Returns the divergences and the number skipped because a push is already
    pending for that booking.
    """
    ledger = {entry.reserve_id: entry for entry in ledger_entries}
    pending = set(
        db.scalars(
            select(LedgerSyncTask.reserve_id).where(LedgerSyncTask.state == LedgerSyncState.pending)
        )
    )
    found: list[Divergence] = []
    skipped = 0
    in_window = db.scalars(
        select(Booking)
        .where(Booking.slot_date >= start, Booking.slot_date <= end)
        .order_by(Booking.slot_date, Booking.slot_time, Booking.id)
    )
    for booking in in_window:
        ours = LedgerEntry.from_booking(booking)
        theirs = ledger.get(booking.reserve_id)
        if theirs is None:
            kind = LEDGER_MISSING
        elif theirs.differs_from(ours):
            kind = LEDGER_STALE
        else:
            continue
        if booking.reserve_id in pending:
            skipped += 1
            continue
        detail: dict[str, Any] = {"expected": ours.to_payload()}
        if theirs is not None:
            detail["ledger"] = theirs.to_payload()
        found.append(
            Divergence(
                entity_type="booking",
                entity_id=booking.reserve_id,
                kind=kind,
                action=SYNC_ENQUEUED,
                detail=detail,
            )
        )

    unknown = [reserve_id for reserve_id in ledger if reserve_id]
    known = set()
    if unknown:
        known = set(db.scalars(select(Booking.reserve_id).where(Booking.reserve_id.in_(unknown))))
    for reserve_id in unknown:
        if reserve_id in known:
            continue
        found.append(
            Divergence(
                entity_type="ledger_entry",
                entity_id=reserve_id,
                kind=LEDGER_ORPHAN,
                action=FLAGGED_FOR_REVIEW,
                detail={"ledger": ledger[reserve_id].to_payload()},
            )
        )
    return found, skipped


def check_identities(db: Session) -> list[Divergence]:
    """Find messaging uids carried by more than one live patient.

    A placeholder sharing a uid with a real patient is a stale link on the
    placeholder and gets its own divergence; it never takes part in a merge.
    """
    shared = db.execute(
        select(Patient.messaging_uid)
        .where(Patient.messaging_uid.is_not(None), Patient.merged_into_patient_id.is_(None))
        .group_by(Patient.messaging_uid)
        .having(func.count(Patient.id) > 1)
    ).scalars().all()
    found: list[Divergence] = []
    for messaging_uid in shared:
        holders = list(
            db.scalars(
                select(Patient)
                .where(Patient.messaging_uid == messaging_uid, Patient.merged_into_patient_id.is_(None))
                .order_by(Patient.id)
            )
        )
        real = [p for p in holders if not is_placeholder_patient_id(p.patient_id)]
        if real:
            for placeholder in holders:
                if placeholder in real:
                    continue
                found.append(
                    Divergence(
                        entity_type="patient",
                        entity_id=placeholder.patient_id,
                        kind=PLACEHOLDER_IDENTITY,
                        action=IDENTITY_DETACHED,
                        detail={
                            "messaging_uid": messaging_uid,
                            "patient_ids": [p.patient_id for p in real],
                        },
                    )
                )
            candidates = real
        else:
            candidates = holders
        if len(candidates) < 2:
            continue
        patient_ids = [p.patient_id for p in candidates]
        try:
            primary = choose_primary(db, candidates)
        except IdentityConflict as exc:
            found.append(
                Divergence(
                    entity_type="messaging_identity",
                    entity_id=messaging_uid,
                    kind=IDENTITY_CONFLICT,
                    action=REPORTED,
                    detail={"patient_ids": patient_ids, "reason": exc.detail},
                )
            )
            continue
        found.append(
            Divergence(
                entity_type="messaging_identity",
                entity_id=messaging_uid,
                kind=IDENTITY_DUPLICATE,
                action=IDENTITY_MERGED,
                detail={
                    "primary": primary.patient_id,
                    "duplicates": [pid for pid in patient_ids if pid != primary.patient_id],
                },
            )
        )
    return found
