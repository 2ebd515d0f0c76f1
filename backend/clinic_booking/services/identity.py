from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from clinic_booking.core.errors import IdentityConflict, PatientNotFound
from clinic_booking.core.settings import settings
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking
from clinic_booking.models.patient import Order, Patient, PatientMessage
from clinic_booking.models.user import User
from clinic_booking.services.audit import log_event, snapshot_model
from clinic_booking.services.ledger_sync import enqueue_ledger_sync
from clinic_booking.services.projection import get_projection, refresh_projection
from clinic_booking.services.transactions import run_in_transaction

logger = logging.getLogger("clinic_booking.identity")

MERGEABLE_FIELDS = ("name", "phone", "email")
MAX_MERGE_CHAIN = 32


@dataclass(frozen=True)
class MergeResult:
    primary_patient_id: str
    duplicate_patient_id: str
    rows_reassigned: int
    already_merged: bool = False


def is_placeholder_patient_id(patient_id: str | None) -> bool:
    if not patient_id:
        return True
    value = patient_id.strip()
    if value in settings.placeholder_ids:
        return True
    return any(value.startswith(prefix) for prefix in settings.placeholder_prefixes)


def _normalize_name(value: str | None) -> str | None:
    if value is None:
        return None
    collapsed = "".join(value.split()).casefold()
    return collapsed or None


def get_patient(db: Session, patient_id: str, *, for_update: bool = False) -> Patient | None:
    stmt = select(Patient).where(Patient.patient_id == patient_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def canonical_patient(db: Session, patient_id: str, *, for_update: bool = False) -> Patient:
    """Follow the merge chain from ``patient_id`` to the live patient."""
    patient = get_patient(db, patient_id, for_update=for_update)
    if patient is None:
        raise PatientNotFound(f"Patient {patient_id} not found.")
    seen = {patient.patient_id}
    while patient.merged_into_patient_id:
        next_id = patient.merged_into_patient_id
        if next_id in seen or len(seen) > MAX_MERGE_CHAIN:
            raise IdentityConflict(f"Merge chain for {patient_id} does not terminate.")
        seen.add(next_id)
        target = get_patient(db, next_id, for_update=for_update)
        if target is None:
            raise PatientNotFound(f"Patient {next_id} (merge target of {patient.patient_id}) not found.")
        patient = target
    return patient


def _new_patient_id() -> str:
    return f"P{uuid4().hex[:12].upper()}"


def create_patient(
    db: Session,
    *,
    actor: User | str | None,
    patient_id: str | None = None,
    name: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    messaging_uid: str | None = None,
) -> Patient:
    patient_id = (patient_id or "").strip() or _new_patient_id()

    def work(session: Session) -> Patient:
        if get_patient(session, patient_id) is not None:
            raise IdentityConflict(f"Patient {patient_id} already exists.")
        if messaging_uid:
            holders = _canonical_holders(session, messaging_uid)
            if holders:
                raise IdentityConflict(
                    f"Messaging identity already linked to {', '.join(p.patient_id for p in holders)}."
                )
        patient = Patient(
            patient_id=patient_id,
            name=name,
            phone=phone,
            email=email,
            messaging_uid=messaging_uid,
        )
        session.add(patient)
        session.flush()
        log_event(
            session,
            actor=actor,
            action="patient.created",
            entity_type="patient",
            entity_id=patient.patient_id,
            after_obj=patient,
        )
        return patient

    return run_in_transaction(db, work, operation="create_patient")


def _canonical_holders(db: Session, messaging_uid: str) -> list[Patient]:
    rows = list(
        db.scalars(
            select(Patient).where(Patient.messaging_uid == messaging_uid).order_by(Patient.id)
        )
    )
    holders: dict[str, Patient] = {}
    for row in rows:
        canonical = canonical_patient(db, row.patient_id)
        holders.setdefault(canonical.patient_id, canonical)
    return list(holders.values())


def _booking_count(db: Session, patient_id: str) -> int:
    return db.scalar(select(func.count(Booking.id)).where(Booking.patient_id == patient_id)) or 0


def choose_primary(db: Session, candidates: list[Patient]) -> Patient:
    """Pick the merge primary among canonical patients sharing an identity.

    Raises ``IdentityConflict`` when the choice is ambiguous: every candidate is
    a placeholder, or the candidates carry different names.
    """
    real = [p for p in candidates if not is_placeholder_patient_id(p.patient_id)]
    if not real:
        raise IdentityConflict("Only placeholder patients carry this identity.")
    names = {_normalize_name(p.name) for p in real} - {None}
    if len(names) > 1:
        raise IdentityConflict(
            "Patients sharing this identity have different names: "
            + ", ".join(sorted(p.patient_id for p in real))
        )

    def rank(patient: Patient):
        created = patient.created_at.timestamp() if patient.created_at else 0.0
        return (-_booking_count(db, patient.patient_id), created, patient.id)

    return sorted(real, key=rank)[0]


def resolve_identity(
    db: Session,
    messaging_uid: str,
    *,
    actor: User | str | None = "system",
    merge: bool = False,
) -> Patient:
    """Return the canonical patient for a messaging uid.

    Placeholder patients are never an answer. Without ``merge`` nothing is
    written and a uid shared by several real patients raises
    ``IdentityConflict``; with ``merge`` the real patients are folded into one
    primary and placeholders holding the uid have it detached.
    """
    messaging_uid = (messaging_uid or "").strip()
    if not messaging_uid:
        raise PatientNotFound("Messaging identity is empty.")
    holders = _canonical_holders(db, messaging_uid)
    if not holders:
        raise PatientNotFound("No patient linked to this messaging identity.")
    real = [p for p in holders if not is_placeholder_patient_id(p.patient_id)]
    if not real:
        raise IdentityConflict(
            "Messaging identity resolves only to placeholder "
            + ", ".join(p.patient_id for p in holders)
            + "."
        )
    if merge:
        for placeholder in holders:
            if is_placeholder_patient_id(placeholder.patient_id):
                detach_placeholder_identity(db, placeholder.patient_id, messaging_uid, actor=actor)
    if len(real) == 1:
        return real[0]
    if not merge:
        raise IdentityConflict(
            "Messaging identity is shared by "
            + ", ".join(sorted(p.patient_id for p in real))
            + "; resolve it with a merge."
        )

    primary = choose_primary(db, real)
    primary_id = primary.patient_id
    logger.info(
        "Merging identities sharing a messaging uid",
        extra={"primary": primary_id, "duplicates": [p.patient_id for p in real if p is not primary]},
    )
    for duplicate in real:
        if duplicate.patient_id == primary_id:
            continue
        merge_identities(db, primary_id, duplicate.patient_id, actor=actor)
    db.expire_all()
    return canonical_patient(db, primary_id)


def detach_placeholder_identity(
    db: Session,
    patient_id: str,
    messaging_uid: str,
    *,
    actor: User | str | None,
) -> bool:
    """Clear ``messaging_uid`` from a placeholder patient.

    The placeholder keeps its own fields and history. Returns False when the
    placeholder no longer carries that uid.
    """
    if not is_placeholder_patient_id(patient_id):
        raise IdentityConflict(f"{patient_id} is not a placeholder; merge it instead.")

    def work(session: Session) -> bool:
        patient = get_patient(session, patient_id, for_update=True)
        if patient is None:
            raise PatientNotFound(f"Patient {patient_id} not found.")
        if patient.messaging_uid != messaging_uid:
            return False
        patient.messaging_uid = None
        session.flush()
        log_event(
            session,
            actor=actor,
            action="patient.identity_detached",
            entity_type="patient",
            entity_id=patient_id,
            before_data={"messaging_uid": messaging_uid},
            after_data={"messaging_uid": None},
        )
        return True

    detached = run_in_transaction(db, work, operation="detach_placeholder_identity")
    if detached:
        logger.warning(
            "Detached messaging identity from placeholder",
            extra={"patient_id": patient_id, "messaging_uid": messaging_uid},
        )
    return detached


def _reassign(db: Session, model, duplicate_id: str, primary_id: str) -> int:
    result = db.execute(
        update(model)
        .where(model.patient_id == duplicate_id)
        .values(patient_id=primary_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _union_fields(primary: Patient, duplicate: Patient) -> dict[str, tuple[str | None, str | None]]:
    changed: dict[str, tuple[str | None, str | None]] = {}
    duplicate_newer = bool(
        duplicate.updated_at
        and primary.updated_at
        and duplicate.updated_at > primary.updated_at
    )
    for field in MERGEABLE_FIELDS:
        ours = getattr(primary, field)
        theirs = getattr(duplicate, field)
        if theirs is None or theirs == ours:
            continue
        if ours is None or duplicate_newer:
            changed[field] = (ours, theirs)
            setattr(primary, field, theirs)
    if primary.messaging_uid is None and duplicate.messaging_uid:
        changed["messaging_uid"] = (None, duplicate.messaging_uid)
        primary.messaging_uid = duplicate.messaging_uid
    return changed


def merge_identities(
    db: Session,
    primary_id: str,
    duplicate_id: str,
    *,
    actor: User | str | None,
) -> MergeResult:
    """Fold ``duplicate_id`` into ``primary_id`` and retire it.

    Bookings, messages, orders and the projection move to the primary. Running
    the same merge again reassigns nothing and returns ``rows_reassigned=0``.
    """
    if primary_id == duplicate_id:
        raise IdentityConflict("Cannot merge a patient into itself.")
    if is_placeholder_patient_id(primary_id):
        raise IdentityConflict(f"Placeholder {primary_id} cannot be a merge primary.")
    if is_placeholder_patient_id(duplicate_id):
        raise IdentityConflict(
            f"Placeholder {duplicate_id} cannot be merged; detach its messaging identity instead."
        )

    def work(session: Session) -> MergeResult:
        # Lock both identities in a stable order.
        locked = {
            p.patient_id: p
            for p in session.scalars(
                select(Patient)
                .where(Patient.patient_id.in_(sorted([primary_id, duplicate_id])))
                .order_by(Patient.patient_id)
                .with_for_update()
            )
        }
        primary = locked.get(primary_id)
        duplicate = locked.get(duplicate_id)
        if primary is None:
            raise PatientNotFound(f"Patient {primary_id} not found.")
        if duplicate is None:
            raise PatientNotFound(f"Patient {duplicate_id} not found.")
        if primary.is_retired:
            raise IdentityConflict(
                f"{primary_id} was merged into {primary.merged_into_patient_id}; merge into the canonical patient."
            )
        already_merged = duplicate.merged_into_patient_id == primary_id
        if duplicate.is_retired and not already_merged:
            raise IdentityConflict(
                f"{duplicate_id} was already merged into {duplicate.merged_into_patient_id}."
            )

        active_counts = dict(
            session.execute(
                select(Booking.patient_id, func.count(Booking.id))
                .where(
                    Booking.patient_id.in_([primary_id, duplicate_id]),
                    Booking.status.in_(ACTIVE_STATUSES),
                )
                .group_by(Booking.patient_id)
            ).all()
        )
        if active_counts.get(primary_id) and active_counts.get(duplicate_id):
            raise IdentityConflict(
                f"Both {primary_id} and {duplicate_id} hold active bookings; cancel one before merging."
            )

        before = snapshot_model(primary)
        moved_reserve_ids = list(
            session.scalars(select(Booking.reserve_id).where(Booking.patient_id == duplicate_id))
        )
        rows = _reassign(session, Booking, duplicate_id, primary_id)
        rows += _reassign(session, PatientMessage, duplicate_id, primary_id)
        rows += _reassign(session, Order, duplicate_id, primary_id)

        duplicate_projection = get_projection(session, duplicate_id, for_update=True)
        if duplicate_projection is not None:
            if duplicate_projection.reserve_id is not None:
                rows += 1
            session.delete(duplicate_projection)
            session.flush()
        if moved_reserve_ids or duplicate_projection is not None:
            refresh_projection(session, primary_id)
        for reserve_id in moved_reserve_ids:
            enqueue_ledger_sync(session, reserve_id, reason="identity_merged")

        if already_merged:
            if rows:
                log_event(
                    session,
                    actor=actor,
                    action="patient.merge_swept",
                    entity_type="patient",
                    entity_id=primary_id,
                    after_data={"duplicate_patient_id": duplicate_id, "rows_reassigned": rows},
                )
            return MergeResult(primary_id, duplicate_id, rows, already_merged=True)

        changed = _union_fields(primary, duplicate)
        duplicate.merged_into_patient_id = primary_id
        duplicate.merged_at = datetime.now(timezone.utc)
        # Keep chains one hop deep.
        session.execute(
            update(Patient)
            .where(Patient.merged_into_patient_id == duplicate_id)
            .values(merged_into_patient_id=primary_id)
            .execution_options(synchronize_session=False)
        )
        session.flush()
        log_event(
            session,
            actor=actor,
            action="patient.merged",
            entity_type="patient",
            entity_id=primary_id,
            before_data=before,
            after_data={
                **(snapshot_model(primary) or {}),
                "duplicate_patient_id": duplicate_id,
                "rows_reassigned": rows,
                "fields_taken": sorted(changed),
            },
        )
        return MergeResult(primary_id, duplicate_id, rows)

    result = run_in_transaction(db, work, operation="merge_identities")
    logger.info(
        "Identity merge applied",
        extra={
            "primary": result.primary_patient_id,
            "duplicate": result.duplicate_patient_id,
            "rows_reassigned": result.rows_reassigned,
        },
    )
    return result


def link_messaging_identity(
    db: Session,
    patient_id: str,
    messaging_uid: str,
    *,
    actor: User | str | None,
) -> Patient:
    messaging_uid = (messaging_uid or "").strip()
    if not messaging_uid:
        raise IdentityConflict("Messaging identity is empty.")
    if is_placeholder_patient_id(patient_id):
        raise IdentityConflict(f"Cannot link a messaging identity to placeholder {patient_id}.")

    def work(session: Session) -> Patient:
        patient = canonical_patient(session, patient_id, for_update=True)
        if is_placeholder_patient_id(patient.patient_id):
            raise IdentityConflict(f"Cannot link a messaging identity to placeholder {patient.patient_id}.")
        if patient.messaging_uid == messaging_uid:
            return patient
        if patient.messaging_uid:
            raise IdentityConflict(
                f"{patient.patient_id} is already linked to a different messaging identity."
            )
        others = [p for p in _canonical_holders(session, messaging_uid) if p.patient_id != patient.patient_id]
        if others:
            raise IdentityConflict(
                "Messaging identity already linked to "
                + ", ".join(p.patient_id for p in others)
                + "; merge the patients explicitly."
            )
        before = snapshot_model(patient)
        patient.messaging_uid = messaging_uid
        session.flush()
        log_event(
            session,
            actor=actor,
            action="patient.identity_linked",
            entity_type="patient",
            entity_id=patient.patient_id,
            before_data=before,
            after_obj=patient,
        )
        return patient

    return run_in_transaction(db, work, operation="link_messaging_identity")
