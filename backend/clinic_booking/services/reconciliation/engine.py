"""Reconciliation run: scan, compare, repair, report.

A run holds the reconciliation lease for its whole life. Reads happen in one
snapshot session that is closed before any repair starts; each repair is its
own short transaction that re-checks the divergence under the row lock it
needs. A failure while repairing one entity is recorded against the run and
the remaining entities are still processed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.core.errors import (
    IdentityConflict,
    LedgerSyncError,
    PatientNotFound,
    ReferentialIntegrityViolation,
)
from clinic_booking.core.settings import settings
from clinic_booking.models.booking import Booking
from clinic_booking.models.reconciliation import (
    FindingStatus,
    ReconciliationFinding,
    ReconciliationRun,
    RunState,
)
from clinic_booking.schemas.ledger import LedgerEntry
from clinic_booking.services.audit import log_event
from clinic_booking.services.identity import detach_placeholder_identity, get_patient, merge_identities
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.ledger_sync import enqueue_ledger_sync, has_pending_sync
from clinic_booking.services.projection import (
    active_booking_for,
    get_projection,
    matches_booking,
    refresh_projection,
)
from clinic_booking.services.reconciliation import checks
from clinic_booking.services.reconciliation.checks import Divergence
from clinic_booking.services.reconciliation.lease import acquire_lease, release_lease
from clinic_booking.services.schedule import load_schedule
from clinic_booking.services.transactions import run_in_transaction

logger = logging.getLogger("clinic_booking.reconciliation")

RECONCILER_ACTOR = "reconciler"
REPAIR_FAILED = "repair_failed"


@dataclass
class FindingRecord:
    entity_type: str
    entity_id: str
    divergence_kind: str
    action_taken: str
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        divergence: Divergence,
        *,
        kind: str | None = None,
        action: str | None = None,
        **extra: Any,
    ) -> "FindingRecord":
        return cls(
            entity_type=divergence.entity_type,
            entity_id=divergence.entity_id,
            divergence_kind=kind or divergence.kind,
            action_taken=action or divergence.action,
            detail={**divergence.detail, **extra},
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "divergence_kind": self.divergence_kind,
            "action_taken": self.action_taken,
            "detail": self.detail,
        }


@dataclass
class ReconciliationReport:
    run_id: int
    dry_run: bool
    state: RunState = RunState.scanning
    findings: list[FindingRecord] = field(default_factory=list)
    errors: int = 0
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.findings


@dataclass
class _Scan:
    divergences: list[Divergence]
    checked_kinds: set[str]
    ledger_skipped_pending: int


class _NothingToRepair(Exception):
    """The divergence was gone by the time the repair took its lock."""


def ledger_window(today: date | None = None) -> tuple[date, date]:
    if today is None:
        today = datetime.now(ZoneInfo(settings.clinic_timezone)).date()
    return (
        today - timedelta(days=settings.reconcile_lookback_days),
        today + timedelta(days=settings.reconcile_horizon_days),
    )


def _snapshot_session(session_factory: sessionmaker[Session]) -> Session:
    db = session_factory()
    if db.get_bind().dialect.name == "postgresql":
        db.connection(execution_options={"isolation_level": "REPEATABLE READ"})
    return db


def _create_run(session_factory: sessionmaker[Session], triggered_by: str, dry_run: bool) -> int:
    with session_factory() as db:
        run = ReconciliationRun(triggered_by=triggered_by, dry_run=dry_run, state=RunState.scanning)
        db.add(run)
        db.commit()
        return run.id


def _set_state(session_factory: sessionmaker[Session], run_id: int, state: RunState) -> None:
    with session_factory() as db:
        run = db.get(ReconciliationRun, run_id)
        run.state = state
        db.commit()
    logger.debug("Reconciliation run %s -> %s", run_id, state.value)


def _scan(
    session_factory: sessionmaker[Session],
    ledger_entries: list[LedgerEntry] | None,
    window: tuple[date, date],
) -> _Scan:
    db = _snapshot_session(session_factory)
    try:
        schedule = load_schedule(db)
        divergences = checks.check_projections(db)
        divergences += checks.check_capacity(db, schedule)
        kinds = {
            checks.BOOKING_MISSING,
            checks.BOOKING_CANCELED,
            checks.OWNER_MISMATCH,
            checks.SLOT_MISMATCH,
            checks.STATUS_MISMATCH,
            checks.PROJECTION_MISSING,
            checks.OVER_CAPACITY,
            checks.IDENTITY_DUPLICATE,
            checks.IDENTITY_CONFLICT,
            checks.PLACEHOLDER_IDENTITY,
        }
        skipped = 0
        if ledger_entries is not None:
            ledger_found, skipped = checks.check_ledger(db, ledger_entries, window[0], window[1])
            divergences += ledger_found
            kinds |= {checks.LEDGER_MISSING, checks.LEDGER_STALE, checks.LEDGER_ORPHAN}
        divergences += checks.check_identities(db)
        return _Scan(divergences=divergences, checked_kinds=kinds, ledger_skipped_pending=skipped)
    finally:
        db.rollback()
        db.close()


def _open_findings(db: Session) -> dict[tuple[str, str, str], list[ReconciliationFinding]]:
    rows = db.scalars(
        select(ReconciliationFinding)
        .join(ReconciliationRun, ReconciliationRun.id == ReconciliationFinding.run_id)
        .where(
            ReconciliationFinding.status == FindingStatus.open,
            ReconciliationRun.dry_run.is_(False),
        )
    )
    grouped: dict[tuple[str, str, str], list[ReconciliationFinding]] = {}
    for row in rows:
        grouped.setdefault((row.entity_type, row.entity_id, row.divergence_kind), []).append(row)
    return grouped


def _repair_projection(db: Session, divergence: Divergence) -> str:
    patient_id = divergence.entity_id
    if get_patient(db, patient_id, for_update=True) is None:
        raise ReferentialIntegrityViolation(f"Projection references missing patient {patient_id}.")
    projection = get_projection(db, patient_id, for_update=True)
    active = active_booking_for(db, patient_id)
    if active is None and (projection is None or projection.is_empty):
        raise _NothingToRepair()
    if active is not None and projection is not None and matches_booking(projection, active):
        raise _NothingToRepair()
    before = None
    if projection is not None:
        before = {
            "reserve_id": projection.reserve_id,
            "reserved_date": projection.reserved_date.isoformat() if projection.reserved_date else None,
            "reserved_time": (
                projection.reserved_time.strftime("%H:%M") if projection.reserved_time else None
            ),
            "status": projection.status.value if projection.status else None,
        }
    refresh_projection(db, patient_id)
    db.flush()
    log_event(
        db,
        actor=RECONCILER_ACTOR,
        action="projection.repaired",
        entity_type="projection",
        entity_id=patient_id,
        before_data=before,
        after_data={"reserve_id": active.reserve_id if active else None, "kind": divergence.kind},
    )
    return checks.PROJECTION_OVERWRITTEN if active is not None else checks.PROJECTION_CLEARED


def _repair_ledger(db: Session, divergence: Divergence) -> str:
    reserve_id = divergence.entity_id
    booking = db.scalar(select(Booking).where(Booking.reserve_id == reserve_id))
    if booking is None:
        raise ReferentialIntegrityViolation(f"Booking {reserve_id} disappeared during reconciliation.")
    if has_pending_sync(db, reserve_id):
        raise _NothingToRepair()
    enqueue_ledger_sync(db, reserve_id, reason=divergence.kind)
    return checks.SYNC_ENQUEUED


def _apply_repair(session_factory: sessionmaker[Session], divergence: Divergence) -> str:
    if divergence.kind == checks.IDENTITY_DUPLICATE:
        primary = divergence.detail["primary"]
        with session_factory() as db:
            for duplicate in divergence.detail["duplicates"]:
                merge_identities(db, primary, duplicate, actor=RECONCILER_ACTOR)
        return checks.IDENTITY_MERGED

    if divergence.kind == checks.PLACEHOLDER_IDENTITY:
        with session_factory() as db:
            detached = detach_placeholder_identity(
                db, divergence.entity_id, divergence.detail["messaging_uid"], actor=RECONCILER_ACTOR
            )
        if not detached:
            raise _NothingToRepair()
        return checks.IDENTITY_DETACHED

    if divergence.entity_type == "projection":
        handler = _repair_projection
    elif divergence.kind in {checks.LEDGER_MISSING, checks.LEDGER_STALE}:
        handler = _repair_ledger
    else:
        raise ValueError(f"no repair for {divergence.kind}")
    with session_factory() as db:
        return run_in_transaction(db, lambda s: handler(s, divergence), operation=f"repair_{divergence.kind}")


def _reconcile_sync(
    session_factory: sessionmaker[Session],
    run_id: int,
    ledger_entries: list[LedgerEntry] | None,
    window: tuple[date, date],
    *,
    apply: bool,
    ledger_status: str,
) -> ReconciliationReport:
    report = ReconciliationReport(run_id=run_id, dry_run=not apply)
    scan = _scan(session_factory, ledger_entries, window)

    _set_state(session_factory, run_id, RunState.comparing)
    report.state = RunState.comparing
    with session_factory() as db:
        open_findings = _open_findings(db)
    current_keys = {d.key for d in scan.divergences}

    to_report: list[Divergence] = []
    to_repair: list[Divergence] = []
    for divergence in scan.divergences:
        if divergence.kind in checks.REPORT_ONLY_KINDS:
            if divergence.key not in open_findings:
                to_report.append(divergence)
        else:
            to_repair.append(divergence)

    _set_state(session_factory, run_id, RunState.repairing)
    report.state = RunState.repairing
    records: list[tuple[FindingRecord, FindingStatus]] = []
    for divergence in to_report:
        records.append((FindingRecord.of(divergence), FindingStatus.open))
    repaired_keys: set[tuple[str, str, str]] = set()
    for divergence in to_repair:
        if not apply:
            records.append((FindingRecord.of(divergence), FindingStatus.open))
            continue
        try:
            action = _apply_repair(session_factory, divergence)
        except _NothingToRepair:
            logger.debug("Divergence %s resolved before repair", divergence.key)
            repaired_keys.add(divergence.key)
            continue
        except (IdentityConflict, PatientNotFound) as exc:
            kind = divergence.kind
            if kind == checks.IDENTITY_DUPLICATE:
                kind = checks.IDENTITY_CONFLICT
            logger.warning("Repair of %s refused: %s", divergence.key, exc.detail)
            conflict_key = (divergence.entity_type, divergence.entity_id, kind)
            if conflict_key not in open_findings:
                record = FindingRecord.of(divergence, kind=kind, action=checks.REPORTED, reason=exc.detail)
                records.append((record, FindingStatus.open))
            current_keys.add(conflict_key)
            continue
        except ReferentialIntegrityViolation as exc:
            logger.warning("Repair of %s needs review: %s", divergence.key, exc.detail)
            if divergence.key not in open_findings:
                record = FindingRecord.of(divergence, action=checks.REPORTED, reason=exc.detail)
                records.append((record, FindingStatus.open))
            continue
        except Exception as exc:
            logger.exception("Repair failed for %s", divergence.key, extra={"run_id": run_id})
            report.errors += 1
            record = FindingRecord.of(divergence, action=REPAIR_FAILED, error=str(exc))
            records.append((record, FindingStatus.open))
            continue
        repaired_keys.add(divergence.key)
        records.append((FindingRecord.of(divergence, action=action), FindingStatus.resolved))

    report.findings = [record for record, _status in records]
    report.summary = {
        "window": [window[0].isoformat(), window[1].isoformat()],
        "ledger": ledger_status,
        "divergences": len(scan.divergences),
        "already_open": len([d for d in scan.divergences if d.key in open_findings]),
        "ledger_skipped_pending_sync": scan.ledger_skipped_pending,
        "by_kind": _count_by_kind(report.findings),
    }

    now = datetime.now(timezone.utc)
    with session_factory() as db:
        run = db.get(ReconciliationRun, run_id)
        if apply:
            for record, status in records:
                db.add(
                    ReconciliationFinding(
                        run_id=run_id,
                        entity_type=record.entity_type,
                        entity_id=record.entity_id,
                        divergence_kind=record.divergence_kind,
                        action_taken=record.action_taken,
                        status=status,
                        detail_json=record.detail,
                        resolved_at=now if status == FindingStatus.resolved else None,
                    )
                )
            resolved = 0
            for key, rows in open_findings.items():
                if key[2] not in scan.checked_kinds:
                    continue
                if key in current_keys and key not in repaired_keys:
                    continue
                if key[2] == checks.LEDGER_ORPHAN and not _in_window(rows, window):
                    continue
                for row in db.scalars(
                    select(ReconciliationFinding).where(ReconciliationFinding.id.in_([r.id for r in rows]))
                ):
                    row.status = FindingStatus.resolved
                    row.resolved_at = now
                    resolved += 1
            report.summary["resolved_previous"] = resolved
        else:
            report.summary["findings"] = [record.as_dict() for record in report.findings]
        run.state = RunState.reported
        run.finished_at = now
        run.findings_count = len(report.findings)
        run.errors_count = report.errors
        run.summary_json = report.summary
        db.commit()
    report.state = RunState.reported
    return report


def _in_window(rows: list[ReconciliationFinding], window: tuple[date, date]) -> bool:
    for row in rows:
        entry_date = ((row.detail_json or {}).get("ledger") or {}).get("date")
        if not entry_date:
            return True
        try:
            if not window[0] <= date.fromisoformat(entry_date) <= window[1]:
                return False
        except ValueError:
            return True
    return True


def _count_by_kind(records: list[FindingRecord]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in records:
        counts[record.divergence_kind] = counts.get(record.divergence_kind, 0) + 1
    return counts


async def run_reconciliation(
    session_factory: sessionmaker[Session],
    ledger: LedgerClient | None,
    *,
    triggered_by: str,
    apply: bool = True,
    today: date | None = None,
) -> ReconciliationReport:
    """Run one reconciliation pass under the lease.

    Raises ``ReconciliationInProgress`` when another run holds the lease.
    """
    token = await asyncio.to_thread(acquire_lease, session_factory)
    try:
        run_id = await asyncio.to_thread(_create_run, session_factory, triggered_by, not apply)
        window = ledger_window(today)
        ledger_entries: list[LedgerEntry] | None = None
        if ledger is None:
            ledger_status = "not_configured"
        else:
            try:
                ledger_entries = await ledger.fetch_snapshot(*window)
                ledger_status = "ok"
            except LedgerSyncError as exc:
                logger.warning("Ledger snapshot unavailable; skipping ledger check: %s", exc)
                ledger_status = "unavailable"
        report = await asyncio.to_thread(
            _reconcile_sync,
            session_factory,
            run_id,
            ledger_entries,
            window,
            apply=apply,
            ledger_status=ledger_status,
        )
    finally:
        await asyncio.to_thread(release_lease, session_factory, token)
    logger.info(
        "Reconciliation run %s reported %s finding(s)",
        report.run_id,
        len(report.findings),
        extra={"run_id": report.run_id, "errors": report.errors, "dry_run": report.dry_run},
    )
    return report
