from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.db.session import get_db, get_session_factory
from clinic_booking.deps import get_ledger_client, require_staff
from clinic_booking.models.reconciliation import FindingStatus, ReconciliationFinding, ReconciliationRun
from clinic_booking.models.user import User
from clinic_booking.schemas.reconciliation import (
    FindingOut,
    ReconciliationReportOut,
    ReconciliationRequest,
    ReconciliationRunOut,
    ReportFinding,
)
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.ledger_sync import drain_outbox
from clinic_booking.services.reconciliation.engine import run_reconciliation

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/runs", response_model=ReconciliationReportOut, status_code=status.HTTP_201_CREATED)
async def start_run(
    background_tasks: BackgroundTasks,
    payload: ReconciliationRequest | None = None,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    ledger: LedgerClient | None = Depends(get_ledger_client),
    user: User = Depends(require_staff),
):
    apply = payload.apply if payload else True
    report = await run_reconciliation(
        session_factory,
        ledger,
        triggered_by=user.actor_label,
        apply=apply,
    )
    if apply and ledger is not None:
        background_tasks.add_task(drain_outbox, session_factory, ledger)
    return ReconciliationReportOut(
        run_id=report.run_id,
        state=report.state,
        dry_run=report.dry_run,
        errors=report.errors,
        findings=[
            ReportFinding(
                entity_type=f.entity_type,
                entity_id=f.entity_id,
                divergence_kind=f.divergence_kind,
                action_taken=f.action_taken,
            )
            for f in report.findings
        ],
        summary=report.summary,
    )


@router.get("/runs", response_model=list[ReconciliationRunOut])
def list_runs(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    _user: User = Depends(require_staff),
):
    return list(db.scalars(select(ReconciliationRun).order_by(ReconciliationRun.id.desc()).limit(limit)))


@router.get("/runs/{run_id}", response_model=ReconciliationRunOut)
def get_run(
    run_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(require_staff),
):
    run = db.get(ReconciliationRun, run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reconciliation run not found")
    return run


@router.get("/runs/{run_id}/findings", response_model=list[FindingOut])
def list_run_findings(
    run_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(require_staff),
):
    return list(
        db.scalars(
            select(ReconciliationFinding)
            .where(ReconciliationFinding.run_id == run_id)
            .order_by(ReconciliationFinding.id)
        )
    )


@router.get("/findings", response_model=list[FindingOut])
def list_findings(
    status_filter: FindingStatus | None = Query(default=None, alias="status"),
    kind: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    _user: User = Depends(require_staff),
):
    stmt = select(ReconciliationFinding).order_by(ReconciliationFinding.id.desc()).limit(limit)
    if status_filter is not None:
        stmt = stmt.where(ReconciliationFinding.status == status_filter)
    if kind:
        stmt = stmt.where(ReconciliationFinding.divergence_kind == kind)
    return list(db.scalars(stmt))
