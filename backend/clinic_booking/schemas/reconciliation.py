from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from clinic_booking.models.reconciliation import FindingStatus, RunState


class ReconciliationRequest(BaseModel):
    apply: bool = True


class FindingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    run_id: Optional[int] = None
    entity_type: str
    entity_id: str
    divergence_kind: str
    action_taken: str
    status: Optional[FindingStatus] = None
    detail_json: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class ReportFinding(BaseModel):
    entity_type: str
    entity_id: str
    divergence_kind: str
    action_taken: str


class ReconciliationRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    state: RunState
    triggered_by: str
    dry_run: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    findings_count: int
    errors_count: int
    summary_json: Optional[dict[str, Any]] = None


class ReconciliationReportOut(BaseModel):
    run_id: int
    state: RunState
    dry_run: bool
    errors: int
    findings: list[ReportFinding]
    summary: dict[str, Any]
