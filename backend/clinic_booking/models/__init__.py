from clinic_booking.models.base import Base
from clinic_booking.models.user import Role, User
from clinic_booking.models.audit_log import AuditLog
from clinic_booking.models.patient import Order, Patient, PatientMessage
from clinic_booking.models.booking import ACTIVE_STATUSES, Booking, BookingSlot, BookingStatus
from clinic_booking.models.projection import PatientProjection
from clinic_booking.models.clinic_schedule import ClinicClosure, ClinicHour, ClinicOverride
from clinic_booking.models.ledger_sync import LedgerSyncState, LedgerSyncTask
from clinic_booking.models.reconciliation import (
    FindingStatus,
    ReconciliationFinding,
    ReconciliationLease,
    ReconciliationRun,
    RunState,
)

__all__ = [
    "Base",
    "Role",
    "User",
    "AuditLog",
    "Patient",
    "PatientMessage",
    "Order",
    "ACTIVE_STATUSES",
    "Booking",
    "BookingSlot",
    "BookingStatus",
    "PatientProjection",
    "ClinicHour",
    "ClinicClosure",
    "ClinicOverride",
    "LedgerSyncState",
    "LedgerSyncTask",
    "FindingStatus",
    "ReconciliationFinding",
    "ReconciliationLease",
    "ReconciliationRun",
    "RunState",
]
