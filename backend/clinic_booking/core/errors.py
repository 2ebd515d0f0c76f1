from __future__ import annotations


class BookingCoreError(Exception):
    status_code = 400
    code = "BookingCoreError"
    retry_after: int | None = None

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.code
        super().__init__(self.detail)


class CapacityExceeded(BookingCoreError):
    status_code = 409
    code = "CapacityExceeded"


class DuplicateActiveBooking(BookingCoreError):
    status_code = 409
    code = "DuplicateActiveBooking"


class SlotUnavailable(BookingCoreError):
    status_code = 422
    code = "SlotUnavailable"


class SlotBusy(BookingCoreError):
    status_code = 503
    code = "SlotBusy"
    retry_after = 1


class TransientError(BookingCoreError):
    status_code = 503
    code = "TransientError"
    retry_after = 1


class BookingNotFound(BookingCoreError):
    status_code = 404
    code = "BookingNotFound"


class PatientNotFound(BookingCoreError):
    status_code = 404
    code = "PatientNotFound"


class BookingNotActive(BookingCoreError):
    status_code = 409
    code = "BookingNotActive"


class IdentityConflict(BookingCoreError):
    status_code = 409
    code = "IdentityConflict"


class ReferentialIntegrityViolation(BookingCoreError):
    status_code = 409
    code = "ReferentialIntegrityViolation"


class ReconciliationInProgress(BookingCoreError):
    status_code = 409
    code = "ReconciliationInProgress"


class LedgerSyncError(Exception):
    """Raised by the ledger adapter; never propagated to booking callers."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
