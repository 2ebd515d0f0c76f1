"""Unit-of-work runner for the booking path.

Each call runs ``work`` inside one database transaction and commits it.
Serialization failures, deadlocks and unique-index races are retried with
exponential backoff; lock-wait timeouts surface immediately as ``SlotBusy``.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinic_booking.core.errors import SlotBusy, TransientError
from clinic_booking.core.settings import settings

logger = logging.getLogger("clinic_booking.transactions")

T = TypeVar("T")

SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
LOCK_NOT_AVAILABLE = "55P03"


class _RetryableConflict(Exception):
    pass


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_lock_timeout(exc: DBAPIError) -> bool:
    if _sqlstate(exc) == LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(exc.orig).lower()


def _is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    return _sqlstate(exc) in {SERIALIZATION_FAILURE, DEADLOCK_DETECTED}


def apply_lock_timeout(db: Session) -> None:
    if db.get_bind().dialect.name == "postgresql":
        timeout_ms = int(settings.booking_lock_timeout_ms)
        db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    operation: str,
    attempts: int | None = None,
) -> T:
    max_attempts = attempts or settings.booking_max_attempts
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=settings.booking_retry_base_seconds, max=2),
        retry=retry_if_exception_type(_RetryableConflict),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        for attempt in retrying:
            with attempt:
                try:
                    apply_lock_timeout(db)
                    result = work(db)
                    db.commit()
                    return result
                except DBAPIError as exc:
                    db.rollback()
                    if _is_lock_timeout(exc):
                        logger.info("Lock wait exceeded", extra={"operation": operation})
                        raise SlotBusy("Slot is busy; retry shortly.") from exc
                    if _is_conflict(exc):
                        raise _RetryableConflict(str(exc.orig)) from exc
                    raise
                except BaseException:
                    db.rollback()
                    raise
    except _RetryableConflict as exc:
        logger.warning(
            "Transaction conflict persisted after retries",
            extra={"operation": operation, "attempts": max_attempts},
        )
        raise TransientError("Concurrent update conflict; retry shortly.") from exc
    raise TransientError("Transaction did not complete.")
