"""Ledger outbox: rows written with the booking, pushed after commit."""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.core.errors import LedgerSyncError
from clinic_booking.models.booking import Booking
from clinic_booking.models.ledger_sync import LedgerSyncState, LedgerSyncTask
from clinic_booking.schemas.ledger import LedgerEntry
from clinic_booking.services.ledger_client import LedgerClient

logger = logging.getLogger("clinic_booking.ledger_sync")

MAX_ERROR_LENGTH = 2000


def enqueue_ledger_sync(db: Session, reserve_id: str, reason: str) -> LedgerSyncTask:
    """Mark ``reserve_id`` as needing a push. Joins the caller's transaction."""
    task = db.scalar(select(LedgerSyncTask).where(LedgerSyncTask.reserve_id == reserve_id))
    if task is None:
        task = LedgerSyncTask(
            reserve_id=reserve_id,
            state=LedgerSyncState.pending,
            reason=reason,
            attempts=0,
        )
        db.add(task)
        return task
    task.state = LedgerSyncState.pending
    task.reason = reason
    task.last_error = None
    return task


def has_pending_sync(db: Session, reserve_id: str) -> bool:
    state = db.scalar(select(LedgerSyncTask.state).where(LedgerSyncTask.reserve_id == reserve_id))
    return state == LedgerSyncState.pending


def _load_entry(session_factory: sessionmaker[Session], reserve_id: str) -> LedgerEntry | None:
    with session_factory() as db:
        booking = db.scalar(select(Booking).where(Booking.reserve_id == reserve_id))
        if booking is None:
            return None
        return LedgerEntry.from_booking(booking)


def _record_outcome(
    session_factory: sessionmaker[Session],
    pushed: LedgerEntry,
    error: str | None,
) -> None:
    with session_factory() as db:
        task = db.scalar(select(LedgerSyncTask).where(LedgerSyncTask.reserve_id == pushed.reserve_id))
        if task is None:
            return
        task.attempts += 1
        if error is not None:
            task.state = LedgerSyncState.failed
            task.last_error = error[:MAX_ERROR_LENGTH]
            db.commit()
            return
        booking = db.scalar(select(Booking).where(Booking.reserve_id == pushed.reserve_id))
        if booking is not None and LedgerEntry.from_booking(booking) != pushed:
            # Booking moved on while the push was in flight; keep the row pending.
            task.state = LedgerSyncState.pending
        else:
            task.state = LedgerSyncState.done
            task.last_error = None
        db.commit()


async def sync_to_ledger(
    session_factory: sessionmaker[Session],
    client: LedgerClient | None,
    reserve_id: str,
) -> bool:
    """Push the current state of one booking to the ledger.

    Returns True when the ledger accepted the record. Failures are recorded on
    the outbox row and logged; they never reach the booking caller.
    """
    if client is None:
        logger.debug("Ledger client not configured; leaving %s pending", reserve_id)
        return False
    entry = await asyncio.to_thread(_load_entry, session_factory, reserve_id)
    if entry is None:
        logger.warning("Outbox row references unknown booking %s", reserve_id)
        return False
    try:
        await client.push_entry(entry)
    except LedgerSyncError as exc:
        logger.error(
            "Ledger sync failed for %s: %s",
            reserve_id,
            exc,
            extra={"reserve_id": reserve_id, "status_code": exc.status_code},
        )
        await asyncio.to_thread(_record_outcome, session_factory, entry, str(exc))
        return False
    await asyncio.to_thread(_record_outcome, session_factory, entry, None)
    logger.info("Ledger entry pushed", extra={"reserve_id": reserve_id, "status": entry.status.value})
    return True


def _pending_reserve_ids(session_factory: sessionmaker[Session], limit: int) -> list[str]:
    with session_factory() as db:
        return list(
            db.scalars(
                select(LedgerSyncTask.reserve_id)
                .where(LedgerSyncTask.state == LedgerSyncState.pending)
                .order_by(LedgerSyncTask.enqueued_at, LedgerSyncTask.id)
                .limit(limit)
            )
        )


async def drain_outbox(
    session_factory: sessionmaker[Session],
    client: LedgerClient | None,
    limit: int = 100,
) -> dict[str, int]:
    stats = {"pushed": 0, "failed": 0}
    if client is None:
        return stats
    reserve_ids = await asyncio.to_thread(_pending_reserve_ids, session_factory, limit)
    for reserve_id in reserve_ids:
        if await sync_to_ledger(session_factory, client, reserve_id):
            stats["pushed"] += 1
        else:
            stats["failed"] += 1
    if reserve_ids:
        logger.info("Ledger outbox drained", extra=stats)
    return stats
