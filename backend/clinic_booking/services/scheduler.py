"""Background loop that reconciles on an interval and then drains the outbox."""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.core.errors import ReconciliationInProgress
from clinic_booking.core.settings import settings
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.ledger_sync import drain_outbox
from clinic_booking.services.reconciliation.engine import run_reconciliation

logger = logging.getLogger("clinic_booking.scheduler")


async def reconcile_once(
    session_factory: sessionmaker[Session],
    ledger: LedgerClient | None,
) -> None:
    try:
        await run_reconciliation(session_factory, ledger, triggered_by="scheduler")
    except ReconciliationInProgress:
        logger.info("Scheduled reconciliation skipped; another run holds the lease")
    await drain_outbox(session_factory, ledger)


async def reconcile_forever(
    session_factory: sessionmaker[Session],
    ledger: LedgerClient | None,
    interval_seconds: int | None = None,
) -> None:
    interval = interval_seconds or settings.reconcile_interval_seconds
    logger.info("Reconciliation scheduler started (every %ss)", interval)
    while True:
        try:
            await reconcile_once(session_factory, ledger)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled reconciliation failed")
        await asyncio.sleep(interval)
