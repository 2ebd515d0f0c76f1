"""Run-level lease so only one reconciliation pass repairs at a time."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, sessionmaker

from clinic_booking.core.errors import ReconciliationInProgress
from clinic_booking.core.settings import settings
from clinic_booking.models.reconciliation import ReconciliationLease
from clinic_booking.services.transactions import run_in_transaction

logger = logging.getLogger("clinic_booking.reconciliation")

RECONCILE_LEASE = "reconciliation"


def acquire_lease(
    session_factory: sessionmaker[Session],
    name: str = RECONCILE_LEASE,
    ttl_seconds: int | None = None,
) -> str:
    """Take the lease and return its token, or raise ``ReconciliationInProgress``.

    An expired lease is taken over, so a crashed holder blocks others for at
    most one TTL.
    """
    token = uuid4().hex
    ttl = ttl_seconds or settings.reconcile_lease_seconds

    def work(db: Session) -> int:
        if db.get(ReconciliationLease, name) is None:
            db.add(ReconciliationLease(name=name))
            db.flush()
        now = datetime.now(timezone.utc)
        result = db.execute(
            update(ReconciliationLease)
            .where(
                ReconciliationLease.name == name,
                or_(
                    ReconciliationLease.holder.is_(None),
                    ReconciliationLease.expires_at.is_(None),
                    ReconciliationLease.expires_at < now,
                ),
            )
            .values(holder=token, acquired_at=now, expires_at=now + timedelta(seconds=ttl))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    with session_factory() as db:
        claimed = run_in_transaction(db, work, operation="acquire_lease")
    if not claimed:
        raise ReconciliationInProgress("Another reconciliation run holds the lease.")
    logger.debug("Lease %s acquired by %s", name, token)
    return token


def release_lease(
    session_factory: sessionmaker[Session],
    token: str,
    name: str = RECONCILE_LEASE,
) -> bool:
    def work(db: Session) -> int:
        result = db.execute(
            update(ReconciliationLease)
            .where(ReconciliationLease.name == name, ReconciliationLease.holder == token)
            .values(holder=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    with session_factory() as db:
        released = run_in_transaction(db, work, operation="release_lease")
    if not released:
        logger.warning("Lease %s was no longer held by %s at release", name, token)
    return bool(released)
