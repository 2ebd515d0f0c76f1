from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_booking.models.base import Base


class LedgerSyncState(str, enum.Enum):
    pending = "pending"
    done = "done"
    failed = "failed"


class LedgerSyncTask(Base):
    """Outbox row: the booking identified by reserve_id must be pushed to the ledger."""

    __tablename__ = "ledger_sync_tasks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reserve_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    state: Mapped[LedgerSyncState] = mapped_column(
        Enum(LedgerSyncState, name="ledger_sync_state"),
        default=LedgerSyncState.pending,
        nullable=False,
        index=True,
    )
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
