from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from passport_sync.models.base import Base, TimestampMixin


class SyncRunStatus(str, enum.Enum):
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class SyncCheckpoint(Base, TimestampMixin):
    __tablename__ = "sync_checkpoints"
    __table_args__ = (
        UniqueConstraint("source_system", name="uq_sync_checkpoints_source"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(String(120), nullable=False)
    last_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_source_id: Mapped[str | None] = mapped_column(String(120), nullable=True)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status"),
        default=SyncRunStatus.running,
        nullable=False,
    )
    trigger: Mapped[str] = mapped_column(String(40), nullable=False, default="schedule")
    full_history: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpoint_before: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpoint_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    already_present: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_no_match: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_ambiguous: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
