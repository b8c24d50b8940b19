"""
Audit tables for sync runs.

``sync_logs`` holds one row per step invocation and is the only source of the
"last successful sync" cursor used by incremental mode. ``sync_failures``
records entity-level failures so operators can follow up without digging
through logs.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db
from ..utils.timeutils import as_utc, isoformat
from .enums import SyncMode, SyncRunStatus


class SyncRun(BaseModel):
    """Metadata describing a single sync step execution."""

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    mode: Mapped[SyncMode] = mapped_column(
        Enum(SyncMode, name="sync_mode_enum"),
        nullable=False,
        default=SyncMode.INCREMENTAL,
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (Index("idx_sync_logs_type_status_completed", "sync_type", "status", "completed_at"),)

    @property
    def is_terminal(self) -> bool:
        return self.status != SyncRunStatus.RUNNING

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (as_utc(self.completed_at) - as_utc(self.started_at)).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "mode": self.mode.value if self.mode else None,
            "status": self.status.value if self.status else None,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_failed": self.records_failed,
            "details": self.details or {},
            "error_message": self.error_message,
        }


class SyncFailure(BaseModel):
    """A single entity that could not be synced."""

    __tablename__ = "sync_failures"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    sync_run_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    entity_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    failure_reason: Mapped[str] = mapped_column(db.Text, nullable=False)
    http_status: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
