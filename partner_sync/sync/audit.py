"""
Sync audit log service.

Every sync step opens a ``SyncRun`` row when it starts and closes it exactly
once with a terminal status. Completed runs are the source of incremental
cursors: the next incremental run only asks the remote systems for records
changed since ``MAX(completed_at)`` of the same sync type.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from partner_sync.models import SyncFailure, SyncMode, SyncRun, SyncRunStatus, db
from partner_sync.utils.timeutils import as_utc, utcnow

from .metrics import record_sync_rows, record_sync_run

MAX_ERROR_MESSAGE_LENGTH = 2000


class RunCounters(Protocol):
    processed: int
    created: int
    updated: int
    failed: int

    def to_dict(self) -> dict: ...


class SyncAuditLog:
    """Persist sync run lifecycle and per-entity failures."""

    def __init__(self, session: Session | None = None, logger: logging.Logger | None = None) -> None:
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start(self, sync_type: str, mode: SyncMode) -> SyncRun:
        run = SyncRun(sync_type=sync_type, mode=mode, status=SyncRunStatus.RUNNING, started_at=utcnow())
        self.session.add(run)
        self.session.commit()
        self.logger.info(
            "Sync run started",
            extra={"sync_type": sync_type, "sync_mode": mode.value, "sync_run_id": run.id},
        )
        return run

    def _close(
        self,
        run: SyncRun,
        status: SyncRunStatus,
        counters: RunCounters | None,
        error_message: str | None,
    ) -> SyncRun:
        if run.is_terminal:
            raise ValueError(f"Sync run {run.id} already finished with status {run.status.value}.")
        run.status = status
        run.completed_at = utcnow()
        if counters is not None:
            run.records_processed = counters.processed
            run.records_created = counters.created
            run.records_updated = counters.updated
            run.records_failed = counters.failed
            run.details = counters.to_dict()
        if error_message:
            run.error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH]
        self.session.commit()

        record_sync_run(sync_type=run.sync_type, status=status.value, duration_seconds=run.duration_seconds)
        if counters is not None:
            record_sync_rows(run.sync_type, counters.to_dict())
        return run

    def complete(self, run: SyncRun, counters: RunCounters) -> SyncRun:
        self._close(run, SyncRunStatus.COMPLETED, counters, None)
        self.logger.info(
            "Sync run completed",
            extra={
                "sync_type": run.sync_type,
                "sync_run_id": run.id,
                "sync_counts": counters.to_dict(),
            },
        )
        return run

    def fail(self, run: SyncRun, counters: RunCounters | None, error: BaseException | str) -> SyncRun:
        # Leave no half-flushed row state behind before writing the terminal status.
        self.session.rollback()
        message = str(error) or error.__class__.__name__
        self._close(run, SyncRunStatus.FAILED, counters, message)
        self.logger.error(
            "Sync run failed",
            extra={"sync_type": run.sync_type, "sync_run_id": run.id, "sync_error": message},
        )
        return run

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def last_successful_sync(self, sync_type: str) -> datetime | None:
        """``MAX(completed_at)`` of completed runs of ``sync_type``."""
        stmt = select(func.max(SyncRun.completed_at)).where(
            SyncRun.sync_type == sync_type,
            SyncRun.status == SyncRunStatus.COMPLETED,
        )
        return as_utc(self.session.execute(stmt).scalar())

    def latest_runs(self, sync_types: list[str] | None = None) -> dict[str, SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        if sync_types:
            stmt = stmt.where(SyncRun.sync_type.in_(sync_types))
        latest: dict[str, SyncRun] = {}
        for run in self.session.execute(stmt).scalars():
            latest.setdefault(run.sync_type, run)
        return latest

    def history(self, *, limit: int = 50, sync_type: str | None = None) -> list[SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
        if sync_type:
            stmt = stmt.where(SyncRun.sync_type == sync_type)
        return list(self.session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def record_failure(
        self,
        *,
        sync_type: str,
        entity_type: str,
        reason: str,
        run_id: int | None = None,
        entity_id: Any = None,
        entity_name: str | None = None,
        http_status: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SyncFailure:
        failure = SyncFailure(
            sync_type=sync_type,
            sync_run_id=run_id,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            entity_name=(entity_name or None) and entity_name[:255],
            failure_reason=reason[:MAX_ERROR_MESSAGE_LENGTH],
            http_status=http_status,
            details=dict(details) if details else None,
        )
        self.session.add(failure)
        self.session.commit()
        return failure

    def recent_failures(self, *, limit: int = 50, sync_type: str | None = None) -> list[SyncFailure]:
        stmt = select(SyncFailure).order_by(SyncFailure.created_at.desc(), SyncFailure.id.desc()).limit(limit)
        if sync_type:
            stmt = stmt.where(SyncFailure.sync_type == sync_type)
        return list(self.session.execute(stmt).scalars())
