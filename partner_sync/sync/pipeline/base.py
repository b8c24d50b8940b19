"""
Shared machinery for sync steps.

A step resolves its effective mode from the audit log, opens a ``SyncRun``,
executes, and closes the run with its counters. ``ReconcilingStep`` adds the
PRM reconciliation algorithm shared by partners and contacts: classify,
upsert valid records, then (full mode only) link and soft-delete.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generic, Iterable, Mapping, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.filter_rules import DEFAULT_RULES, FilterRules
from partner_sync.models import DeletionReason, SyncMode, db
from partner_sync.utils.timeutils import utcnow

from ..audit import SyncAuditLog
from ..clients import FetchResult
from ..eligibility import ClassificationResult
from ..errors import ApiError, SyncError
from ..health import HealthMonitor
from ..offboarding import OffboardingService, OffboardResult
from ..progress import ProgressChannel
from ..session_cache import SyncSessionCache

RecordT = TypeVar("RecordT")
RowT = TypeVar("RowT")

MAX_ERROR_DETAILS = 50
PROGRESS_EVERY = 100


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for sync steps, usually read from Flask config."""

    max_workers: int = 10
    enrollment_stale_days: int = 7
    enrollment_abort_threshold: int = 10
    offboard_batch_size: int = 50
    cache_ttl_minutes: int = 60

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SyncSettings":
        return cls(
            max_workers=int(config.get("SYNC_MAX_WORKERS", cls.max_workers)),
            enrollment_stale_days=int(config.get("SYNC_ENROLLMENT_STALE_DAYS", cls.enrollment_stale_days)),
            enrollment_abort_threshold=int(
                config.get("SYNC_ENROLLMENT_ABORT_THRESHOLD", cls.enrollment_abort_threshold)
            ),
            offboard_batch_size=int(config.get("SYNC_OFFBOARD_BATCH_SIZE", cls.offboard_batch_size)),
            cache_ttl_minutes=int(config.get("SYNC_CACHE_TTL_MINUTES", cls.cache_ttl_minutes)),
        )

    @property
    def enrollment_stale_after(self) -> timedelta:
        return timedelta(days=self.enrollment_stale_days)


@dataclass
class SyncStats:
    """Counters for one sync step."""

    sync_type: str
    mode: SyncMode
    run_id: int | None = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    reactivated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def add_error(self, entity: Any, message: str, **extra: Any) -> None:
        if len(self.errors) >= MAX_ERROR_DETAILS:
            self.details["errors_truncated"] = self.details.get("errors_truncated", 0) + 1
            return
        entry = {"entity": entity, "error": message}
        entry.update(extra)
        self.errors.append(entry)

    def bump(self, key: str, amount: int = 1) -> None:
        self.details[key] = self.details.get(key, 0) + amount

    def to_dict(self) -> dict:
        return {
            "sync_type": self.sync_type,
            "mode": self.mode.value,
            "run_id": self.run_id,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "reactivated": self.reactivated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "details": dict(self.details),
        }


def assign(row: Any, attribute: str, value: Any) -> bool:
    """Set ``row.attribute`` when it differs; return True if it changed."""
    if getattr(row, attribute) == value:
        return False
    setattr(row, attribute, value)
    return True


class SyncStep:
    """One audited sync operation for a single entity type."""

    sync_type: str = ""
    entity_type: str = ""
    supports_incremental: bool = True

    def __init__(
        self,
        *,
        audit: SyncAuditLog | None = None,
        progress: ProgressChannel | None = None,
        settings: SyncSettings | None = None,
        rules: FilterRules = DEFAULT_RULES,
        session: Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.audit = audit or SyncAuditLog(self.session)
        self.progress = progress or ProgressChannel()
        self.settings = settings or SyncSettings()
        self.rules = rules
        self.logger = logger or logging.getLogger(__name__)
        self.requested_mode = SyncMode.INCREMENTAL

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def health_monitors(self) -> Iterable[HealthMonitor]:
        return ()

    def execute(self, stats: SyncStats, *, since: datetime | None, cache: SyncSessionCache | None) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def resolve_mode(self, requested: SyncMode) -> tuple[SyncMode, datetime | None]:
        """
        Pick the effective mode and cursor.

        Incremental runs need a previous completed run of the same type;
        without one they silently run as full.
        """

        if requested is SyncMode.FULL or not self.supports_incremental:
            return SyncMode.FULL, None
        since = self.audit.last_successful_sync(self.sync_type)
        if since is None:
            self.logger.info(
                "No completed %s run found; running full sync",
                self.sync_type,
                extra={"sync_type": self.sync_type},
            )
            return SyncMode.FULL, None
        return SyncMode.INCREMENTAL, since

    def run(self, mode: SyncMode | str = SyncMode.INCREMENTAL, *, cache: SyncSessionCache | None = None) -> SyncStats:
        requested = SyncMode.parse(mode)
        self.requested_mode = requested
        effective, since = self.resolve_mode(requested)
        run = self.audit.start(self.sync_type, effective)
        stats = SyncStats(sync_type=self.sync_type, mode=effective, run_id=run.id)
        if since is not None:
            stats.details["since"] = since.isoformat()
        try:
            for monitor in self.health_monitors():
                monitor.ensure_healthy(self.sync_type)
            self.execute(stats, since=since, cache=cache)
        except Exception as exc:
            self.audit.fail(run, stats, exc)
            raise
        self.audit.complete(run, stats)
        return stats

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def record_row_failure(
        self,
        stats: SyncStats,
        *,
        entity_id: Any,
        entity_name: str | None,
        error: BaseException,
    ) -> None:
        """Roll back the failed row, count it and persist a failure record."""

        self.session.rollback()
        stats.failed += 1
        http_status = error.status_code if isinstance(error, ApiError) else None
        stats.add_error(entity_name or entity_id, str(error), entity_id=entity_id)
        self.logger.warning(
            "Failed to sync %s %s: %s",
            self.entity_type,
            entity_name or entity_id,
            error,
            extra={"sync_type": self.sync_type, "sync_run_id": stats.run_id},
        )
        try:
            self.audit.record_failure(
                sync_type=self.sync_type,
                run_id=stats.run_id,
                entity_type=self.entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                reason=str(error) or error.__class__.__name__,
                http_status=http_status,
            )
        except SQLAlchemyError:
            self.session.rollback()
            self.logger.exception("Could not persist sync failure for %s %s", self.entity_type, entity_id)

    def emit_progress(self, current: int, total: int, label: str = "") -> None:
        if current == total or current % PROGRESS_EVERY == 0:
            self.progress.emit(self.sync_type, current, total, label)


class ReconcilingStep(SyncStep, Generic[RecordT, RowT]):
    """
    Reconcile a PRM collection against a soft-deletable local table.

    Subclasses supply fetching, parsing, classification, matching and field
    mapping; this class owns the upsert loop, the link-then-delete pass and
    offboarding of deactivated rows.
    """

    def __init__(self, *, offboarding: OffboardingService | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.offboarding = offboarding

    # Hooks ------------------------------------------------------------

    def fetch(self, since: datetime | None) -> FetchResult:
        raise NotImplementedError

    def parse(self, payload: Mapping[str, Any]) -> RecordT:
        raise NotImplementedError

    def classify(self, records: list[RecordT]) -> ClassificationResult[RecordT]:
        raise NotImplementedError

    def build_matcher(self):
        raise NotImplementedError

    def create_row(self, record: RecordT) -> RowT:
        raise NotImplementedError

    def apply(self, row: RowT, record: RecordT) -> bool:
        raise NotImplementedError

    def local_linked_rows(self) -> list[RowT]:
        raise NotImplementedError

    def offboard(self, row: RowT) -> OffboardResult:
        raise NotImplementedError

    def dedupe_key(self, record: RecordT) -> str:
        return str(record.id)  # type: ignore[attr-defined]

    def label(self, record: RecordT) -> str:
        return record.label  # type: ignore[attr-defined]

    # Algorithm --------------------------------------------------------

    def execute(self, stats: SyncStats, *, since: datetime | None, cache: SyncSessionCache | None) -> None:
        fetch = self.fetch(since)
        records = self._parse_all(fetch.records, stats)
        classification = self.classify(records)
        stats.details["fetched"] = len(fetch.records)
        stats.details["pages"] = fetch.pages
        stats.details["filter"] = classification.to_dict()
        if fetch.partial:
            stats.details["fetch_error"] = str(fetch.error)

        matcher = self.build_matcher()
        total = len(classification.valid)
        for index, record in enumerate(classification.valid, start=1):
            stats.processed += 1
            self._upsert(stats, matcher, record)
            self.emit_progress(index, total, self.label(record))

        if stats.mode is not SyncMode.FULL:
            return
        if not fetch.complete:
            stats.details["deletion_pass"] = "skipped_incomplete_fetch"
            self.logger.warning(
                "Skipping %s deletion pass because the fetch was incomplete",
                self.entity_type,
                extra={"sync_type": self.sync_type, "sync_run_id": stats.run_id},
            )
            return
        self._link_filtered(stats, matcher, classification)
        self._deletion_pass(stats, classification)

    def _parse_all(self, payloads: list[Mapping[str, Any]], stats: SyncStats) -> list[RecordT]:
        records: list[RecordT] = []
        seen: set[str] = set()
        for payload in payloads:
            try:
                record = self.parse(payload)
            except (KeyError, TypeError, ValueError) as exc:
                stats.skipped += 1
                stats.add_error(repr(payload)[:80], f"Unparseable record: {exc}")
                continue
            key = self.dedupe_key(record)
            if key in seen:
                stats.skipped += 1
                stats.bump("duplicates")
                continue
            seen.add(key)
            records.append(record)
        return records

    def _upsert(self, stats: SyncStats, matcher, record: RecordT) -> None:
        match = matcher.match(record)
        now = utcnow()
        try:
            if match is None:
                row = self.create_row(record)
                row.synced_at = now  # type: ignore[attr-defined]
                self.session.add(row)
                self.session.commit()
                matcher.add(row)
                matcher.claim(row)
                stats.created += 1
                return

            row = match.row
            changed = self.apply(row, record)
            reactivated = row.reactivate() if not row.is_active else False  # type: ignore[attr-defined]
            row.synced_at = now  # type: ignore[attr-defined]
            self.session.commit()
            matcher.add(row)
            matcher.claim(row)
        except SQLAlchemyError as exc:
            self.record_row_failure(stats, entity_id=getattr(record, "id", None), entity_name=self.label(record), error=exc)
            return

        stats.bump(f"matched_by_{match.rule.value}")
        if reactivated:
            stats.reactivated += 1
        elif changed:
            stats.updated += 1
        else:
            stats.unchanged += 1

    def _link_filtered(self, stats: SyncStats, matcher, classification: ClassificationResult[RecordT]) -> None:
        """Attach external ids of filtered records to unlinked local rows so the deletion pass sees them."""

        for item in classification.filtered:
            match = matcher.match(item.record)
            if match is None or match.row.prm_id:  # type: ignore[attr-defined]
                continue
            row = match.row
            try:
                row.prm_id = str(item.record.id)  # type: ignore[attr-defined]
                self.session.commit()
                matcher.add(row)
            except SQLAlchemyError as exc:
                self.record_row_failure(
                    stats,
                    entity_id=getattr(item.record, "id", None),
                    entity_name=self.label(item.record),
                    error=exc,
                )
                continue
            stats.bump("linked_filtered")

    def _deletion_pass(self, stats: SyncStats, classification: ClassificationResult[RecordT]) -> None:
        valid_ids = {str(record.id) for record in classification.valid}  # type: ignore[attr-defined]
        filtered_ids = {str(item.record.id) for item in classification.filtered}  # type: ignore[attr-defined]

        for row in self.local_linked_rows():
            external_id = str(row.prm_id)  # type: ignore[attr-defined]
            if external_id in valid_ids:
                continue
            reason = DeletionReason.FILTERED if external_id in filtered_ids else DeletionReason.REMOVED
            try:
                row.soft_delete(reason)  # type: ignore[attr-defined]
                self.session.commit()
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=external_id, entity_name=str(row), error=exc)
                continue
            stats.deleted += 1
            stats.bump(f"deleted_{reason.value}")
            self._offboard(stats, row)

    def _offboard(self, stats: SyncStats, row: RowT) -> None:
        if self.offboarding is None:
            return
        tally = stats.details.setdefault("offboarding", {"attempted": 0, "succeeded": 0, "failed": 0, "errors": []})
        tally["attempted"] += 1
        try:
            result = self.offboard(row)
        except (SyncError, SQLAlchemyError) as exc:
            self.session.rollback()
            result = OffboardResult(entity_type=self.entity_type, entity_id=row.id).fail(str(exc))  # type: ignore[attr-defined]
        if result.success:
            tally["succeeded"] += 1
            return
        tally["failed"] += 1
        if len(tally["errors"]) < MAX_ERROR_DETAILS:
            tally["errors"].append({"id": result.entity_id, "errors": list(result.errors)})
        self.logger.warning(
            "Offboarding %s %s failed; continuing",
            self.entity_type,
            result.entity_id,
            extra={"sync_type": self.sync_type, "offboard_result": result.to_dict()},
        )
