"""
LMS transcripts -> ``lms_enrollments`` for partner-linked learners.

Transcripts are fetched per user on the bounded worker pool, one batch of
``max_workers`` users at a time, and stored on the calling thread in the
original user order. A 404 for a user is ordinary churn. Any other failure
counts toward the error-rate abort, which stops the run when failures are
both numerous and outnumber the users synced so far.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from partner_sync.models import (
    Contact,
    EnrollmentStatus,
    LmsEnrollment,
    LmsGroup,
    LmsGroupMember,
    LmsUser,
    LmsUserStatus,
    SyncMode,
)
from partner_sync.utils.timeutils import as_utc, utcnow

from ..clients import FetchResult, LmsClient
from ..concurrency import bounded_map, chunked
from ..errors import ApiError, SyncAbortedError
from ..records import TranscriptEntry
from .base import SyncStats, SyncStep, assign


class SelectionReason(str, Enum):
    ALL = "all"
    NEW = "new"
    UPDATED = "updated"
    NEW_GROUP_MEMBER = "new_group_member"
    STALE = "stale"


def selection_reason(
    user: LmsUser,
    *,
    latest_group_add: datetime | None,
    now: datetime,
    stale_after,
) -> SelectionReason | None:
    """Why ``user`` needs an incremental transcript refresh, or None."""

    synced = as_utc(user.enrollment_synced_at)
    if synced is None:
        return SelectionReason.NEW
    last_active = as_utc(user.last_active_at)
    if last_active is not None and last_active > synced:
        return SelectionReason.UPDATED
    added = as_utc(latest_group_add)
    if added is not None and added > synced:
        return SelectionReason.NEW_GROUP_MEMBER
    if synced < now - stale_after:
        return SelectionReason.STALE
    return None


class EnrollmentSync(SyncStep):
    sync_type = "lms_enrollments"
    entity_type = "lms_enrollment"

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def partner_users(self) -> list[LmsUser]:
        linked = select(Contact.lms_user_id).where(Contact.partner_id.isnot(None), Contact.lms_user_id.isnot(None))
        grouped = (
            select(LmsGroupMember.user_id)
            .join(LmsGroup, LmsGroup.id == LmsGroupMember.group_id)
            .where(LmsGroup.partner_id.isnot(None))
        )
        stmt = (
            select(LmsUser)
            .where(LmsUser.status == LmsUserStatus.ACTIVE, or_(LmsUser.id.in_(linked), LmsUser.id.in_(grouped)))
            .order_by(LmsUser.id)
        )
        return list(self.session.execute(stmt).scalars())

    def _latest_group_additions(self) -> dict[str, datetime]:
        stmt = (
            select(LmsGroupMember.user_id, func.max(LmsGroupMember.added_at))
            .join(LmsGroup, LmsGroup.id == LmsGroupMember.group_id)
            .where(LmsGroup.partner_id.isnot(None))
            .group_by(LmsGroupMember.user_id)
        )
        return {user_id: added_at for user_id, added_at in self.session.execute(stmt)}

    def select_users(self, mode: SyncMode) -> list[tuple[LmsUser, SelectionReason]]:
        users = self.partner_users()
        if mode is SyncMode.FULL:
            return [(user, SelectionReason.ALL) for user in users]
        additions = self._latest_group_additions()
        now = utcnow()
        selected = []
        for user in users:
            reason = selection_reason(
                user,
                latest_group_add=additions.get(user.id),
                now=now,
                stale_after=self.settings.enrollment_stale_after,
            )
            if reason is not None:
                selected.append((user, reason))
        return selected

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        selected = self.select_users(stats.mode)
        stats.details["selection"] = dict(Counter(reason.value for _, reason in selected))
        stats.details["users_selected"] = len(selected)
        users_synced = 0
        users_not_found = 0
        api_errors = 0
        threshold = self.settings.enrollment_abort_threshold

        total = len(selected)
        done = 0
        for batch in chunked(selected, self.settings.max_workers):
            outcomes = bounded_map(
                self.lms.fetch_transcripts,
                [user.id for user, _ in batch],
                max_workers=self.settings.max_workers,
            )
            for (user, _reason), outcome in zip(batch, outcomes):
                done += 1
                if outcome.ok:
                    self.store_transcripts(stats, user, outcome.value)
                    users_synced += 1
                elif isinstance(outcome.error, ApiError) and outcome.error.is_not_found:
                    users_not_found += 1
                    self._mark_synced(stats, user)
                else:
                    api_errors += 1
                    self.record_row_failure(stats, entity_id=user.id, entity_name=user.email, error=outcome.error)
                    if api_errors >= threshold and api_errors > users_synced:
                        stats.details.update(
                            users_synced=users_synced, users_not_found=users_not_found, api_errors=api_errors
                        )
                        raise SyncAbortedError(
                            f"Aborting enrollment sync after {api_errors} API errors "
                            f"({users_synced} users synced)"
                        )
            self.emit_progress(done, total, batch[-1][0].email or batch[-1][0].id)

        stats.details.update(users_synced=users_synced, users_not_found=users_not_found, api_errors=api_errors)

    def _mark_synced(self, stats: SyncStats, user: LmsUser) -> None:
        try:
            user.enrollment_synced_at = utcnow()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.record_row_failure(stats, entity_id=user.id, entity_name=user.email, error=exc)

    def store_transcripts(self, stats: SyncStats, user: LmsUser, fetch: FetchResult) -> None:
        if not fetch.complete:
            stats.bump("partial_transcripts")
            self.logger.warning(
                "Transcript list for LMS user %s is incomplete; storing %s entries",
                user.id,
                len(fetch.records),
                extra={"sync_type": self.sync_type, "sync_run_id": stats.run_id},
            )
        for resource in fetch.records:
            try:
                entry = TranscriptEntry.from_resource(resource)
            except (KeyError, TypeError, ValueError) as exc:
                stats.skipped += 1
                stats.add_error(user.id, f"Unparseable transcript: {exc}")
                continue
            if not entry.is_course:
                stats.bump("non_course_transcripts")
                continue
            stats.processed += 1
            self._upsert(stats, user, entry)
        self._mark_synced(stats, user)

    def _upsert(self, stats: SyncStats, user: LmsUser, entry: TranscriptEntry) -> None:
        try:
            status = EnrollmentStatus.from_progress(entry.progress_status)
        except ValueError as exc:
            stats.failed += 1
            stats.add_error(entry.id, str(exc), entity_id=entry.id)
            self.audit.record_failure(
                sync_type=self.sync_type,
                run_id=stats.run_id,
                entity_type=self.entity_type,
                entity_id=entry.id,
                entity_name=user.email,
                reason=str(exc),
            )
            return

        enrollment = self.session.get(LmsEnrollment, entry.id)
        try:
            if enrollment is None:
                enrollment = LmsEnrollment(id=entry.id, user_id=user.id, course_id=entry.course_id)
                self._apply(enrollment, entry, status)
                enrollment.synced_at = utcnow()
                self.session.add(enrollment)
                self.session.commit()
                stats.created += 1
                return
            changed = assign(enrollment, "user_id", user.id)
            changed |= assign(enrollment, "course_id", entry.course_id)
            changed |= self._apply(enrollment, entry, status)
            enrollment.synced_at = utcnow()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.record_row_failure(stats, entity_id=entry.id, entity_name=user.email, error=exc)
            return
        if changed:
            stats.updated += 1
        else:
            stats.unchanged += 1

    @staticmethod
    def _apply(enrollment: LmsEnrollment, entry: TranscriptEntry, status: EnrollmentStatus) -> bool:
        changed = assign(enrollment, "status", status)
        changed |= assign(enrollment, "progress_percent", status.percent)
        changed |= assign(enrollment, "score", entry.score)
        for attribute in ("enrolled_at", "started_at", "completed_at", "expires_at"):
            value = getattr(entry, attribute)
            if as_utc(getattr(enrollment, attribute)) != value:
                setattr(enrollment, attribute, value)
                changed = True
        return changed
