"""LMS group memberships -> ``lms_group_members``."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from partner_sync.models import DeletionReason, LmsGroup, LmsGroupMember, SyncMode
from partner_sync.utils.timeutils import utcnow

from ..clients import LmsClient, membership_user_id
from ..concurrency import bounded_map
from ..errors import ApiError, SyncError
from .base import SyncStats, SyncStep


class GroupMembershipSync(SyncStep):
    """
    Refresh member lists of groups whose remote size changed.

    Remote counts come from the session cache when the group step filled it,
    otherwise from one ``GET /v2/groups/{id}`` per group on the worker pool.
    Only groups whose remote count differs from the stored count are
    re-fetched; ``full`` mode refreshes every active group.
    """

    sync_type = "lms_group_members"
    entity_type = "lms_group"
    supports_incremental = False

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        force = self.requested_mode is SyncMode.FULL
        groups = list(
            self.session.execute(select(LmsGroup).where(LmsGroup.is_active.is_(True)).order_by(LmsGroup.id)).scalars()
        )
        cached_counts = (cache.get_group_counts() if cache is not None else None) or {}

        remote_counts: dict[str, int] = {}
        lookups: list[str] = []
        for group in groups:
            if group.id in cached_counts:
                remote_counts[group.id] = cached_counts[group.id]
            elif not force:
                lookups.append(group.id)
        stats.details["counts_from_cache"] = len(remote_counts)
        stats.details["count_lookups"] = len(lookups)

        by_id = {group.id: group for group in groups}
        for outcome in bounded_map(self.lms.get_group_user_count, lookups, max_workers=self.settings.max_workers):
            if outcome.ok:
                remote_counts[outcome.item] = outcome.value
            elif isinstance(outcome.error, ApiError) and outcome.error.is_not_found:
                self._retire_missing(stats, by_id[outcome.item])
            else:
                self.record_row_failure(
                    stats, entity_id=outcome.item, entity_name=by_id[outcome.item].name, error=outcome.error
                )

        now = utcnow()
        stale: list[LmsGroup] = []
        for group in groups:
            if not group.is_active:
                continue
            if force or remote_counts.get(group.id) != group.user_count:
                if force or group.id in remote_counts:
                    stale.append(group)
                continue
            group.last_checked_at = now
            stats.unchanged += 1
        self.session.commit()

        total = len(stale)
        stats.details["groups_checked"] = len(groups)
        stats.details["groups_refreshed"] = total
        for index, group in enumerate(stale, start=1):
            stats.processed += 1
            self.refresh_group(stats, group)
            self.emit_progress(index, total, group.name)

    def _retire_missing(self, stats: SyncStats, group: LmsGroup) -> None:
        try:
            group.soft_delete(DeletionReason.NOT_FOUND_IN_LMS)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.record_row_failure(stats, entity_id=group.id, entity_name=group.name, error=exc)
            return
        stats.deleted += 1
        stats.bump("groups_not_found")

    def refresh_group(self, stats: SyncStats, group: LmsGroup) -> None:
        """Replace the stored member set of ``group``; surviving members keep ``added_at``."""

        try:
            fetch = self.lms.fetch_group_memberships(group.id)
        except ApiError as exc:
            if exc.is_not_found:
                self._retire_missing(stats, group)
                return
            self.record_row_failure(stats, entity_id=group.id, entity_name=group.name, error=exc)
            return
        except SyncError as exc:
            self.record_row_failure(stats, entity_id=group.id, entity_name=group.name, error=exc)
            return
        if not fetch.complete:
            # An incomplete list would drop real members.
            error = fetch.error or SyncError(f"Membership list for group {group.id} exceeded the page limit")
            self.record_row_failure(stats, entity_id=group.id, entity_name=group.name, error=error)
            return

        remote_ids = list(dict.fromkeys(uid for uid in map(membership_user_id, fetch.records) if uid))
        now = utcnow()
        try:
            current = {member.user_id: member for member in group.members}
            removed = [member for user_id, member in current.items() if user_id not in set(remote_ids)]
            for member in removed:
                group.members.remove(member)
            added = [user_id for user_id in remote_ids if user_id not in current]
            for user_id in added:
                group.members.append(LmsGroupMember(user_id=user_id, added_at=now))
            group.user_count = len(remote_ids)
            group.last_checked_at = now
            group.reactivate()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.record_row_failure(stats, entity_id=group.id, entity_name=group.name, error=exc)
            return

        stats.updated += 1
        stats.bump("members_added", len(added))
        stats.bump("members_removed", len(removed))
