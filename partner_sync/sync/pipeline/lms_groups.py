"""LMS groups -> ``lms_groups`` with partner binding."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from partner_sync.models import DeletionReason, LmsGroup, Partner
from partner_sync.utils.timeutils import utcnow

from ..clients import LmsClient
from ..eligibility import classify_groups, is_all_partners_group, strip_partner_prefix
from ..matching import PartnerMatcher
from ..records import LmsGroupRecord
from .base import SyncStats, SyncStep, assign


class LmsGroupSync(SyncStep):
    """
    Mirror LMS groups and bind partner groups to their partner by name.

    Groups are always fetched in full: the membership step compares every
    group's remote ``user_count`` against the local member count, so the
    cached count map must cover the whole collection. ``user_count`` on the
    local row is owned by the membership step and only initialized here.
    """

    sync_type = "lms_groups"
    entity_type = "lms_group"
    supports_incremental = False

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    def resolve_partner(self, matcher: PartnerMatcher, record: LmsGroupRecord) -> Partner | None:
        if is_all_partners_group(record.name, self.rules):
            return None
        return matcher.find_by_name(record.name) or matcher.find_by_name(strip_partner_prefix(record.name, self.rules))

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        fetch = self.lms.fetch_groups()
        records: list[LmsGroupRecord] = []
        for resource in fetch.records:
            try:
                records.append(LmsGroupRecord.from_resource(resource))
            except (KeyError, TypeError, ValueError) as exc:
                stats.skipped += 1
                stats.add_error(repr(resource)[:80], f"Unparseable group: {exc}")
        classification = classify_groups(records, self.rules)
        stats.details["fetched"] = len(fetch.records)
        stats.details["filter"] = classification.to_dict()
        if fetch.partial:
            stats.details["fetch_error"] = str(fetch.error)

        partners = PartnerMatcher(self.session.execute(select(Partner).where(Partner.is_active.is_(True))).scalars())
        existing = {group.id: group for group in self.session.execute(select(LmsGroup)).scalars()}
        partner_groups: dict[int, str] = {}

        total = len(classification.valid)
        for index, record in enumerate(classification.valid, start=1):
            stats.processed += 1
            partner = self.resolve_partner(partners, record)
            partner_id = partner.id if partner else None
            group = existing.get(record.id)
            try:
                if group is None:
                    group = LmsGroup(
                        id=record.id,
                        name=record.name,
                        description=record.description,
                        partner_id=partner_id,
                        user_count=0,
                        synced_at=utcnow(),
                    )
                    self.session.add(group)
                    self.session.commit()
                    existing[record.id] = group
                    stats.created += 1
                else:
                    changed = assign(group, "name", record.name)
                    changed |= assign(group, "description", record.description)
                    changed |= assign(group, "partner_id", partner_id)
                    reactivated = group.reactivate() if not group.is_active else False
                    group.synced_at = utcnow()
                    self.session.commit()
                    if reactivated:
                        stats.reactivated += 1
                    elif changed:
                        stats.updated += 1
                    else:
                        stats.unchanged += 1
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=record.id, entity_name=record.name, error=exc)
                continue
            if partner_id is not None:
                partner_groups.setdefault(partner_id, record.id)
            self.emit_progress(index, total, record.name)

        stats.details["partner_groups"] = len(partner_groups)
        if cache is not None and fetch.complete:
            cache.set_groups(fetch.records)
            cache.set_partner_groups(partner_groups)

        if not fetch.complete:
            stats.details["deletion_pass"] = "skipped_incomplete_fetch"
            return
        valid_ids = {record.id for record in classification.valid}
        filtered_ids = {item.record.id for item in classification.filtered}
        for group_id, group in existing.items():
            if group_id in valid_ids or not group.is_active:
                continue
            reason = DeletionReason.FILTERED if group_id in filtered_ids else DeletionReason.REMOVED
            try:
                group.soft_delete(reason)
                self.session.commit()
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=group_id, entity_name=group.name, error=exc)
                continue
            stats.deleted += 1
