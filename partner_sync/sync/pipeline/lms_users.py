"""LMS people -> ``lms_users``, then contact linking by email."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from partner_sync.models import Contact, LmsUser, LmsUserStatus, SyncMode
from partner_sync.utils.timeutils import as_utc, utcnow

from ..clients import LmsClient
from ..records import LmsPerson
from .base import SyncStats, SyncStep, assign


def link_contacts_to_lms_users(session: Session) -> int:
    """
    Fill ``contacts.lms_user_id`` for unlinked contacts whose email matches a
    live LMS user (case-insensitive). Existing links are left alone.
    """

    rows = session.execute(
        select(LmsUser.id, func.lower(LmsUser.email))
        .where(LmsUser.email.isnot(None), LmsUser.status != LmsUserStatus.DELETED)
        .order_by(LmsUser.id)
    )
    users_by_email: dict[str, str] = {}
    for user_id, email in rows:
        users_by_email.setdefault(email, user_id)

    linked = 0
    contacts = session.execute(select(Contact).where(Contact.lms_user_id.is_(None))).scalars()
    for contact in contacts:
        user_id = users_by_email.get((contact.email or "").strip().lower())
        if user_id is not None:
            contact.lms_user_id = user_id
            linked += 1
    session.commit()
    return linked


class LmsUserSync(SyncStep):
    sync_type = "lms_users"
    entity_type = "lms_user"

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    def _apply(self, user: LmsUser, person: LmsPerson) -> bool:
        status = LmsUserStatus.DEACTIVATED if person.deactivated_at else LmsUserStatus.ACTIVE
        changed = False
        changed |= assign(user, "email", person.email)
        changed |= assign(user, "first_name", person.first_name)
        changed |= assign(user, "last_name", person.last_name)
        changed |= assign(user, "status", status)
        for attribute, value in (
            ("lms_created_at", person.created_at),
            ("last_active_at", person.last_active_at),
            ("deactivated_at", person.deactivated_at),
        ):
            if as_utc(getattr(user, attribute)) != value:
                setattr(user, attribute, value)
                changed = True
        return changed

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        fetch = self.lms.fetch_people(since=since)
        stats.details["fetched"] = len(fetch.records)
        if fetch.partial:
            stats.details["fetch_error"] = str(fetch.error)
        if cache is not None and since is None and fetch.complete:
            cache.set_users(fetch.records)

        existing = {user.id: user for user in self.session.execute(select(LmsUser)).scalars()}
        seen: set[str] = set()
        total = len(fetch.records)
        for index, resource in enumerate(fetch.records, start=1):
            try:
                person = LmsPerson.from_resource(resource)
            except (KeyError, TypeError, ValueError) as exc:
                stats.skipped += 1
                stats.add_error(repr(resource)[:80], f"Unparseable person: {exc}")
                continue
            if person.id in seen:
                stats.bump("duplicates")
                continue
            seen.add(person.id)
            stats.processed += 1

            user = existing.get(person.id)
            try:
                if user is None:
                    user = LmsUser(id=person.id)
                    self._apply(user, person)
                    user.synced_at = utcnow()
                    self.session.add(user)
                    self.session.commit()
                    existing[person.id] = user
                    stats.created += 1
                else:
                    changed = self._apply(user, person)
                    user.synced_at = utcnow()
                    self.session.commit()
                    if changed:
                        stats.updated += 1
                    else:
                        stats.unchanged += 1
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=person.id, entity_name=person.email, error=exc)
            self.emit_progress(index, total, person.email or person.id)

        if stats.mode is SyncMode.FULL:
            if fetch.complete:
                self._mark_missing(stats, existing, seen)
            else:
                stats.details["deletion_pass"] = "skipped_incomplete_fetch"

        stats.details["contacts_linked"] = link_contacts_to_lms_users(self.session)

    def _mark_missing(self, stats: SyncStats, existing: dict[str, LmsUser], seen: set[str]) -> None:
        for user_id, user in existing.items():
            if user_id in seen or user.status is LmsUserStatus.DELETED:
                continue
            try:
                user.status = LmsUserStatus.DELETED
                self.session.commit()
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=user_id, entity_name=user.email, error=exc)
                continue
            stats.deleted += 1
