"""
Offboarding: revoke LMS access when a partner or contact leaves the program.

Removals are compensating actions against the LMS. They are retried a few
times by the client but are not transactional: a failed removal is reported in
the result so an operator (or the next sync) can try again, and local
membership rows are only deleted for removals the LMS accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.filter_rules import DEFAULT_RULES, FilterRules
from partner_sync.models import Contact, DeletionReason, LmsGroup, LmsGroupMember, Partner, db

from .clients import LmsClient
from .errors import SyncError
from .metrics import record_offboarding

DEFAULT_REMOVAL_BATCH_SIZE = 50


@dataclass
class OffboardResult:
    entity_type: str
    entity_id: int
    success: bool = True
    message: str = ""
    lms_user_ids: list[str] = field(default_factory=list)
    removed_from_groups: list[str] = field(default_factory=list)
    deleted_groups: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str) -> "OffboardResult":
        self.success = False
        self.errors.append(message)
        if not self.message:
            self.message = message
        return self

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "success": self.success,
            "message": self.message,
            "lms_user_ids": list(self.lms_user_ids),
            "removed_from_groups": list(self.removed_from_groups),
            "deleted_groups": list(self.deleted_groups),
            "errors": list(self.errors),
        }


@dataclass
class BatchOffboardResult:
    entity_type: str
    results: list[OffboardResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
        }


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class OffboardingService:
    """Remove LMS memberships and partner groups for offboarded entities."""

    def __init__(
        self,
        lms_client: LmsClient,
        *,
        rules: FilterRules = DEFAULT_RULES,
        session: Session | None = None,
        batch_size: int = DEFAULT_REMOVAL_BATCH_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        self.lms = lms_client
        self.rules = rules
        self.session = session or db.session
        self.batch_size = max(1, batch_size)
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_all_partners_group(self) -> LmsGroup | None:
        stmt = (
            select(LmsGroup)
            .where(func.lower(LmsGroup.name) == self.rules.all_partners_group_name.strip().lower())
            .order_by(LmsGroup.is_active.desc(), LmsGroup.id)
        )
        return self.session.execute(stmt).scalars().first()

    def _partner_groups(self, partner_id: int) -> list[LmsGroup]:
        stmt = select(LmsGroup).where(LmsGroup.partner_id == partner_id).order_by(LmsGroup.id)
        return list(self.session.execute(stmt).scalars())

    def _partner_lms_user_ids(self, partner_id: int, groups: Sequence[LmsGroup]) -> list[str]:
        contact_ids = self.session.execute(
            select(Contact.lms_user_id).where(Contact.partner_id == partner_id, Contact.lms_user_id.isnot(None))
        ).scalars()
        user_ids = list(dict.fromkeys(str(user_id) for user_id in contact_ids))
        group_ids = [group.id for group in groups]
        if group_ids:
            member_ids = self.session.execute(
                select(LmsGroupMember.user_id).where(LmsGroupMember.group_id.in_(group_ids))
            ).scalars()
            for user_id in member_ids:
                if user_id not in user_ids:
                    user_ids.append(user_id)
        return user_ids

    # ------------------------------------------------------------------
    # Remote removal
    # ------------------------------------------------------------------

    def remove_users_from_group(self, group_id: str, user_ids: Sequence[str]) -> tuple[list[str], list[str]]:
        """
        Remove ``user_ids`` from ``group_id`` in batches.

        When a batch request fails every user of that batch is retried on its
        own so one bad id does not block the rest. Returns the removed ids and
        the error messages for ids that could not be removed.
        """

        removed: list[str] = []
        errors: list[str] = []
        for batch in _chunks(list(user_ids), self.batch_size):
            try:
                self.lms.remove_people_from_group(group_id, batch)
                removed.extend(batch)
                continue
            except SyncError as exc:
                if len(batch) == 1:
                    errors.append(f"Failed to remove {batch[0]} from group {group_id}: {exc}")
                    continue
                self.logger.warning(
                    "Batch removal from group %s failed; retrying %s users individually",
                    group_id,
                    len(batch),
                    extra={"lms_group_id": group_id, "sync_error": str(exc)},
                )
            for user_id in batch:
                try:
                    self.lms.remove_people_from_group(group_id, [user_id])
                    removed.append(user_id)
                except SyncError as exc:
                    errors.append(f"Failed to remove {user_id} from group {group_id}: {exc}")

        if removed:
            self.session.execute(
                delete(LmsGroupMember).where(
                    LmsGroupMember.group_id == group_id,
                    LmsGroupMember.user_id.in_(removed),
                )
            )
            self.session.commit()
        return removed, errors

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def offboard_contact(self, contact_id: int) -> OffboardResult:
        result = OffboardResult(entity_type="contact", entity_id=contact_id)
        contact = self.session.get(Contact, contact_id)
        if contact is None:
            result.fail(f"Contact {contact_id} not found")
            record_offboarding("contact", "failure")
            return result

        if not contact.lms_user_id:
            result.message = "No LMS user linked; nothing to remove"
            record_offboarding("contact", "success")
            return result

        user_id = str(contact.lms_user_id)
        result.lms_user_ids.append(user_id)
        groups: list[LmsGroup] = []
        if contact.partner_id is not None:
            groups.extend(group for group in self._partner_groups(contact.partner_id) if group.is_active)
        all_partners = self.find_all_partners_group()
        if all_partners is not None and all(group.id != all_partners.id for group in groups):
            groups.append(all_partners)

        for group in groups:
            removed, errors = self.remove_users_from_group(group.id, [user_id])
            if removed:
                result.removed_from_groups.append(group.id)
            for error in errors:
                result.fail(error)

        if result.success:
            result.message = f"Removed LMS user {user_id} from {len(result.removed_from_groups)} group(s)"
        record_offboarding("contact", "success" if result.success else "failure")
        self.logger.info(
            "Contact offboarded" if result.success else "Contact offboarding incomplete",
            extra={"contact_id": contact_id, "offboard_result": result.to_dict()},
        )
        return result

    # ------------------------------------------------------------------
    # Partners
    # ------------------------------------------------------------------

    def offboard_partner(self, partner_id: int) -> OffboardResult:
        result = OffboardResult(entity_type="partner", entity_id=partner_id)
        partner = self.session.get(Partner, partner_id)
        if partner is None:
            result.fail(f"Partner {partner_id} not found")
            record_offboarding("partner", "failure")
            return result

        groups = self._partner_groups(partner_id)
        user_ids = self._partner_lms_user_ids(partner_id, groups)
        result.lms_user_ids.extend(user_ids)

        all_partners = self.find_all_partners_group()
        if all_partners is not None and user_ids:
            removed, errors = self.remove_users_from_group(all_partners.id, user_ids)
            if removed:
                result.removed_from_groups.append(all_partners.id)
            for error in errors:
                result.fail(error)

        for group in groups:
            if all_partners is not None and group.id == all_partners.id:
                continue
            try:
                deleted = self.lms.delete_group(group.id)
            except SyncError as exc:
                result.fail(f"Failed to delete LMS group {group.id}: {exc}")
                continue
            if not deleted:
                self.logger.info("LMS group %s was already deleted", group.id)
            self._retire_local_group(group)
            result.deleted_groups.append(group.id)

        if result.success:
            result.message = (
                f"Offboarded {len(user_ids)} LMS user(s) and removed {len(result.deleted_groups)} group(s)"
            )
        record_offboarding("partner", "success" if result.success else "failure")
        self.logger.info(
            "Partner offboarded" if result.success else "Partner offboarding incomplete",
            extra={"partner_id": partner_id, "offboard_result": result.to_dict()},
        )
        return result

    def _retire_local_group(self, group: LmsGroup) -> None:
        self.session.execute(delete(LmsGroupMember).where(LmsGroupMember.group_id == group.id))
        group.soft_delete(DeletionReason.PARTNER_OFFBOARDED)
        group.user_count = 0
        group.partner_id = None
        self.session.commit()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _run_batch(self, entity_type: str, ids: Iterable[int], handler) -> BatchOffboardResult:
        batch = BatchOffboardResult(entity_type=entity_type)
        for entity_id in ids:
            try:
                batch.results.append(handler(entity_id))
            except SQLAlchemyError as exc:
                self.session.rollback()
                self.logger.exception("Offboarding %s %s failed", entity_type, entity_id)
                batch.results.append(OffboardResult(entity_type=entity_type, entity_id=entity_id).fail(str(exc)))
        self.logger.info(
            "Batch offboarding finished",
            extra={
                "offboard_entity_type": entity_type,
                "offboard_total": batch.total,
                "offboard_succeeded": batch.succeeded,
                "offboard_failed": batch.failed,
            },
        )
        return batch

    def offboard_contacts(self, contact_ids: Iterable[int]) -> BatchOffboardResult:
        return self._run_batch("contact", contact_ids, self.offboard_contact)

    def offboard_partners(self, partner_ids: Iterable[int]) -> BatchOffboardResult:
        return self._run_batch("partner", partner_ids, self.offboard_partner)
