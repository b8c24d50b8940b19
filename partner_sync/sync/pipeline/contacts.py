"""PRM users -> ``contacts``."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select

from partner_sync.models import Contact, Partner

from ..clients import FetchResult, PrmClient
from ..eligibility import classify_contacts
from ..matching import ContactMatcher, PartnerMatcher
from ..offboarding import OffboardResult
from ..records import PrmUser
from .base import ReconcilingStep, SyncStats, assign

CONTACT_FIELDS = ("email", "first_name", "last_name", "title", "phone", "prm_status")


class ContactSync(ReconcilingStep[PrmUser, Contact]):
    """
    Reconcile PRM users into contacts.

    The owning partner is resolved through the PRM account id first and the
    account name second. ``lms_user_id`` belongs to the LMS side and is never
    written here.
    """

    sync_type = "prm_contacts"
    entity_type = "contact"

    def __init__(self, prm_client: PrmClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.prm = prm_client
        self._partners: PartnerMatcher | None = None

    def health_monitors(self):
        return (self.prm.health,)

    def fetch(self, since: datetime | None) -> FetchResult:
        return self.prm.fetch_users(since=since)

    def parse(self, payload) -> PrmUser:
        return PrmUser.from_payload(payload)

    def dedupe_key(self, user: PrmUser) -> str:
        return user.email or f"id:{user.id}"

    def classify(self, records):
        return classify_contacts(records, self.rules)

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        active_partners = self.session.execute(select(Partner).where(Partner.is_active.is_(True))).scalars()
        self._partners = PartnerMatcher(active_partners)
        try:
            super().execute(stats, since=since, cache=cache)
        finally:
            self._partners = None

    def build_matcher(self) -> ContactMatcher:
        return ContactMatcher(self.session.execute(select(Contact)).scalars())

    def resolve_partner(self, user: PrmUser) -> Partner | None:
        if self._partners is None:
            return None
        return self._partners.find_by_prm_id(user.account_id) or self._partners.find_by_name(user.account_name)

    def _values(self, user: PrmUser) -> dict:
        return {
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "title": user.title,
            "phone": user.phone,
            "prm_status": user.status,
        }

    def create_row(self, user: PrmUser) -> Contact:
        partner = self.resolve_partner(user)
        return Contact(
            partner_id=partner.id if partner else None,
            prm_id=str(user.id),
            crm_id=user.crm_id,
            **self._values(user),
        )

    def apply(self, contact: Contact, user: PrmUser) -> bool:
        values = self._values(user)
        changed = False
        for attribute in CONTACT_FIELDS:
            changed |= assign(contact, attribute, values[attribute])
        changed |= assign(contact, "prm_id", str(user.id))
        if user.crm_id:
            changed |= assign(contact, "crm_id", user.crm_id)
        partner = self.resolve_partner(user)
        if partner is not None:
            changed |= assign(contact, "partner_id", partner.id)
        return changed

    def local_linked_rows(self) -> list[Contact]:
        stmt = select(Contact).where(Contact.is_active.is_(True), Contact.prm_id.isnot(None)).order_by(Contact.id)
        return list(self.session.execute(stmt).scalars())

    def offboard(self, contact: Contact) -> OffboardResult:
        return self.offboarding.offboard_contact(contact.id)
