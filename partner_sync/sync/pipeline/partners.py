"""PRM accounts -> ``partners``."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select

from partner_sync.models import Partner, PartnerTier

from ..clients import FetchResult, PrmClient
from ..eligibility import classify_partners
from ..matching import PartnerMatcher
from ..offboarding import OffboardResult
from ..records import PrmAccount
from .base import ReconcilingStep, assign

PARTNER_FIELDS = (
    "name",
    "account_status",
    "partner_type",
    "region",
    "country",
    "website",
    "owner_name",
    "owner_email",
)


class PartnerSync(ReconcilingStep[PrmAccount, Partner]):
    sync_type = "prm_partners"
    entity_type = "partner"

    def __init__(self, prm_client: PrmClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.prm = prm_client

    def health_monitors(self):
        return (self.prm.health,)

    def fetch(self, since: datetime | None) -> FetchResult:
        return self.prm.fetch_accounts(since=since)

    def parse(self, payload) -> PrmAccount:
        return PrmAccount.from_payload(payload)

    def classify(self, records):
        return classify_partners(records, self.rules)

    def build_matcher(self) -> PartnerMatcher:
        return PartnerMatcher(self.session.execute(select(Partner)).scalars())

    def _values(self, account: PrmAccount) -> dict:
        return {
            "name": account.name,
            "account_status": account.status,
            "partner_type": account.partner_type,
            "region": account.region,
            "country": account.country,
            "website": account.website,
            "owner_name": account.owner_name,
            "owner_email": account.owner_email,
        }

    def create_row(self, account: PrmAccount) -> Partner:
        return Partner(
            tier=PartnerTier.parse(account.tier),
            prm_id=str(account.id),
            prm_parent_id=account.parent_id,
            crm_id=account.crm_id,
            **self._values(account),
        )

    def apply(self, partner: Partner, account: PrmAccount) -> bool:
        values = self._values(account)
        changed = False
        for attribute in PARTNER_FIELDS:
            changed |= assign(partner, attribute, values[attribute])
        changed |= assign(partner, "tier", PartnerTier.parse(account.tier))
        changed |= assign(partner, "prm_id", str(account.id))
        changed |= assign(partner, "prm_parent_id", account.parent_id)
        # Keep a CRM id learned elsewhere when the PRM has none.
        if account.crm_id:
            changed |= assign(partner, "crm_id", account.crm_id)
        return changed

    def local_linked_rows(self) -> list[Partner]:
        stmt = select(Partner).where(Partner.is_active.is_(True), Partner.prm_id.isnot(None)).order_by(Partner.id)
        return list(self.session.execute(stmt).scalars())

    def offboard(self, partner: Partner) -> OffboardResult:
        return self.offboarding.offboard_partner(partner.id)
