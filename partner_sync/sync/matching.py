"""
Identity resolution between remote records and local rows.

Matchers build in-memory indexes over the local table once per run and
resolve each remote record through a fixed chain of rules. The first rule that
finds a row wins. When several rows share a key, the row with the lowest
local id is kept, so resolution never depends on query order.

Only the external id rule may return a row that is already bound to another
external id or that an earlier record claimed during the same run; the
fallback rules skip such rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, TypeVar

from partner_sync.models import Contact, Partner

from .records import PrmAccount, PrmUser

RowT = TypeVar("RowT")

SHORT_CRM_ID_LENGTH = 15
LONG_CRM_ID_LENGTH = 18


class MatchRule(str, Enum):
    EXTERNAL_ID = "external_id"
    CROSS_REFERENCE = "cross_reference"
    CROSS_REFERENCE_PREFIX = "cross_reference_prefix"
    NAME = "name"
    EMAIL = "email"


@dataclass(frozen=True)
class MatchResult(Generic[RowT]):
    row: RowT
    rule: MatchRule


def crm_ids_equivalent(left: str | None, right: str | None) -> bool:
    """
    True when two CRM ids are the same record.

    Ids are equal, or one is the 15-character form of the other's
    18-character form (the 18-character id is the 15-character id plus a
    case-checksum suffix). Comparison is case-sensitive.
    """

    if not left or not right:
        return False
    if left == right:
        return True
    lengths = {len(left), len(right)}
    if lengths != {SHORT_CRM_ID_LENGTH, LONG_CRM_ID_LENGTH}:
        return False
    return left[:SHORT_CRM_ID_LENGTH] == right[:SHORT_CRM_ID_LENGTH]


def _normalize_name(value: str | None) -> str | None:
    if not value:
        return None
    text = " ".join(value.split()).lower()
    return text or None


def _normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower() or None


def _row_order(row) -> tuple[bool, int]:
    return (row.id is None, row.id or 0)


class _KeyIndex(Generic[RowT]):
    """Key to rows, lowest local id first. Re-indexing a row drops its old keys."""

    def __init__(self) -> None:
        self._rows: dict[str, list[RowT]] = {}
        self._keys_of: dict[int, tuple[str, ...]] = {}

    def put(self, row: RowT, keys: Iterable[str | None]) -> None:
        self.discard(row)
        kept = tuple(dict.fromkeys(key for key in keys if key))
        for key in kept:
            bucket = self._rows.setdefault(key, [])
            bucket.append(row)
            bucket.sort(key=_row_order)
        self._keys_of[id(row)] = kept

    def discard(self, row: RowT) -> None:
        for key in self._keys_of.pop(id(row), ()):
            remaining = [other for other in self._rows.get(key, ()) if other is not row]
            if remaining:
                self._rows[key] = remaining
            else:
                self._rows.pop(key, None)

    def candidates(self, key: str | None) -> list[RowT]:
        return list(self._rows.get(key, ())) if key else []

    def first(self, key: str | None) -> RowT | None:
        bucket = self._rows.get(key) if key else None
        return bucket[0] if bucket else None


class _Matcher(Generic[RowT]):
    def __init__(self) -> None:
        self._by_prm_id: _KeyIndex[RowT] = _KeyIndex()
        self._claimed: set[int] = set()

    def claim(self, row: RowT) -> None:
        """Mark ``row`` as bound to a remote record in this run."""
        self._claimed.add(id(row))

    def _available(self, row: RowT, external_id: str) -> bool:
        if id(row) in self._claimed:
            return False
        prm_id = row.prm_id  # type: ignore[attr-defined]
        return not prm_id or str(prm_id) == external_id

    def _first_available(self, index: _KeyIndex[RowT], key: str | None, external_id: str) -> RowT | None:
        for row in index.candidates(key):
            if self._available(row, external_id):
                return row
        return None

    def find_by_prm_id(self, prm_id: str | None) -> RowT | None:
        return self._by_prm_id.first(str(prm_id)) if prm_id else None


class PartnerMatcher(_Matcher[Partner]):
    """Resolve PRM accounts to local ``Partner`` rows."""

    def __init__(self, partners: Iterable[Partner] = ()) -> None:
        super().__init__()
        self._by_crm_id: _KeyIndex[Partner] = _KeyIndex()
        self._by_short_crm_id: _KeyIndex[Partner] = _KeyIndex()
        self._by_long_crm_prefix: _KeyIndex[Partner] = _KeyIndex()
        self._by_name: _KeyIndex[Partner] = _KeyIndex()
        for partner in sorted(partners, key=_row_order):
            self.add(partner)

    def add(self, partner: Partner) -> None:
        """Index ``partner`` under its current keys, replacing the keys it had before."""
        self._by_prm_id.put(partner, [str(partner.prm_id) if partner.prm_id else None])
        crm_id = partner.crm_id
        self._by_crm_id.put(partner, [crm_id])
        self._by_short_crm_id.put(partner, [crm_id if crm_id and len(crm_id) == SHORT_CRM_ID_LENGTH else None])
        self._by_long_crm_prefix.put(
            partner,
            [crm_id[:SHORT_CRM_ID_LENGTH] if crm_id and len(crm_id) == LONG_CRM_ID_LENGTH else None],
        )
        self._by_name.put(partner, [_normalize_name(partner.name)])

    def match(self, account: PrmAccount) -> MatchResult[Partner] | None:
        external_id = str(account.id)
        row = self._by_prm_id.first(external_id)
        if row is not None:
            return MatchResult(row, MatchRule.EXTERNAL_ID)

        crm_id = account.crm_id
        if crm_id:
            row = self._first_available(self._by_crm_id, crm_id, external_id)
            if row is not None:
                return MatchResult(row, MatchRule.CROSS_REFERENCE)
            row = None
            if len(crm_id) == LONG_CRM_ID_LENGTH:
                row = self._first_available(self._by_short_crm_id, crm_id[:SHORT_CRM_ID_LENGTH], external_id)
            elif len(crm_id) == SHORT_CRM_ID_LENGTH:
                row = self._first_available(self._by_long_crm_prefix, crm_id, external_id)
            if row is not None:
                return MatchResult(row, MatchRule.CROSS_REFERENCE_PREFIX)

        row = self._first_available(self._by_name, _normalize_name(account.name), external_id)
        if row is not None:
            return MatchResult(row, MatchRule.NAME)
        return None

    def find_by_name(self, name: str | None) -> Partner | None:
        return self._by_name.first(_normalize_name(name))


class ContactMatcher(_Matcher[Contact]):
    """Resolve PRM users to local ``Contact`` rows (external id, then email)."""

    def __init__(self, contacts: Iterable[Contact] = ()) -> None:
        super().__init__()
        self._by_email: _KeyIndex[Contact] = _KeyIndex()
        for contact in sorted(contacts, key=_row_order):
            self.add(contact)

    def add(self, contact: Contact) -> None:
        self._by_prm_id.put(contact, [str(contact.prm_id) if contact.prm_id else None])
        self._by_email.put(contact, [_normalize_email(contact.email)])

    def match(self, user: PrmUser) -> MatchResult[Contact] | None:
        external_id = str(user.id)
        row = self._by_prm_id.first(external_id)
        if row is not None:
            return MatchResult(row, MatchRule.EXTERNAL_ID)
        row = self._first_available(self._by_email, _normalize_email(user.email), external_id)
        if row is not None:
            return MatchResult(row, MatchRule.EMAIL)
        return None
