"""
Eligibility classification of fetched records.

Every function here is pure: it takes records and ``FilterRules`` and returns
which records are valid and why the others were excluded. Checks run in a
fixed order and the first failing check decides the reason, so each excluded
record carries exactly one reason tag.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Iterable, TypeVar

from email_validator import EmailNotValidError, validate_email

from config.filter_rules import DEFAULT_RULES, FilterRules
from partner_sync.models.enums import PartnerTier

from .records import LmsGroupRecord, PrmAccount, PrmUser

RecordT = TypeVar("RecordT")


class ExclusionReason(str, Enum):
    NO_NAME = "noName"
    INACTIVE = "inactive"
    INVALID_TIER = "invalidTier"
    EXCLUDED_NAME = "excludedName"
    INVALID_EMAIL = "invalidEmail"
    INACTIVE_STATUS = "inactiveStatus"
    EXCLUDED_DOMAIN = "excludedDomain"
    EXCLUDED_PATTERN = "excludedPattern"
    EXCLUDED_GROUP = "excludedGroup"


@dataclass(frozen=True)
class FilteredRecord(Generic[RecordT]):
    record: RecordT
    reason: ExclusionReason


@dataclass
class ClassificationResult(Generic[RecordT]):
    valid: list[RecordT] = field(default_factory=list)
    filtered: list[FilteredRecord[RecordT]] = field(default_factory=list)

    def reason_counts(self) -> dict[str, int]:
        counts = Counter(item.reason.value for item in self.filtered)
        return dict(sorted(counts.items()))

    def to_dict(self) -> dict:
        return {
            "valid": len(self.valid),
            "filtered": len(self.filtered),
            "reasons": self.reason_counts(),
        }


def _casefold_set(values: Iterable[str]) -> set[str]:
    return {str(value).strip().lower() for value in values}


def _allowed_tiers(rules: FilterRules) -> set[PartnerTier]:
    return {PartnerTier.parse(value) for value in rules.valid_tiers}


def partner_exclusion_reason(account: PrmAccount, rules: FilterRules = DEFAULT_RULES) -> ExclusionReason | None:
    """Return why ``account`` is ineligible, or None when it is valid."""

    if not account.name:
        return ExclusionReason.NO_NAME
    if (account.status or "").lower() in _casefold_set(rules.excluded_account_statuses):
        return ExclusionReason.INACTIVE
    try:
        tier = PartnerTier.parse(account.tier)
    except ValueError:
        return ExclusionReason.INVALID_TIER
    if tier not in _allowed_tiers(rules):
        return ExclusionReason.INVALID_TIER
    name = account.name.lower()
    if any(fragment.lower() in name for fragment in rules.excluded_account_names):
        return ExclusionReason.EXCLUDED_NAME
    return None


def is_valid_email(value: str | None) -> bool:
    if not value:
        return False
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def contact_exclusion_reason(user: PrmUser, rules: FilterRules = DEFAULT_RULES) -> ExclusionReason | None:
    """Return why ``user`` is ineligible, or None when it is valid."""

    email = (user.email or "").strip().lower()
    if not is_valid_email(email):
        return ExclusionReason.INVALID_EMAIL
    if user.status and user.status.lower() not in _casefold_set(rules.valid_contact_statuses):
        return ExclusionReason.INACTIVE_STATUS
    local_part, _, domain = email.rpartition("@")
    if domain in _casefold_set(rules.excluded_email_domains):
        return ExclusionReason.EXCLUDED_DOMAIN
    if any(pattern.lower() in local_part for pattern in rules.excluded_email_patterns):
        return ExclusionReason.EXCLUDED_PATTERN
    return None


def is_all_partners_group(name: str | None, rules: FilterRules = DEFAULT_RULES) -> bool:
    return (name or "").strip().lower() == rules.all_partners_group_name.strip().lower()


def group_exclusion_reason(group: LmsGroupRecord, rules: FilterRules = DEFAULT_RULES) -> ExclusionReason | None:
    name = (group.name or "").strip().lower()
    if not name:
        return ExclusionReason.NO_NAME
    if name in _casefold_set(rules.excluded_group_names):
        return ExclusionReason.EXCLUDED_GROUP
    if is_all_partners_group(name, rules):
        return None
    if name.startswith(rules.partner_group_prefix.lower()):
        return None
    if any(keyword.lower() in name for keyword in rules.excluded_group_keywords):
        return ExclusionReason.EXCLUDED_GROUP
    return None


def _classify(records, reason_fn, rules: FilterRules) -> ClassificationResult:
    result: ClassificationResult = ClassificationResult()
    for record in records:
        reason = reason_fn(record, rules)
        if reason is None:
            result.valid.append(record)
        else:
            result.filtered.append(FilteredRecord(record, reason))
    return result


def classify_partners(
    accounts: Iterable[PrmAccount], rules: FilterRules = DEFAULT_RULES
) -> ClassificationResult[PrmAccount]:
    return _classify(accounts, partner_exclusion_reason, rules)


def classify_contacts(users: Iterable[PrmUser], rules: FilterRules = DEFAULT_RULES) -> ClassificationResult[PrmUser]:
    return _classify(users, contact_exclusion_reason, rules)


def classify_groups(
    groups: Iterable[LmsGroupRecord], rules: FilterRules = DEFAULT_RULES
) -> ClassificationResult[LmsGroupRecord]:
    return _classify(groups, group_exclusion_reason, rules)


def strip_partner_prefix(name: str, rules: FilterRules = DEFAULT_RULES) -> str:
    prefix = rules.partner_group_prefix
    if name.lower().startswith(prefix.lower()):
        return name[len(prefix) :]
    return name
