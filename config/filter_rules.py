"""
Eligibility rules for PRM accounts, PRM users and LMS groups.

The sync engine classifies every fetched record against these rules before
matching it to local rows. Defaults mirror the CRM export rules partners are
held to; operators can override them by pointing ``SYNC_FILTER_RULES_PATH`` at a
YAML or JSON file. Keys missing from the override keep their defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import yaml

from partner_sync.models.enums import PartnerTier

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FilterRules:
    """
    Allow and deny lists applied by the eligibility filter.

    Attributes:
        valid_tiers: Partner tiers that keep an account in the program.
        excluded_account_statuses: Account statuses that disqualify an account.
        excluded_account_names: Substrings that disqualify an account name.
        valid_contact_statuses: Contact statuses accepted when a status is present.
        excluded_email_domains: Email domains that disqualify a contact.
        excluded_email_patterns: Substrings of the email local part that
            disqualify a contact (shared or role mailboxes).
        excluded_group_names: Exact LMS group names that are never synced.
        excluded_group_keywords: Substrings that mark an LMS group as internal.
        partner_group_prefix: Prefix of dedicated partner groups in the LMS.
        all_partners_group_name: Name of the group every partner user belongs to.
    """

    valid_tiers: Sequence[str] = ("Premier", "Premier Plus", "Certified", "Registered", "Aggregator")
    excluded_account_statuses: Sequence[str] = ("Inactive",)
    excluded_account_names: Sequence[str] = ("nintex",)
    valid_contact_statuses: Sequence[str] = ("Active",)
    excluded_email_domains: Sequence[str] = ("bill.com", "nintex.com", "safalo.com", "crestan.com")
    excluded_email_patterns: Sequence[str] = (
        "demo",
        "sales",
        "support",
        "accounts",
        "test",
        "renewals",
        "finance",
        "payable",
    )
    excluded_group_names: Sequence[str] = ("all users",)
    excluded_group_keywords: Sequence[str] = ("admin", "internal", "test")
    partner_group_prefix: str = "ptr_"
    all_partners_group_name: str = "All Partners"


DEFAULT_RULES = FilterRules()

_SEQUENCE_FIELDS = {f.name for f in fields(FilterRules) if f.name not in {"partner_group_prefix", "all_partners_group_name"}}
_STRING_FIELDS = {"partner_group_prefix", "all_partners_group_name"}


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class FilterRulesConfigError(RuntimeError):
    """Raised when a filter rules override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise FilterRulesConfigError(f"Filter rules file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise FilterRulesConfigError(f"Unable to read filter rules file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise FilterRulesConfigError(f"Filter rules file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise FilterRulesConfigError("Filter rules override must be a JSON/YAML object.")
    return dict(data)


def _coerce_sequence(value: object, *, item_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    raise FilterRulesConfigError(f"Expected sequence for {item_name}, got {type(value).__name__}.")


def _coerce_tiers(value: object) -> tuple[str, ...]:
    tiers = []
    for item in _coerce_sequence(value, item_name="valid_tiers"):
        try:
            tiers.append(PartnerTier.parse(item).value)
        except ValueError as exc:
            raise FilterRulesConfigError(f"valid_tiers: {exc}") from exc
    return tuple(tiers)


def coerce_rules(raw: Mapping[str, object], *, base: FilterRules = DEFAULT_RULES) -> FilterRules:
    unknown = set(raw) - _SEQUENCE_FIELDS - _STRING_FIELDS
    if unknown:
        raise FilterRulesConfigError(f"Unknown filter rule keys: {', '.join(sorted(unknown))}.")
    overrides: dict[str, object] = {}
    for key, value in raw.items():
        if key in _STRING_FIELDS:
            text = str(value or "").strip()
            if not text:
                raise FilterRulesConfigError(f"{key} must be a non-empty string.")
            overrides[key] = text
        elif key == "valid_tiers":
            overrides[key] = _coerce_tiers(value)
        else:
            overrides[key] = _coerce_sequence(value, item_name=key)
    return replace(base, **overrides)


def load_filter_rules(config: Mapping[str, object] | None = None) -> FilterRules:
    """
    Load the active filter rules.

    ``config`` is a Flask config (or any mapping). ``SYNC_FILTER_RULES_PATH``
    points at an override file; ``SYNC_ALL_PARTNERS_GROUP_NAME`` overrides the
    distinguished group name without needing a file.
    """

    config_map = config or {}
    rules = DEFAULT_RULES
    override_path = config_map.get("SYNC_FILTER_RULES_PATH")
    if override_path:
        rules = coerce_rules(_load_override(Path(str(override_path))), base=rules)
    group_name = config_map.get("SYNC_ALL_PARTNERS_GROUP_NAME")
    if group_name:
        rules = replace(rules, all_partners_group_name=str(group_name))
    return rules


__all__ = [
    "DEFAULT_RULES",
    "FilterRules",
    "FilterRulesConfigError",
    "coerce_rules",
    "load_filter_rules",
]
