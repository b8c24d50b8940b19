"""Dry-run classification of the PRM feeds; nothing is written."""

from __future__ import annotations

from config.filter_rules import DEFAULT_RULES, FilterRules

from ..clients import PrmClient
from ..eligibility import ClassificationResult, classify_contacts, classify_partners
from ..records import PrmAccount, PrmUser

DEFAULT_SAMPLE_SIZE = 10


def _summarize(classification: ClassificationResult, fetched: int, sample_size: int) -> dict:
    summary = classification.to_dict()
    summary["fetched"] = fetched
    summary["valid_sample"] = [record.label for record in classification.valid[:sample_size]]
    summary["filtered_sample"] = [
        {"record": item.record.label, "reason": item.reason.value} for item in classification.filtered[:sample_size]
    ]
    return summary


def build_preview(prm_client: PrmClient, rules: FilterRules = DEFAULT_RULES, *, sample_size: int = DEFAULT_SAMPLE_SIZE) -> dict:
    accounts_fetch = prm_client.fetch_accounts()
    users_fetch = prm_client.fetch_users()
    accounts = [PrmAccount.from_payload(payload) for payload in accounts_fetch.records]
    users = [PrmUser.from_payload(payload) for payload in users_fetch.records]
    return {
        "partners": _summarize(classify_partners(accounts, rules), len(accounts_fetch.records), sample_size),
        "contacts": _summarize(classify_contacts(users, rules), len(users_fetch.records), sample_size),
        "complete": accounts_fetch.complete and users_fetch.complete,
    }
