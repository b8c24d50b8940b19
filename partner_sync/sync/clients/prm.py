"""
PRM object API client.

Collections are paged with ``skip``/``take`` and wrapped in a
``{success, data: {count, results}}`` envelope. Paging continues while a page
comes back full.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

from partner_sync.utils.timeutils import as_utc

from ..errors import ApiError, ParseError
from .base import FetchResult, PageRequest, PaginatedFetcher

DEFAULT_PRM_BASE_URL = "https://prod.impartner.live/api/objects/v1"

ACCOUNT_FIELDS: Sequence[str] = (
    "Id",
    "Name",
    "Partner_Tier__cf",
    "Account_Status__cf",
    "Account_Owner__cf",
    "Account_Owner_Email__cf",
    "Partner_Type__cf",
    "Website",
    "CrmId",
    "MailingCity",
    "MailingCountry",
    "Region",
    "Updated",
    "ParentAccountId",
)

USER_FIELDS: Sequence[str] = (
    "Id",
    "Email",
    "FirstName",
    "LastName",
    "Title",
    "Phone",
    "Account",
    "AccountName",
    "Contact_Status__cf",
    "IsActive",
    "CrmId",
    "Updated",
)


def format_prm_cursor(value: datetime) -> str:
    """PRM filters take an ISO timestamp without the trailing ``Z``."""
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


def build_prm_filter(*, since: datetime | None = None, extra: str | None = None) -> str | None:
    clauses = []
    if extra:
        clauses.append(extra)
    if since is not None:
        clauses.append(f"Updated > '{format_prm_cursor(since)}'")
    if not clauses:
        return None
    return " and ".join(clauses)


class PrmClient(PaginatedFetcher):
    """Read-only client for PRM accounts and users."""

    system = "prm"

    def __init__(self, *, api_key: str, tenant_id: str, base_url: str = DEFAULT_PRM_BASE_URL, **kwargs) -> None:
        super().__init__(base_url=base_url, **kwargs)
        self.api_key = api_key
        self.tenant_id = tenant_id

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"prm-key {self.api_key}",
            "X-PRM-TenantId": str(self.tenant_id),
            "Accept": "application/json",
        }

    def _first_page(self, endpoint: str, *, since=None, params: Mapping[str, Any] | None = None) -> PageRequest:
        query: dict[str, Any] = dict(params or {})
        fields = query.get("fields")
        if isinstance(fields, (list, tuple)):
            query["fields"] = ",".join(fields)
        filter_expr = build_prm_filter(since=since, extra=query.pop("filter", None))
        if filter_expr:
            query["filter"] = filter_expr
        query["take"] = self.page_size
        query["skip"] = 0
        return PageRequest(self.build_url(endpoint), query)

    def _extract_records(self, payload: Any, endpoint: str) -> list[dict]:
        # request() already counted the HTTP success; an error envelope overrides it.
        if not isinstance(payload, dict):
            error = ParseError("PRM response is not a JSON object", endpoint=endpoint, raw=repr(payload))
            self._record_failure("parse_error", error)
            raise error
        if not payload.get("success", False):
            message = payload.get("message") or "PRM reported an unsuccessful request."
            error = ApiError(None, endpoint, message)
            self._record_failure("api_error", error)
            raise error
        data = payload.get("data") or {}
        results = data.get("results") if isinstance(data, dict) else None
        if results is None:
            return []
        if not isinstance(results, list):
            error = ParseError("PRM results are not a list", endpoint=endpoint, raw=repr(data))
            self._record_failure("parse_error", error)
            raise error
        return results

    def _next_page(self, current: PageRequest, payload: Any, records: list[dict]) -> PageRequest | None:
        if len(records) < self.page_size:
            return None
        params = dict(current.params or {})
        params["skip"] = int(params.get("skip", 0)) + len(records)
        return PageRequest(current.url, params)

    def fetch_accounts(self, *, since: datetime | None = None) -> FetchResult:
        return self.fetch_all("Account", since=since, params={"fields": ACCOUNT_FIELDS})

    def fetch_users(self, *, since: datetime | None = None) -> FetchResult:
        return self.fetch_all("User", since=since, params={"fields": USER_FIELDS})
