"""
LMS (Northpass v2) API client.

Collections follow the JSON:API convention: records under ``data`` and the
next page URL under ``links.next``. Besides reads, the client carries the two
mutations the offboarding flow needs: removing people from a group and
deleting a group.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

from partner_sync.utils.timeutils import as_utc

from ..errors import ApiError, ParseError
from .base import FetchResult, PageRequest, PaginatedFetcher

DEFAULT_LMS_BASE_URL = "https://api.northpass.com"
DEFAULT_TRANSCRIPT_MAX_PAGES = 20
DEFAULT_MUTATION_ATTEMPTS = 3


def format_lms_cursor(value: datetime) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def membership_user_id(membership: Mapping[str, Any]) -> str | None:
    """Person id of a group membership resource."""
    relationships = membership.get("relationships") or {}
    person = (relationships.get("person") or {}).get("data") or {}
    person_id = person.get("id")
    return str(person_id) if person_id else None


class LmsClient(PaginatedFetcher):
    """Client for people, groups, courses and transcripts in the LMS."""

    system = "lms"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_LMS_BASE_URL,
        transcript_max_pages: int = DEFAULT_TRANSCRIPT_MAX_PAGES,
        mutation_attempts: int = DEFAULT_MUTATION_ATTEMPTS,
        **kwargs,
    ) -> None:
        super().__init__(base_url=base_url, **kwargs)
        self.api_key = api_key
        self.transcript_max_pages = transcript_max_pages
        self.mutation_attempts = mutation_attempts

    def _headers(self) -> dict[str, str]:
        return {
            "X-Api-Key": self.api_key,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _first_page(self, endpoint: str, *, since=None, params: Mapping[str, Any] | None = None) -> PageRequest:
        query: dict[str, Any] = {"limit": self.page_size}
        query.update(params or {})
        if since is not None:
            query["filter[updated_at][gteq]"] = format_lms_cursor(since)
        return PageRequest(self.build_url(endpoint), query)

    def _extract_records(self, payload: Any, endpoint: str) -> list[dict]:
        if not isinstance(payload, dict):
            raise ParseError("LMS response is not a JSON object", endpoint=endpoint, raw=repr(payload))
        data = payload.get("data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise ParseError("LMS collection data is not a list", endpoint=endpoint, raw=repr(payload))
        return data

    def _next_page(self, current: PageRequest, payload: Any, records: list[dict]) -> PageRequest | None:
        links = payload.get("links") if isinstance(payload, dict) else None
        next_url = (links or {}).get("next")
        if not next_url or not records:
            return None
        # The next link already carries every query parameter.
        return PageRequest(self.build_url(next_url), None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_people(self, *, since: datetime | None = None) -> FetchResult:
        return self.fetch_all("/v2/people", since=since)

    def fetch_groups(self, *, since: datetime | None = None) -> FetchResult:
        return self.fetch_all("/v2/groups", since=since)

    def get_group(self, group_id: str) -> dict:
        endpoint = f"/v2/groups/{group_id}"
        payload = self.request("GET", endpoint)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ParseError("LMS group response has no data object", endpoint=endpoint, raw=repr(payload))
        return data

    def get_group_user_count(self, group_id: str) -> int:
        attributes = self.get_group(group_id).get("attributes") or {}
        return int(attributes.get("user_count") or 0)

    def fetch_group_memberships(self, group_id: str) -> FetchResult:
        return self.fetch_all(f"/v2/groups/{group_id}/memberships")

    def fetch_courses(self, *, since: datetime | None = None) -> FetchResult:
        return self.fetch_all("/v2/courses", since=since)

    def fetch_course_properties(self) -> FetchResult:
        return self.fetch_all("/v2/properties/courses")

    def fetch_transcripts(self, user_id: str) -> FetchResult:
        return self.fetch_all(f"/v2/transcripts/{user_id}", max_pages=self.transcript_max_pages)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def remove_people_from_group(self, group_id: str, user_ids: Iterable[str]) -> None:
        payload = {"data": [{"type": "people", "id": str(user_id)} for user_id in user_ids]}
        if not payload["data"]:
            return
        self.request_with_retry(
            "DELETE",
            f"/v2/groups/{group_id}/relationships/people",
            json_body=payload,
            expect_json=False,
            attempts=self.mutation_attempts,
        )

    def delete_group(self, group_id: str) -> bool:
        """Delete a group. Returns False when it was already gone (404)."""
        try:
            self.request_with_retry(
                "DELETE",
                f"/v2/groups/{group_id}",
                expect_json=False,
                attempts=self.mutation_attempts,
            )
        except ApiError as exc:
            if exc.is_not_found:
                return False
            raise
        return True
