"""
Shared HTTP plumbing for the PRM and LMS clients.

``PaginatedFetcher`` owns the request/response handling (timeouts, status
mapping, JSON decoding, health tracking) and the page-walking loop.
Subclasses describe how their remote system pages: the first request, where
records live in a page body, and how to build the next request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Mapping
from urllib.parse import urljoin

import requests

from ..errors import ApiError, ParseError, SyncError, TransportError
from ..health import HealthMonitor
from ..metrics import record_api_request

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_PAGE_SIZE = 100
DEFAULT_PAGE_DELAY_SECONDS = 0.125
DEFAULT_MAX_PAGES = 500
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0


@dataclass(frozen=True)
class PageRequest:
    url: str
    params: Mapping[str, Any] | None = None


@dataclass
class FetchResult:
    """Records accumulated by ``fetch_all``; ``error`` is set when a later page failed."""

    records: list[dict] = field(default_factory=list)
    pages: int = 0
    error: SyncError | None = None
    truncated: bool = False

    @property
    def partial(self) -> bool:
        return self.error is not None

    @property
    def complete(self) -> bool:
        """True when every page was read, i.e. absence from ``records`` means absence upstream."""
        return self.error is None and not self.truncated

    def __len__(self) -> int:
        return len(self.records)


class PaginatedFetcher:
    """Base class for authenticated, paginated remote collections."""

    system = "remote"

    def __init__(
        self,
        *,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = DEFAULT_PAGE_DELAY_SECONDS,
        max_pages: int = DEFAULT_MAX_PAGES,
        health: HealthMonitor | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.page_size = page_size
        self.page_delay = page_delay
        self.max_pages = max_pages
        self.health = health or HealthMonitor(system=self.system)
        self.sleep_fn = sleep_fn
        self.retry_backoff = retry_backoff
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _first_page(
        self,
        endpoint: str,
        *,
        since=None,
        params: Mapping[str, Any] | None = None,
    ) -> PageRequest:
        raise NotImplementedError

    def _extract_records(self, payload: Any, endpoint: str) -> list[dict]:
        raise NotImplementedError

    def _next_page(self, current: PageRequest, payload: Any, records: list[dict]) -> PageRequest | None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return urljoin(self.base_url + "/", endpoint.lstrip("/"))

    def _endpoint_label(self, url: str) -> str:
        if url.startswith(self.base_url):
            return url[len(self.base_url) :] or "/"
        return url

    def _record_failure(self, outcome: str, error: BaseException) -> None:
        self.health.record_failure(error)
        record_api_request(self.system, outcome, self.health.consecutive_failures)

    def _record_success(self) -> None:
        self.health.record_success()
        record_api_request(self.system, "success", 0)

    def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        expect_json: bool = True,
    ) -> Any:
        """
        Perform one HTTP call and return the decoded JSON body.

        Non-2xx responses raise ``ApiError``; timeouts and connection failures
        raise ``TransportError``; undecodable bodies raise ``ParseError``. A 404
        means the remote system answered coherently, so it does not count
        against the health monitor.
        """

        url = self.build_url(endpoint)
        label = self._endpoint_label(url)
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            error = TransportError(f"{self.system} request timed out after {self.timeout}s", endpoint=label)
            self._record_failure("transport_error", error)
            raise error from exc
        except requests.RequestException as exc:
            error = TransportError(f"{self.system} request failed: {exc}", endpoint=label)
            self._record_failure("transport_error", error)
            raise error from exc

        status = response.status_code
        if not 200 <= status < 300:
            error = ApiError(status, label)
            if status == HTTPStatus.NOT_FOUND:
                self._record_success()
            else:
                self._record_failure("api_error", error)
            raise error

        if not expect_json or status == HTTPStatus.NO_CONTENT or not response.content:
            self._record_success()
            return None

        try:
            payload = response.json()
        except ValueError as exc:
            error = ParseError(f"{self.system} returned a non-JSON body", endpoint=label, raw=response.text)
            self.logger.warning(
                "Unparseable %s response from %s",
                self.system,
                label,
                extra={"sync_system": self.system, "sync_endpoint": label, "raw_preview": error.raw_preview},
            )
            self._record_failure("parse_error", error)
            raise error from exc

        self._record_success()
        return payload

    def request_with_retry(self, method: str, endpoint: str, *, attempts: int = 3, **kwargs) -> Any:
        """Retry transport failures, 429 and 5xx up to ``attempts`` times with linear backoff."""

        attempt = 1
        while True:
            try:
                return self.request(method, endpoint, **kwargs)
            except SyncError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                delay = self.retry_backoff * attempt
                self.logger.info(
                    "Retrying %s %s after %s (attempt %s/%s)",
                    method,
                    endpoint,
                    exc,
                    attempt + 1,
                    attempts,
                )
                self.sleep_fn(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    def fetch_all(
        self,
        endpoint: str,
        *,
        since=None,
        params: Mapping[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> FetchResult:
        """
        Walk every page of ``endpoint`` and accumulate the records.

        A failure on the first page propagates. A failure on a later page stops
        the walk and returns what was collected with ``error`` attached so the
        caller can decide whether partial data is usable.
        """

        page_limit = max_pages or self.max_pages
        result = FetchResult()
        page_request: PageRequest | None = self._first_page(endpoint, since=since, params=params)

        while page_request is not None:
            if result.pages >= page_limit:
                result.truncated = True
                self.logger.warning(
                    "Stopped paging %s after reaching the %s page ceiling",
                    endpoint,
                    page_limit,
                    extra={"sync_system": self.system, "sync_endpoint": endpoint, "sync_pages": result.pages},
                )
                break
            if result.pages and self.page_delay:
                self.sleep_fn(self.page_delay)
            try:
                payload = self.request("GET", page_request.url, params=page_request.params)
                page_records = self._extract_records(payload, endpoint)
            except SyncError as exc:
                if result.pages == 0:
                    raise
                result.error = exc
                self.logger.warning(
                    "Page %s of %s failed; returning %s records collected so far",
                    result.pages + 1,
                    endpoint,
                    len(result.records),
                    extra={"sync_system": self.system, "sync_endpoint": endpoint, "sync_error": str(exc)},
                )
                break
            result.pages += 1
            result.records.extend(page_records)
            page_request = self._next_page(page_request, payload, page_records)

        return result
