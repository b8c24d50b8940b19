"""
Remote API clients and their factories.

Clients are built from Flask config; the health monitors live in the sync
extension state so the circuit breaker survives across runs in a process.
"""

from __future__ import annotations

from typing import Any

from flask import Flask, current_app

from partner_sync.utils.sync import get_sync_state

from ..health import HealthMonitor
from .base import FetchResult, PageRequest, PaginatedFetcher
from .lms import DEFAULT_LMS_BASE_URL, LmsClient, membership_user_id
from .prm import DEFAULT_PRM_BASE_URL, PrmClient

__all__ = [
    "FetchResult",
    "LmsClient",
    "PageRequest",
    "PaginatedFetcher",
    "PrmClient",
    "create_lms_client",
    "create_prm_client",
    "get_health_monitor",
    "membership_user_id",
]


def _fetcher_options(config) -> dict[str, Any]:
    return {
        "timeout": config.get("SYNC_REQUEST_TIMEOUT", 30),
        "page_delay": config.get("SYNC_PAGE_DELAY_SECONDS", 0.125),
        "max_pages": config.get("SYNC_MAX_PAGES", 500),
    }


def get_health_monitor(app: Flask, system: str) -> HealthMonitor:
    """Return the process-wide monitor for ``system`` stored on the sync extension."""
    state = get_sync_state(app)
    monitors: dict[str, HealthMonitor] = state.setdefault("health_monitors", {})
    monitor = monitors.get(system)
    if monitor is None:
        monitor = HealthMonitor(
            system=system,
            threshold=int(app.config.get("SYNC_HEALTH_FAILURE_THRESHOLD", 5)),
        )
        monitors[system] = monitor
    return monitor


def create_prm_client(app: Flask | None = None, **overrides) -> PrmClient:
    app = app or current_app._get_current_object()  # type: ignore[attr-defined]
    config = app.config
    options = _fetcher_options(config)
    options.update(
        base_url=config.get("PRM_API_BASE_URL") or DEFAULT_PRM_BASE_URL,
        api_key=config.get("PRM_API_KEY") or "",
        tenant_id=config.get("PRM_TENANT_ID") or "",
        page_size=config.get("PRM_PAGE_SIZE", 100),
        health=get_health_monitor(app, PrmClient.system),
        logger=app.logger,
    )
    options.update(overrides)
    return PrmClient(**options)


def create_lms_client(app: Flask | None = None, **overrides) -> LmsClient:
    app = app or current_app._get_current_object()  # type: ignore[attr-defined]
    config = app.config
    options = _fetcher_options(config)
    options.update(
        base_url=config.get("LMS_API_BASE_URL") or DEFAULT_LMS_BASE_URL,
        api_key=config.get("LMS_API_KEY") or "",
        page_size=config.get("LMS_PAGE_SIZE", 100),
        transcript_max_pages=config.get("SYNC_TRANSCRIPT_MAX_PAGES", 20),
        mutation_attempts=config.get("SYNC_MUTATION_ATTEMPTS", 3),
        health=get_health_monitor(app, LmsClient.system),
        logger=app.logger,
    )
    options.update(overrides)
    return LmsClient(**options)
