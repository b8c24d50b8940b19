"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_sync_runs_counter = Counter(
    "partner_sync_runs_total",
    "Sync step executions by type and terminal status.",
    ["sync_type", "status"],
)
_sync_run_duration = Histogram(
    "partner_sync_run_duration_seconds",
    "Duration of sync step executions in seconds.",
    ["sync_type"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)
_sync_rows_counter = Counter(
    "partner_sync_rows_total",
    "Row outcomes produced by sync steps.",
    ["sync_type", "outcome"],
)
_api_requests_counter = Counter(
    "partner_sync_api_requests_total",
    "Remote API requests by system and outcome.",
    ["system", "outcome"],
)
_api_health_gauge = Gauge(
    "partner_sync_api_consecutive_failures",
    "Consecutive failed requests per remote system.",
    ["system"],
)
_offboarding_counter = Counter(
    "partner_sync_offboarding_total",
    "Offboarding attempts by entity type and outcome.",
    ["entity", "outcome"],
)

_ROW_OUTCOMES = ("created", "updated", "unchanged", "reactivated", "deleted", "failed")


def record_sync_run(*, sync_type: str, status: str, duration_seconds: float | None) -> None:
    """Count a finished sync step and observe its duration."""

    _sync_runs_counter.labels(sync_type=sync_type, status=status).inc()
    if duration_seconds is not None:
        _sync_run_duration.labels(sync_type=sync_type).observe(max(duration_seconds, 0.0))


def record_sync_rows(sync_type: str, counts: dict) -> None:
    for outcome in _ROW_OUTCOMES:
        value = int(counts.get(outcome) or 0)
        if value:
            _sync_rows_counter.labels(sync_type=sync_type, outcome=outcome).inc(value)


def record_api_request(
    system: str,
    outcome: Literal["success", "api_error", "transport_error", "parse_error"],
    consecutive_failures: int,
) -> None:
    _api_requests_counter.labels(system=system, outcome=outcome).inc()
    _api_health_gauge.labels(system=system).set(consecutive_failures)


def record_offboarding(entity: Literal["contact", "partner"], outcome: Literal["success", "failure"]) -> None:
    _offboarding_counter.labels(entity=entity, outcome=outcome).inc()
