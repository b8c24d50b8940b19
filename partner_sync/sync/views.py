"""
Operational HTTP surface for triggering syncs, inspecting runs and offboarding.
"""

from __future__ import annotations

from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from config.filter_rules import FilterRulesConfigError
from partner_sync.models import SyncMode
from partner_sync.utils.sync import get_sync_state

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import CircuitOpenError, SyncError
from .pipeline import SyncOrchestrator

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

DEFAULT_RUNS_LIMIT = 50
MAX_RUNS_LIMIT = 500


def _json_error(message: str, status: HTTPStatus, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _requested_mode() -> SyncMode:
    body = request.get_json(silent=True) or {}
    raw = body.get("mode") if isinstance(body, dict) else None
    return SyncMode.parse(raw or request.args.get("mode"))


def _run_chain(name: str):
    try:
        mode = _requested_mode()
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    try:
        orchestrator = SyncOrchestrator.from_app(current_app)
        runner = orchestrator.run_prm_sync if name == "prm" else orchestrator.run_lms_sync
        result = runner(mode)
    except CircuitOpenError as exc:
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE, sync=name)
    except SyncError as exc:
        current_app.logger.warning("%s sync failed: %s", name.upper(), exc, extra={"sync_chain": name})
        return _json_error(str(exc), HTTPStatus.BAD_GATEWAY, sync=name)
    except FilterRulesConfigError as exc:
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR, sync=name)
    return jsonify(result), HTTPStatus.OK


@sync_blueprint.post("/prm")
def trigger_prm_sync():
    return _run_chain("prm")


@sync_blueprint.post("/lms")
def trigger_lms_sync():
    return _run_chain("lms")


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """Ping the sync worker through the heartbeat task."""
    state = get_sync_state(current_app)
    timeout_seconds = request.args.get("timeout", default=5.0, type=float)
    payload = {
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("partner_sync.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    except Exception as exc:  # pragma: no cover - broker failures
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


@sync_blueprint.get("/status")
def sync_status():
    return jsonify(SyncOrchestrator.from_app(current_app).status()), HTTPStatus.OK


@sync_blueprint.get("/preview")
def sync_preview():
    sample_size = request.args.get("sample", default=10, type=int)
    try:
        preview = SyncOrchestrator.from_app(current_app).preview(sample_size=max(0, sample_size))
    except CircuitOpenError as exc:
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE)
    except SyncError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_GATEWAY)
    return jsonify(preview), HTTPStatus.OK


@sync_blueprint.get("/runs")
def sync_runs():
    limit = request.args.get("limit", default=DEFAULT_RUNS_LIMIT, type=int)
    limit = max(1, min(limit, MAX_RUNS_LIMIT))
    sync_type = request.args.get("sync_type") or None
    audit = SyncOrchestrator.from_app(current_app).audit
    runs = audit.history(limit=limit, sync_type=sync_type)
    failures = audit.recent_failures(limit=limit, sync_type=sync_type)
    return (
        jsonify(
            {
                "runs": [run.to_dict() for run in runs],
                "failures": [
                    {
                        "id": failure.id,
                        "sync_type": failure.sync_type,
                        "sync_run_id": failure.sync_run_id,
                        "entity_type": failure.entity_type,
                        "entity_id": failure.entity_id,
                        "entity_name": failure.entity_name,
                        "reason": failure.failure_reason,
                        "http_status": failure.http_status,
                    }
                    for failure in failures
                ],
            }
        ),
        HTTPStatus.OK,
    )


def _requested_ids() -> list[int] | None:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return None
    if "ids" in body:
        raw_ids = body["ids"]
        if not isinstance(raw_ids, list):
            return None
    elif "id" in body:
        raw_ids = [body["id"]]
    else:
        return None
    try:
        return [int(value) for value in raw_ids]
    except (TypeError, ValueError):
        return None


def _offboard(entity: str):
    ids = _requested_ids()
    if not ids:
        return _json_error('Provide "id" or a non-empty "ids" list of integers.', HTTPStatus.BAD_REQUEST)
    service = SyncOrchestrator.from_app(current_app).offboarding
    if entity == "contact":
        batch = service.offboard_contacts(ids)
    else:
        batch = service.offboard_partners(ids)
    return jsonify(batch.to_dict()), HTTPStatus.OK


@sync_blueprint.post("/offboard/contacts")
def offboard_contacts():
    return _offboard("contact")


@sync_blueprint.post("/offboard/partners")
def offboard_partners():
    return _offboard("partner")
