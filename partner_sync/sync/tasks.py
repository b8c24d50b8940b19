"""Celery tasks for scheduled and on-demand sync chains."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .pipeline import SyncOrchestrator


@shared_task(name="partner_sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by the worker health endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="partner_sync.prm", bind=True)
def run_prm_sync_task(self, mode: str = "incremental") -> dict[str, Any]:
    current_app.logger.info("Starting PRM sync task", extra={"sync_mode": mode, "celery_task_id": self.request.id})
    return SyncOrchestrator.from_app(current_app).run_prm_sync(mode)


@shared_task(name="partner_sync.lms", bind=True)
def run_lms_sync_task(self, mode: str = "incremental") -> dict[str, Any]:
    current_app.logger.info("Starting LMS sync task", extra={"sync_mode": mode, "celery_task_id": self.request.id})
    return SyncOrchestrator.from_app(current_app).run_lms_sync(mode)
