"""
Partner sync feature package.

``init_sync`` records the feature state in ``app.extensions['partner_sync']``,
mounts the ``/sync`` blueprint when ``SYNC_ENABLED`` is set and configures the
Celery worker when ``SYNC_WORKER_ENABLED`` is set.
"""

from __future__ import annotations

from flask import Flask

from partner_sync.utils.sync import get_sync_state, is_sync_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .pipeline import SyncOrchestrator, get_session_manager
from .views import sync_blueprint

__all__ = ["SyncOrchestrator", "get_celery_app", "init_sync"]


def init_sync(app: Flask) -> None:
    enabled = is_sync_enabled(app)
    worker_enabled = is_worker_enabled(app)
    state = get_sync_state(app)
    state.update({"enabled": enabled, "worker_enabled": worker_enabled})

    if not enabled:
        app.logger.info("Partner sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    get_session_manager(app)
    if worker_enabled:
        ensure_celery_app(app)
    if sync_blueprint.name not in app.blueprints:
        app.register_blueprint(sync_blueprint)
    app.logger.info("Partner sync enabled", extra={"sync_worker_enabled": worker_enabled})
