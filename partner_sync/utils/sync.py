"""
Utility helpers for sync feature flag checks and extension state.
"""

from __future__ import annotations

from typing import Any

from flask import current_app

SYNC_EXTENSION_KEY = "partner_sync"


def _get_app(app=None):
    if app is not None:
        return app
    return current_app._get_current_object()  # type: ignore[attr-defined]


def is_sync_enabled(app=None) -> bool:
    """Return True when the sync feature flag is enabled."""
    return bool(_get_app(app).config.get("SYNC_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    return bool(_get_app(app).config.get("SYNC_WORKER_ENABLED", False))


def get_sync_state(app=None) -> dict[str, Any]:
    """Return (creating when needed) the sync state stored on ``app.extensions``."""
    app = _get_app(app)
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
            "health_monitors": {},
            "session_manager": None,
        },
    )
