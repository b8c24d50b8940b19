"""
Logging setup for the Flask app and the sync worker.

Handlers are driven by ``config/monitoring.py``. JSON output carries the
structured ``extra={...}`` fields the sync code attaches to its records.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import Flask

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys() | {"message", "asctime"}
)
_HANDLER_MARKER = "_partner_sync_handler"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    def __init__(self, app_name: str = "partner-sync"):
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "app": self.app_name,
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JsonFormatter(app.config.get("APP_NAME", "partner-sync"))
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app: Flask) -> None:
    """Attach console and rotating-file handlers to the root logger."""

    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    app.logger.setLevel(level)

    # Re-running setup (tests build many apps) replaces our handlers only.
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = _build_formatter(app)
    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "partner_sync.log")),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)
