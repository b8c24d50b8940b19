# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from partner_sync.models import db  # noqa: E402
from partner_sync.sync import init_sync  # noqa: E402
from partner_sync.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        if enable_foreign_keys:
            cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return _configure_sqlite_connection


def create_app(overrides=None, *, flask_env=None) -> Flask:
    """
    Build the application.

    ``overrides`` is applied after the environment config so tests can point
    the app at their own database before the engine is created.
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env == "production":
        validate_and_exit(flask_env)

    app = Flask(__name__)
    config_class, monitoring_class = CONFIGS.get(flask_env, CONFIGS["development"])
    app.config.from_object(config_class)
    app.config.from_object(monitoring_class)
    if overrides:
        app.config.update(overrides)
    os.makedirs(app.instance_path, exist_ok=True)

    setup_logging(app)
    db.init_app(app)

    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            event.listen(
                engine,
                "connect",
                _configure_sqlite_connection_factory(enable_foreign_keys=not app.config.get("TESTING", False)),
            )
        if not app.config.get("TESTING", False):
            db.create_all()

    init_sync(app)

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "sync_enabled": bool(app.config.get("SYNC_ENABLED"))}), 200

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
