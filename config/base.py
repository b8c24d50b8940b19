# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(str(value).strip()) if value is not None else default
    except ValueError:
        number = default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=0.0):
    try:
        number = float(str(value).strip()) if value is not None else default
    except ValueError:
        number = default
    if number < minimum:
        return default
    return number


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")
    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")
    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Feature flags
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=True)
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)

    # PRM
    PRM_API_BASE_URL = os.environ.get("PRM_API_BASE_URL", "https://prod.impartner.live/api/objects/v1")
    PRM_API_KEY = os.environ.get("PRM_API_KEY")
    PRM_TENANT_ID = os.environ.get("PRM_TENANT_ID")
    PRM_PAGE_SIZE = _coerce_int(os.environ.get("PRM_PAGE_SIZE"), 100, minimum=1)

    # LMS
    LMS_API_BASE_URL = os.environ.get("LMS_API_BASE_URL", "https://api.northpass.com")
    LMS_API_KEY = os.environ.get("LMS_API_KEY")
    LMS_PAGE_SIZE = _coerce_int(os.environ.get("LMS_PAGE_SIZE"), 100, minimum=1)

    # Fetching
    SYNC_REQUEST_TIMEOUT = _coerce_float(os.environ.get("SYNC_REQUEST_TIMEOUT"), 30.0, minimum=1.0)
    SYNC_PAGE_DELAY_SECONDS = _coerce_float(os.environ.get("SYNC_PAGE_DELAY_SECONDS"), 0.125)
    SYNC_MAX_PAGES = _coerce_int(os.environ.get("SYNC_MAX_PAGES"), 500, minimum=1)
    SYNC_TRANSCRIPT_MAX_PAGES = _coerce_int(os.environ.get("SYNC_TRANSCRIPT_MAX_PAGES"), 20, minimum=1)
    SYNC_HEALTH_FAILURE_THRESHOLD = _coerce_int(os.environ.get("SYNC_HEALTH_FAILURE_THRESHOLD"), 5, minimum=1)
    SYNC_MUTATION_ATTEMPTS = _coerce_int(os.environ.get("SYNC_MUTATION_ATTEMPTS"), 3, minimum=1)

    # Reconciliation
    SYNC_MAX_WORKERS = _coerce_int(os.environ.get("SYNC_MAX_WORKERS"), 10, minimum=1)
    SYNC_CACHE_TTL_MINUTES = _coerce_int(os.environ.get("SYNC_CACHE_TTL_MINUTES"), 60, minimum=1)
    SYNC_ENROLLMENT_STALE_DAYS = _coerce_int(os.environ.get("SYNC_ENROLLMENT_STALE_DAYS"), 7, minimum=1)
    SYNC_ENROLLMENT_ABORT_THRESHOLD = _coerce_int(os.environ.get("SYNC_ENROLLMENT_ABORT_THRESHOLD"), 10, minimum=1)
    SYNC_OFFBOARD_BATCH_SIZE = _coerce_int(os.environ.get("SYNC_OFFBOARD_BATCH_SIZE"), 50, minimum=1)
    # None keeps the name from the rules file (or the built-in default).
    SYNC_ALL_PARTNERS_GROUP_NAME = os.environ.get("SYNC_ALL_PARTNERS_GROUP_NAME") or None
    SYNC_FILTER_RULES_PATH = os.environ.get("SYNC_FILTER_RULES_PATH")

    # Celery
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    SYNC_TASK_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    SYNC_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=60)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    # SQLite URI needs forward slashes, also on Windows.
    db_path_normalized = os.path.join(instance_path, "partner_sync_dev.db").replace("\\", "/")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", f"sqlite:///{db_path_normalized}")
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key-for-testing-only"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ENABLED = True
    SYNC_WORKER_ENABLED = False
    SYNC_PAGE_DELAY_SECONDS = 0.0
    PRM_API_BASE_URL = "https://prm.test/api/objects/v1"
    PRM_API_KEY = "test-prm-key"
    PRM_TENANT_ID = "1"
    LMS_API_BASE_URL = "https://lms.test"
    LMS_API_KEY = "test-lms-key"
    SYNC_ALL_PARTNERS_GROUP_NAME = None
    SYNC_FILTER_RULES_PATH = None


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
