import pytest

from config.base import _coerce_bool, _coerce_float, _coerce_int
from config.validation import validate_and_exit, validate_environment
from partner_sync.sync.pipeline import SyncSettings

PRODUCTION_ENV = {
    "SECRET_KEY": "a-real-secret",
    "DATABASE_URL": "postgresql://sync@db/partner_sync",
    "PRM_API_KEY": "prm-key",
    "PRM_TENANT_ID": "tenant-1",
    "LMS_API_KEY": "lms-key",
}


@pytest.fixture
def production_env(monkeypatch):
    for name in ("SYNC_ENABLED", "SYNC_FILTER_RULES_PATH"):
        monkeypatch.delenv(name, raising=False)
    for name, value in PRODUCTION_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


@pytest.mark.parametrize(
    "value, expected",
    [("1", True), ("Yes", True), ("off", False), (" false ", False), ("maybe", None), (None, None)],
)
def test_coerce_bool(value, expected):
    assert _coerce_bool(value, default=None) is expected


def test_coerce_numbers_fall_back_to_default():
    assert _coerce_int("12", 5) == 12
    assert _coerce_int("twelve", 5) == 5
    assert _coerce_int("0", 5, minimum=1) == 5
    assert _coerce_float("0.5", 1.0) == 0.5
    assert _coerce_float("-1", 1.0) == 1.0


def test_non_production_environments_skip_validation():
    assert validate_environment("testing") == (True, [])


def test_production_requires_credentials(production_env):
    production_env.delenv("LMS_API_KEY")
    production_env.setenv("SECRET_KEY", "your-secret-key")

    valid, errors = validate_environment("production")

    assert not valid
    assert any(error.startswith("SECRET_KEY") for error in errors)
    assert any(error.startswith("LMS_API_KEY") for error in errors)


def test_credentials_not_needed_when_sync_disabled(production_env):
    production_env.setenv("SYNC_ENABLED", "false")
    production_env.delenv("PRM_API_KEY")

    assert validate_environment("production") == (True, [])


def test_missing_filter_rules_file_is_reported(production_env, tmp_path):
    production_env.setenv("SYNC_FILTER_RULES_PATH", str(tmp_path / "missing.yaml"))

    valid, errors = validate_environment("production")

    assert not valid
    assert "missing.yaml" in errors[0]


def test_validate_and_exit_exits_on_errors(production_env, capsys):
    production_env.delenv("DATABASE_URL")

    with pytest.raises(SystemExit):
        validate_and_exit("production")

    assert "DATABASE_URL" in capsys.readouterr().err


def test_sync_settings_from_app_config(app):
    app.config.update(SYNC_MAX_WORKERS=4, SYNC_ENROLLMENT_STALE_DAYS=3)

    settings = SyncSettings.from_config(app.config)

    assert settings.max_workers == 4
    assert settings.enrollment_stale_after.days == 3
    assert settings.enrollment_abort_threshold == app.config["SYNC_ENROLLMENT_ABORT_THRESHOLD"]
