# config/validation.py

"""
Environment variable validation for the partner sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

from .base import _coerce_bool

SYNC_CREDENTIALS = (
    ("PRM_API_KEY", "PRM API key used for the X-PRM authorization header"),
    ("PRM_TENANT_ID", "PRM tenant id sent as X-PRM-TenantId"),
    ("LMS_API_KEY", "LMS API key sent as X-Api-Key"),
)


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    if flask_env != "production":
        return True, []

    errors = []
    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append("SECRET_KEY is required in production and must not be the default value.")

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if _coerce_bool(os.environ.get("SYNC_ENABLED"), default=True):
        for name, description in SYNC_CREDENTIALS:
            if not os.environ.get(name):
                errors.append(f"{name} is required when SYNC_ENABLED=true ({description}).")

    rules_path = os.environ.get("SYNC_FILTER_RULES_PATH")
    if rules_path and not os.path.isfile(rules_path):
        errors.append(f"SYNC_FILTER_RULES_PATH points to a missing file: {rules_path}")

    return len(errors) == 0, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
