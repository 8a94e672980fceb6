# config/validation.py

"""
Environment variable validation for the CRM sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple


def _flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() in ("1", "true", "yes", "on")


def _validate_crm_sync(errors: List[str]) -> None:
    if not _flag("CRM_SYNC_ENABLED"):
        return

    providers = [item.strip() for item in os.environ.get("CRM_SYNC_PROVIDERS", "dynamics365").split(",")]
    if not any(providers):
        errors.append("CRM_SYNC_PROVIDERS must list at least one provider when CRM_SYNC_ENABLED=true")

    if _flag("CRM_SYNC_WORKER_ENABLED") and not os.environ.get("CELERY_BROKER_URL"):
        errors.append(
            "CELERY_BROKER_URL is required in production when CRM_SYNC_WORKER_ENABLED=true. "
            "The SQLite transport is only suitable for local development."
        )

    if _flag("CRM_SYNC_WEBHOOK_ASYNC") and not _flag("CRM_SYNC_WORKER_ENABLED"):
        errors.append("CRM_SYNC_WEBHOOK_ASYNC=true requires CRM_SYNC_WORKER_ENABLED=true")

    for name in ("CRM_SYNC_HTTP_TIMEOUT_SECONDS", "CRM_SYNC_PASS_TIMEOUT_SECONDS", "CRM_SYNC_PROGRESS_INTERVAL"):
        raw = os.environ.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = int(raw)
        except ValueError:
            errors.append(f"{name} must be an integer, got '{raw}'")
            continue
        if value < 1:
            errors.append(f"{name} must be a positive integer, got {value}")


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

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    if _flag("ENABLE_EMAIL_ALERTS"):
        if not os.environ.get("MAIL_SERVER"):
            errors.append("MAIL_SERVER is required when ENABLE_EMAIL_ALERTS=true")
        if not os.environ.get("ADMIN_EMAILS"):
            errors.append("ADMIN_EMAILS is required when ENABLE_EMAIL_ALERTS=true")

    if _flag("ENABLE_SLACK_ALERTS") and not os.environ.get("SLACK_WEBHOOK_URL"):
        errors.append("SLACK_WEBHOOK_URL is required when ENABLE_SLACK_ALERTS=true")

    if _flag("ENABLE_WEBHOOK_ALERTS") and not os.environ.get("WEBHOOK_URL"):
        errors.append("WEBHOOK_URL is required when ENABLE_WEBHOOK_ALERTS=true")

    _validate_crm_sync(errors)

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
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
