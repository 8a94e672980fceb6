"""Environment validation and config parsing helpers"""

import pytest

from config.base import _coerce_bool, _parse_adapter_list, _parse_int
from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "0123456789abcdef",
    "DATABASE_URL": "postgresql://crm:secret@db/crm",
}


@pytest.fixture
def production_env(monkeypatch):
    for name in (
        "CRM_SYNC_ENABLED",
        "CRM_SYNC_PROVIDERS",
        "CRM_SYNC_WORKER_ENABLED",
        "CRM_SYNC_WEBHOOK_ASYNC",
        "CRM_SYNC_HTTP_TIMEOUT_SECONDS",
        "CRM_SYNC_PASS_TIMEOUT_SECONDS",
        "CRM_SYNC_PROGRESS_INTERVAL",
        "CELERY_BROKER_URL",
        "ENABLE_EMAIL_ALERTS",
        "ENABLE_SLACK_ALERTS",
        "ENABLE_WEBHOOK_ALERTS",
    ):
        monkeypatch.delenv(name, raising=False)
    for name, value in PRODUCTION_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


class TestValidateEnvironment:
    def test_non_production_is_not_validated(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)

        assert validate_environment("development") == (True, [])

    def test_production_requires_secret_and_database(self, production_env):
        production_env.setenv("SECRET_KEY", "your-secret-key")
        production_env.delenv("DATABASE_URL")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert any(error.startswith("SECRET_KEY is required") for error in errors)
        assert any(error.startswith("DATABASE_URL is required") for error in errors)

    def test_valid_production_environment(self, production_env):
        assert validate_environment("production") == (True, [])

    def test_alert_channels_need_destinations(self, production_env):
        production_env.setenv("ENABLE_EMAIL_ALERTS", "true")
        production_env.setenv("ENABLE_SLACK_ALERTS", "true")

        _, errors = validate_environment("production")

        assert "MAIL_SERVER is required when ENABLE_EMAIL_ALERTS=true" in errors
        assert "SLACK_WEBHOOK_URL is required when ENABLE_SLACK_ALERTS=true" in errors

    def test_worker_requires_real_broker(self, production_env):
        production_env.setenv("CRM_SYNC_ENABLED", "true")
        production_env.setenv("CRM_SYNC_WORKER_ENABLED", "true")

        _, errors = validate_environment("production")

        assert any(error.startswith("CELERY_BROKER_URL is required") for error in errors)

        production_env.setenv("CELERY_BROKER_URL", "redis://broker:6379/0")
        assert validate_environment("production") == (True, [])

    def test_async_webhooks_require_worker(self, production_env):
        production_env.setenv("CRM_SYNC_ENABLED", "true")
        production_env.setenv("CRM_SYNC_WEBHOOK_ASYNC", "true")

        _, errors = validate_environment("production")

        assert errors == ["CRM_SYNC_WEBHOOK_ASYNC=true requires CRM_SYNC_WORKER_ENABLED=true"]

    def test_numeric_settings_are_checked(self, production_env):
        production_env.setenv("CRM_SYNC_ENABLED", "yes")
        production_env.setenv("CRM_SYNC_HTTP_TIMEOUT_SECONDS", "soon")
        production_env.setenv("CRM_SYNC_PASS_TIMEOUT_SECONDS", "0")
        production_env.setenv("CRM_SYNC_PROVIDERS", " , ")

        _, errors = validate_environment("production")

        assert errors == [
            "CRM_SYNC_PROVIDERS must list at least one provider when CRM_SYNC_ENABLED=true",
            "CRM_SYNC_HTTP_TIMEOUT_SECONDS must be an integer, got 'soon'",
            "CRM_SYNC_PASS_TIMEOUT_SECONDS must be a positive integer, got 0",
        ]

    def test_validate_and_exit_reports_errors(self, production_env, capsys):
        production_env.delenv("DATABASE_URL")

        with pytest.raises(SystemExit) as excinfo:
            validate_and_exit("production")

        assert excinfo.value.code == 1
        assert "ENVIRONMENT VALIDATION FAILED" in capsys.readouterr().err


class TestConfigParsing:
    @pytest.mark.parametrize(
        "value,expected",
        [("TRUE", True), ("on", True), ("0", False), ("no", False), ("maybe", False), (None, False), (True, True)],
    )
    def test_coerce_bool(self, value, expected):
        assert _coerce_bool(value) is expected

    def test_provider_list_is_normalized_and_deduplicated(self):
        assert _parse_adapter_list(" Dynamics365,hubspot,dynamics365 ,") == ("dynamics365", "hubspot")
        assert _parse_adapter_list("") == ()

    def test_parse_int_falls_back_to_default(self):
        assert _parse_int("45", 10) == 45
        assert _parse_int("abc", 10) == 10
        assert _parse_int("0", 10, minimum=1) == 10
        assert _parse_int(None, None) is None
