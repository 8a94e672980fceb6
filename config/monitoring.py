# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str) -> list:
    raw = os.environ.get(name)
    return [item.strip() for item in raw.split(",") if item.strip()] if raw else []


class MonitoringConfig:
    """Logging and alerting configuration"""

    # Error Alerting Configuration
    ERROR_ALERTING_ENABLED = _env_flag("ERROR_ALERTING_ENABLED")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", "true")
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", "true")

    # Email Alerting
    ENABLE_EMAIL_ALERTS = _env_flag("ENABLE_EMAIL_ALERTS")
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")
    ADMIN_EMAILS = _env_list("ADMIN_EMAILS")

    # Rate limits are per error key per rolling hour
    EMAIL_ALERT_RATE_LIMIT = int(os.environ.get("EMAIL_ALERT_RATE_LIMIT", 5))
    SLACK_ALERT_RATE_LIMIT = int(os.environ.get("SLACK_ALERT_RATE_LIMIT", 10))
    WEBHOOK_ALERT_RATE_LIMIT = int(os.environ.get("WEBHOOK_ALERT_RATE_LIMIT", 20))

    # Slack Integration
    ENABLE_SLACK_ALERTS = _env_flag("ENABLE_SLACK_ALERTS")
    SLACK_WEBHOOK_URL = os.environ.get("SLACK_WEBHOOK_URL")

    # Webhook Integration
    ENABLE_WEBHOOK_ALERTS = _env_flag("ENABLE_WEBHOOK_ALERTS")
    WEBHOOK_URL = os.environ.get("WEBHOOK_URL")
    WEBHOOK_HEADERS = {}

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "CRM Sync")
    APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration

    # Tighter rate limits in production
    EMAIL_ALERT_RATE_LIMIT = 3
    SLACK_ALERT_RATE_LIMIT = 5
    WEBHOOK_ALERT_RATE_LIMIT = 10


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    ERROR_ALERTING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False


class CrmApiMonitoring:
    """Prometheus metric helpers for the CRM admin JSON endpoints."""

    REQUEST_COUNTER = Counter(
        "crm_sync_api_requests_total",
        "Total CRM admin API requests.",
        labelnames=("endpoint", "status"),
    )
    REQUEST_LATENCY = Histogram(
        "crm_sync_api_request_seconds",
        "Latency histogram for CRM admin API requests.",
        labelnames=("endpoint", "status"),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )
    RESULT_SIZE = Histogram(
        "crm_sync_api_result_size",
        "Number of rows returned by CRM admin list endpoints.",
        labelnames=("endpoint",),
        buckets=(0, 1, 10, 50, 100, 250, 500, 1000),
    )

    @classmethod
    def record_request(cls, endpoint: str, *, duration_seconds: float, status: str, result_count: int | None = None):
        cls.REQUEST_COUNTER.labels(endpoint=endpoint, status=status).inc()
        cls.REQUEST_LATENCY.labels(endpoint=endpoint, status=status).observe(duration_seconds)
        if result_count is not None:
            cls.RESULT_SIZE.labels(endpoint=endpoint).observe(result_count)
