# config.py
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


def _parse_adapter_list(value):
    """
    Parse a comma-separated provider list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized provider identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


def _parse_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "This is insecure and should not be used in production.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # CRM sync configuration
    CRM_SYNC_ENABLED = _coerce_bool(os.environ.get("CRM_SYNC_ENABLED"), default=False)
    CRM_SYNC_PROVIDERS = _parse_adapter_list(os.environ.get("CRM_SYNC_PROVIDERS", "dynamics365"))

    if CRM_SYNC_ENABLED and not CRM_SYNC_PROVIDERS:
        raise ValueError(
            "CRM_SYNC_ENABLED is true but CRM_SYNC_PROVIDERS is empty. Provide at least one provider name."
        )

    CRM_SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("CRM_SYNC_WORKER_ENABLED"), default=False)
    CRM_SYNC_PROGRESS_INTERVAL = _parse_int(os.environ.get("CRM_SYNC_PROGRESS_INTERVAL"), 10, minimum=1)
    CRM_SYNC_HTTP_TIMEOUT_SECONDS = _parse_int(os.environ.get("CRM_SYNC_HTTP_TIMEOUT_SECONDS"), 30, minimum=1)
    CRM_SYNC_TOKEN_REFRESH_BUFFER_SECONDS = _parse_int(
        os.environ.get("CRM_SYNC_TOKEN_REFRESH_BUFFER_SECONDS"), 300, minimum=0
    )
    CRM_SYNC_PASS_TIMEOUT_SECONDS = _parse_int(os.environ.get("CRM_SYNC_PASS_TIMEOUT_SECONDS"), None, minimum=1)
    CRM_SYNC_SCHEDULE_INTERVAL_SECONDS = _parse_int(
        os.environ.get("CRM_SYNC_SCHEDULE_INTERVAL_SECONDS"), 300, minimum=0
    )
    CRM_SYNC_WEBHOOK_SESSION_TTL_SECONDS = _parse_int(
        os.environ.get("CRM_SYNC_WEBHOOK_SESSION_TTL_SECONDS"), 600, minimum=1
    )
    CRM_SYNC_WEBHOOK_SESSION_MAX_ENTRIES = _parse_int(
        os.environ.get("CRM_SYNC_WEBHOOK_SESSION_MAX_ENTRIES"), 10000, minimum=1
    )
    CRM_SYNC_WEBHOOK_ASYNC = _coerce_bool(os.environ.get("CRM_SYNC_WEBHOOK_ASYNC"), default=False)
    CRM_SYNC_DEFAULT_MAPPINGS_PATH = os.environ.get(
        "CRM_SYNC_DEFAULT_MAPPINGS_PATH",
        os.path.join(os.path.dirname(__file__), "mappings", "crm_default_field_mappings.yaml"),
    )
    CRM_SYNC_LOG_RETENTION_DAYS = _parse_int(os.environ.get("CRM_SYNC_LOG_RETENTION_DAYS"), 30, minimum=1)

    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    # Project root is the parent of the config directory
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, even on Windows
    db_path = os.path.join(instance_path, "crm_sync_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    CRM_SYNC_ENABLED = True
    CRM_SYNC_PROVIDERS = ("dynamics365",)
    CRM_SYNC_SCHEDULE_INTERVAL_SECONDS = 0
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
