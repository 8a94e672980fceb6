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
from crm_sync.models import db  # noqa: E402
from crm_sync.sync import init_crm_sync  # noqa: E402
from crm_sync.utils.error_handler import init_error_alerting  # noqa: E402
from crm_sync.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

ENVIRONMENTS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _sqlite_pragma_hook(*, enable_foreign_keys: bool):
    """Return a ``connect`` listener that tunes each SQLite connection for the sync worker."""

    def _apply_pragmas(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _apply_pragmas


def _prepare_database(app: Flask) -> None:
    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_crm_pragmas_configured", False):
            event.listen(engine, "connect", _sqlite_pragma_hook(enable_foreign_keys=not app.testing))
            engine._crm_pragmas_configured = True  # type: ignore[attr-defined]
        # Tests manage their own schema per database file
        if not app.testing:
            db.create_all()


def create_app(environment: str = None) -> Flask:
    """
    Build the CRM sync service.

    ``environment`` defaults to ``FLASK_ENV``; unknown names fall back to development.
    Production boots refuse to start when required CRM settings are missing.
    """
    environment = environment or os.environ.get("FLASK_ENV", "development")
    if environment == "production":
        validate_and_exit(environment)

    service = Flask(__name__)
    for config_object in ENVIRONMENTS.get(environment, ENVIRONMENTS["development"]):
        service.config.from_object(config_object)

    db.init_app(service)
    setup_logging(service)
    init_error_alerting(service)
    _prepare_database(service)
    init_crm_sync(service)

    @service.get("/health")
    def health():
        return jsonify({"status": "ok", "crm_sync_enabled": bool(service.config.get("CRM_SYNC_ENABLED"))}), 200

    @service.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found"}), 404

    @service.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500

    logger.info("CRM sync service configured for %s", environment)
    return service


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
