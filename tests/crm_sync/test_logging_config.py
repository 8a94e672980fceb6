import json
import logging
import sys

from flask import Flask

from crm_sync.utils.logging_config import JSONFormatter, setup_logging


def _record(message="Synced %s records", *args, **extra):
    record = logging.LogRecord("crm_sync.sync", logging.INFO, __file__, 10, message, args or (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_structured_extras_are_kept(self):
        payload = json.loads(JSONFormatter().format(_record(crm_connection_id=7, crm_stats={"created": 1})))

        assert payload["message"] == "Synced 3 records"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "crm_sync.sync"
        assert payload["crm_connection_id"] == 7
        assert payload["crm_stats"] == {"created": 1}
        assert "args" not in payload
        assert "exception" not in payload

    def test_exceptions_are_rendered(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("crm_sync", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in payload["exception"]

    def test_unserializable_values_fall_back_to_str(self):
        payload = json.loads(JSONFormatter().format(_record(crm_when=object)))

        assert payload["crm_when"].startswith("<class")


class TestSetupLogging:
    def _app(self, **config):
        app = Flask(__name__)
        app.config.update(config)
        return app

    def test_level_and_console_handler(self):
        app = self._app(LOG_LEVEL="warning", LOG_FORMAT="text", ENABLE_CONSOLE_LOGGING=True)

        setup_logging(app)

        package_logger = logging.getLogger("crm_sync")
        assert package_logger.level == logging.WARNING
        handlers = [handler for handler in package_logger.handlers if getattr(handler, "_crm_sync_handler", False)]
        assert len(handlers) == 1
        assert not isinstance(handlers[0].formatter, JSONFormatter)

    def test_rotating_file_handler_writes_json(self, tmp_path):
        log_dir = tmp_path / "logs"
        app = self._app(
            LOG_LEVEL="INFO",
            LOG_FORMAT="json",
            ENABLE_CONSOLE_LOGGING=False,
            ENABLE_FILE_LOGGING=True,
            LOG_DIR=str(log_dir),
        )

        setup_logging(app)
        logging.getLogger("crm_sync.sync.test").info("Pass finished", extra={"crm_sync_id": "abc123"})
        for handler in logging.getLogger("crm_sync").handlers:
            handler.flush()

        lines = (log_dir / "crm_sync.log").read_text(encoding="utf-8").splitlines()
        payload = json.loads(lines[-1])
        assert payload["message"] == "Pass finished"
        assert payload["crm_sync_id"] == "abc123"

    def test_repeated_setup_replaces_handlers(self):
        app = self._app(ENABLE_CONSOLE_LOGGING=True)

        setup_logging(app)
        setup_logging(app)

        own = [handler for handler in app.logger.handlers if getattr(handler, "_crm_sync_handler", False)]
        assert len(own) == 1

    def test_unknown_level_defaults_to_info(self):
        app = self._app(LOG_LEVEL="chatty", ENABLE_CONSOLE_LOGGING=False)

        assert setup_logging(app).level == logging.INFO
