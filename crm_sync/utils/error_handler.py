"""
Error alerting for CRM sync.

Alerts go out over email, Slack and a generic webhook, each rate limited per
error key within a rolling hour. Delivery failures are logged and never raised.
"""

import logging
import smtplib
import traceback
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from email.mime.text import MIMEText

import requests
from flask import Flask, current_app, has_request_context, jsonify, request

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 5
ALERT_TIMEOUT_SECONDS = 10


class ErrorAlertingSystem:
    """Rate-limited error alert fan-out configured from the monitoring config."""

    def __init__(self, app: Flask = None):
        self.app = app
        self.error_counts = defaultdict(list)
        self.alert_methods = []
        self.rate_limits = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask):
        self.app = app
        config = app.config
        self.rate_limits = {
            "email": int(config.get("EMAIL_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
            "slack": int(config.get("SLACK_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
            "webhook": int(config.get("WEBHOOK_ALERT_RATE_LIMIT", DEFAULT_RATE_LIMIT)),
        }
        self.alert_methods = []
        if config.get("ENABLE_EMAIL_ALERTS"):
            self.alert_methods.append("email")
        if config.get("ENABLE_SLACK_ALERTS"):
            self.alert_methods.append("slack")
        if config.get("ENABLE_WEBHOOK_ALERTS"):
            self.alert_methods.append("webhook")

    def should_send_alert(self, alert_type: str, error_key: str) -> bool:
        """Return True while ``error_key`` is under the hourly limit for ``alert_type``."""
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(hours=1)
        recent = [moment for moment in self.error_counts[error_key] if moment > window_start]
        limit = self.rate_limits.get(alert_type, DEFAULT_RATE_LIMIT)
        if len(recent) >= limit:
            self.error_counts[error_key] = recent
            return False
        recent.append(now)
        self.error_counts[error_key] = recent
        return True

    def _config(self):
        return self.app.config if self.app is not None else current_app.config

    def _build_alert(self, error: BaseException, context: dict) -> dict:
        context = dict(context or {})
        if has_request_context():
            context.setdefault("endpoint", request.path)
            context.setdefault("method", request.method)
        config = self._config()
        return {
            "app_name": config.get("APP_NAME", "CRM Sync"),
            "app_version": config.get("APP_VERSION"),
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__))
            if error.__traceback__
            else None,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def send_error_alert(self, error: BaseException, context: dict = None):
        """Fan an error out to every enabled alert channel."""
        alert = self._build_alert(error, context)
        endpoint = alert["context"].get("endpoint") or "unknown"
        error_key = f"{alert['error_type']}_{endpoint}"

        senders = {
            "email": self._send_email_alert,
            "slack": self._send_slack_alert,
            "webhook": self._send_webhook_alert,
        }
        for method in self.alert_methods:
            if not self.should_send_alert(method, error_key):
                logger.debug("Alert rate limit reached for %s via %s", error_key, method)
                continue
            try:
                senders[method](alert)
            except Exception as exc:
                logger.error("Failed to send %s alert: %s", method, exc)

    def _send_email_alert(self, alert: dict):
        config = self._config()
        server = config.get("MAIL_SERVER")
        recipients = [address for address in config.get("ADMIN_EMAILS") or [] if address]
        if not server or not recipients:
            logger.warning("Email alerting enabled but MAIL_SERVER or ADMIN_EMAILS is not configured")
            return

        body = (
            f"{alert['error_type']}: {alert['error_message']}\n\n"
            f"Context: {alert['context']}\n\n"
            f"{alert['traceback'] or ''}"
        )
        message = MIMEText(body)
        message["Subject"] = f"[{alert['app_name']}] {alert['error_type']}"
        message["From"] = config.get("MAIL_FROM", "noreply@example.com")
        message["To"] = ", ".join(recipients)

        try:
            smtp = smtplib.SMTP(server, int(config.get("MAIL_PORT", 587)), timeout=ALERT_TIMEOUT_SECONDS)
            try:
                if config.get("MAIL_USE_TLS", True):
                    smtp.starttls()
                if config.get("MAIL_USERNAME"):
                    smtp.login(config.get("MAIL_USERNAME"), config.get("MAIL_PASSWORD"))
                smtp.sendmail(message["From"], recipients, message.as_string())
            finally:
                smtp.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email alert: %s", exc)

    def _send_slack_alert(self, alert: dict):
        url = self._config().get("SLACK_WEBHOOK_URL")
        if not url:
            logger.warning("Slack alerting enabled but SLACK_WEBHOOK_URL is not configured")
            return
        payload = {
            "text": f":rotating_light: *{alert['app_name']}* {alert['error_type']}: {alert['error_message']}",
            "attachments": [
                {
                    "color": "danger",
                    "fields": [
                        {"title": key, "value": str(value), "short": True}
                        for key, value in alert["context"].items()
                    ],
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                }
            ],
        }
        try:
            response = requests.post(url, json=payload, timeout=ALERT_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send Slack alert: %s", exc)

    def _send_webhook_alert(self, alert: dict):
        config = self._config()
        url = config.get("WEBHOOK_URL")
        if not url:
            logger.warning("Webhook alerting enabled but WEBHOOK_URL is not configured")
            return
        try:
            response = requests.post(
                url,
                json=alert,
                headers=dict(config.get("WEBHOOK_HEADERS") or {}),
                timeout=ALERT_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send webhook alert: %s", exc)


error_alerter = ErrorAlertingSystem()


def init_error_alerting(app: Flask):
    """Configure the shared alerter and hook it into unhandled request errors."""
    error_alerter.init_app(app)
    app.extensions["error_alerter"] = error_alerter

    if not app.config.get("ERROR_ALERTING_ENABLED"):
        return

    @app.errorhandler(Exception)
    def _alert_unhandled(error):
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return error
        app.logger.exception("Unhandled error", exc_info=error)
        error_alerter.send_error_alert(error, {"endpoint": request.path if has_request_context() else None})
        return jsonify({"error": "Internal server error"}), 500


def alert_sync_failure(summary: str, context: dict = None):
    """Alert on a sync pass that finished with errors, when alerting is enabled."""
    app = current_app._get_current_object()
    if not app.config.get("ERROR_ALERTING_ENABLED"):
        return
    alerter = app.extensions.get("error_alerter", error_alerter)
    alerter.send_error_alert(RuntimeError(summary), context or {})
