"""
Inbound webhook receiver.

``POST /crm/webhooks/<connection_id>`` verifies the HMAC signature, drops
duplicate deliveries seen within the session TTL, and hands the parsed event
to the orchestrator inline or through the Celery worker.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from http import HTTPStatus
from typing import Any, Callable

from flask import Blueprint, Flask, current_app, jsonify, request

from crm_sync.models import db
from crm_sync.models.crm.schema import CrmConnection

from .celery_app import CRM_SYNC_EXTENSION_KEY, get_celery_app
from .errors import ConfigurationError
from .metrics import record_webhook
from .orchestrator import SyncService
from .registry import default_provider_factory

SIGNATURE_HEADER = "X-Crm-Signature"
DELIVERY_HEADER = "X-Crm-Delivery-Id"
PROVIDER_HEADER = "X-Crm-Provider"

webhook_blueprint = Blueprint("crm_webhooks", __name__, url_prefix="/crm/webhooks")


class WebhookSessionStore:
    """
    Remembers recent delivery ids so redelivered webhooks are ignored.

    Entries expire after ``ttl_seconds``; when more than ``max_entries`` are
    live the oldest are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 10000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, float]" = OrderedDict()

    def _evict(self, now: float) -> None:
        while self._sessions:
            key, seen_at = next(iter(self._sessions.items()))
            if now - seen_at < self.ttl_seconds:
                break
            self._sessions.pop(key)
        while len(self._sessions) > self.max_entries:
            self._sessions.popitem(last=False)

    def register(self, delivery_id: str) -> bool:
        """Record a delivery; returns False when it was already seen inside the TTL."""
        now = self._clock()
        with self._lock:
            self._evict(now)
            if delivery_id in self._sessions:
                return False
            self._sessions[delivery_id] = now
            self._evict(now)
            return True

    def __contains__(self, delivery_id: object) -> bool:
        with self._lock:
            self._evict(self._clock())
            return delivery_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


def get_webhook_session_store(app: Flask | None = None) -> WebhookSessionStore:
    app = app or current_app._get_current_object()
    state = app.extensions.setdefault(CRM_SYNC_EXTENSION_KEY, {})
    store = state.get("webhook_sessions")
    if store is None:
        store = WebhookSessionStore(
            ttl_seconds=app.config.get("CRM_SYNC_WEBHOOK_SESSION_TTL_SECONDS", 600),
            max_entries=app.config.get("CRM_SYNC_WEBHOOK_SESSION_MAX_ENTRIES", 10000),
        )
        state["webhook_sessions"] = store
    return store


def _respond(outcome: str, status: HTTPStatus, **payload: Any):
    record_webhook(outcome)
    return jsonify({"status": outcome, **payload}), status


def _dispatch_async(connection_id: int, event) -> str | None:
    if not (current_app.config.get("CRM_SYNC_WEBHOOK_ASYNC") and current_app.config.get("CRM_SYNC_WORKER_ENABLED")):
        return None
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return None
    async_result = celery_app.send_task(
        "crm_sync.process_webhook",
        kwargs={
            "connection_id": connection_id,
            "event_type": event.event_type,
            "entity_name": event.entity_name,
            "record_id": event.record_id,
            "delivery_id": event.delivery_id,
        },
    )
    return async_result.id


@webhook_blueprint.post("/<int:connection_id>")
def receive_webhook(connection_id: int):
    connection = db.session.get(CrmConnection, connection_id)
    if connection is None:
        return _respond("not_found", HTTPStatus.NOT_FOUND, error="Connection not found")

    claimed_provider = (request.args.get("provider") or request.headers.get(PROVIDER_HEADER) or "").strip().lower()
    if claimed_provider and claimed_provider != connection.provider_type.value:
        return _respond(
            "provider_mismatch",
            HTTPStatus.BAD_REQUEST,
            error=f"Connection {connection_id} is not a {claimed_provider} connection",
        )

    if not connection.is_enabled:
        return _respond("ignored", HTTPStatus.OK, reason="Connection is disabled")

    try:
        provider = default_provider_factory().get_provider(connection)
    except ConfigurationError as exc:
        return _respond("provider_mismatch", HTTPStatus.BAD_REQUEST, error=str(exc))

    raw_body = request.get_data(cache=True)
    signature = request.headers.get(SIGNATURE_HEADER)
    if not provider.validate_webhook_signature(raw_body, signature, connection.webhook_secret):
        current_app.logger.warning(
            "Rejected webhook with invalid signature",
            extra={"crm_connection_id": connection_id},
        )
        return _respond("unauthorized", HTTPStatus.UNAUTHORIZED, error="Invalid webhook signature")

    event = provider.parse_webhook(raw_body, request.headers)
    if event is None or not event.entity_name or not event.record_id:
        return _respond("invalid", HTTPStatus.BAD_REQUEST, error="Webhook payload could not be parsed")

    delivery_id = request.headers.get(DELIVERY_HEADER) or event.delivery_id
    if delivery_id and not get_webhook_session_store().register(f"{connection_id}:{delivery_id}"):
        current_app.logger.info(
            "Ignoring duplicate webhook delivery %s",
            delivery_id,
            extra={"crm_connection_id": connection_id, "crm_record_id": event.record_id},
        )
        return _respond("duplicate", HTTPStatus.OK, delivery_id=delivery_id)

    task_id = _dispatch_async(connection_id, event)
    if task_id is not None:
        return _respond("queued", HTTPStatus.ACCEPTED, task_id=task_id, delivery_id=delivery_id)

    result = SyncService().process_webhook(connection_id, event)
    return _respond(
        "processed" if result.success else "failed",
        HTTPStatus.OK,
        delivery_id=delivery_id,
        result=result.as_dict(),
    )


__all__ = ["WebhookSessionStore", "get_webhook_session_store", "webhook_blueprint"]
