"""
CRM sync Celery tasks.

Each task builds a fresh ``SyncService`` inside the Flask app context supplied
by ``FlaskContextTask`` and returns the pass result as a plain dict.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List

from celery import shared_task
from flask import current_app
from sqlalchemy.orm import Session

from crm_sync.models import db
from crm_sync.models.crm.schema import CrmConnection
from crm_sync.utils.error_handler import alert_sync_failure

from .cancellation import CancellationToken
from .orchestrator import SyncService
from .providers.base import WebhookEvent


def _runtime_token() -> CancellationToken:
    return CancellationToken.with_timeout(current_app.config.get("CRM_SYNC_PASS_TIMEOUT_SECONDS"))


def _log_result(task_name: str, payload: dict[str, Any], **extra: Any) -> None:
    log = current_app.logger.info if payload.get("success") else current_app.logger.warning
    log(
        "CRM sync task %s finished: %s",
        task_name,
        payload.get("message"),
        extra={"crm_task": task_name, "crm_stats": payload.get("stats"), **extra},
    )
    if not payload.get("success"):
        alert_sync_failure(
            f"CRM sync task {task_name} finished with errors: {payload.get('message')}",
            {"endpoint": f"celery:{task_name}", "errors": "; ".join(payload.get("errors") or [])[:500], **extra},
        )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def find_due_connections(session: Session | None = None, *, now: datetime | None = None) -> List[CrmConnection]:
    """
    Enabled connections whose ``sync_interval_minutes`` has elapsed since
    their last completed pass. Connections that never synced are always due.
    """
    session = session or db.session
    now = now or datetime.now(timezone.utc)
    due: List[CrmConnection] = []
    for connection in session.query(CrmConnection).filter_by(is_enabled=True).order_by(CrmConnection.id):
        if connection.last_sync_at is None:
            due.append(connection)
            continue
        interval = timedelta(minutes=max(1, int(connection.sync_interval_minutes or 0)))
        if _aware(connection.last_sync_at) + interval <= now:
            due.append(connection)
    return due


@shared_task(name="crm_sync.healthcheck", bind=True)
def crm_sync_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="crm_sync.sync_connection", bind=True)
def sync_connection(self, *, connection_id: int, incremental: bool = True) -> dict[str, Any]:
    """Run a full or incremental pass for one connection."""
    service = SyncService()
    token = _runtime_token()
    if incremental:
        result = service.sync_incremental(connection_id, cancel_token=token)
    else:
        result = service.sync_all(connection_id, cancel_token=token)
    payload = result.as_dict()
    _log_result(
        "sync_connection",
        payload,
        crm_connection_id=connection_id,
        crm_incremental=incremental,
        crm_task_id=self.request.id,
    )
    return payload


@shared_task(name="crm_sync.sync_entity_mapping", bind=True)
def sync_entity_mapping(self, *, mapping_id: int, is_full_sync: bool = True) -> dict[str, Any]:
    result = SyncService().sync_entity_mapping(mapping_id, is_full_sync, cancel_token=_runtime_token())
    payload = result.as_dict()
    _log_result("sync_entity_mapping", payload, crm_mapping_id=mapping_id, crm_task_id=self.request.id)
    return payload


@shared_task(name="crm_sync.sync_relationships", bind=True)
def sync_relationships(self, *, mapping_id: int) -> dict[str, Any]:
    result = SyncService().sync_relationships(mapping_id, cancel_token=_runtime_token())
    payload = result.as_dict()
    _log_result("sync_relationships", payload, crm_mapping_id=mapping_id, crm_task_id=self.request.id)
    return payload


@shared_task(name="crm_sync.sync_outbound", bind=True)
def sync_outbound(self, *, entity_type: str, entity_id: int) -> dict[str, Any]:
    """Push one local record to every connection that maps its type."""
    result = SyncService().trigger_outbound_sync(entity_type, entity_id)
    payload = result.as_dict()
    _log_result("sync_outbound", payload, crm_entity=entity_type, crm_record_id=entity_id)
    return payload


@shared_task(name="crm_sync.sync_inbound", bind=True)
def sync_inbound(self, *, connection_id: int, remote_entity_name: str, remote_id: str) -> dict[str, Any]:
    result = SyncService().sync_inbound(connection_id, remote_entity_name, remote_id)
    payload = result.as_dict()
    _log_result(
        "sync_inbound",
        payload,
        crm_connection_id=connection_id,
        crm_entity=remote_entity_name,
        crm_record_id=remote_id,
    )
    return payload


@shared_task(name="crm_sync.process_webhook", bind=True)
def process_webhook(
    self,
    *,
    connection_id: int,
    event_type: str,
    entity_name: str,
    record_id: str,
    delivery_id: str | None = None,
) -> dict[str, Any]:
    """Apply a webhook event that the receiver queued instead of handling inline."""
    event = WebhookEvent(event_type=event_type, entity_name=entity_name, record_id=record_id, delivery_id=delivery_id)
    result = SyncService().process_webhook(connection_id, event)
    payload = result.as_dict()
    _log_result(
        "process_webhook",
        payload,
        crm_connection_id=connection_id,
        crm_entity=entity_name,
        crm_record_id=record_id,
        crm_delivery_id=delivery_id,
    )
    return payload


@shared_task(name="crm_sync.schedule_due_connections", bind=True)
def schedule_due_connections(self) -> dict[str, Any]:
    """
    Periodic fan-out: enqueue an incremental pass for every due connection.

    Connections that never completed a pass get a full sync instead.
    """
    queued = []
    for connection in find_due_connections():
        incremental = connection.last_sync_at is not None
        async_result = sync_connection.apply_async(
            kwargs={"connection_id": connection.id, "incremental": incremental}
        )
        queued.append({"connection_id": connection.id, "incremental": incremental, "task_id": async_result.id})
    current_app.logger.info(
        "Queued %s scheduled CRM sync passes",
        len(queued),
        extra={"crm_scheduled": queued},
    )
    return {"queued": queued, "timestamp": datetime.now(timezone.utc).isoformat()}
