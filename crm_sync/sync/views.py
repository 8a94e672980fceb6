"""
CRM sync blueprint endpoints for health, sync triggers, audit data and diagnostics.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import CrmApiMonitoring
from crm_sync.utils.crm import is_crm_sync_enabled

from .admin import CrmAdminService
from .cancellation import CancellationToken
from .celery_app import CRM_SYNC_EXTENSION_KEY, DEFAULT_QUEUE_NAME, get_celery_app
from .orchestrator import SyncService
from .progress import get_progress_tracker
from .registry import ProviderDescriptor

crm_blueprint = Blueprint("crm", __name__, url_prefix="/crm")


def _serialize_provider(provider: ProviderDescriptor) -> dict:
    return {
        "name": provider.name,
        "title": provider.title,
        "summary": provider.summary,
        "implemented": provider.implemented,
        "optional_dependencies": list(provider.optional_dependencies),
    }


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _state() -> dict:
    return current_app.extensions.get(CRM_SYNC_EXTENSION_KEY, {})


@crm_blueprint.before_request
def _ensure_crm_sync_enabled():
    if not is_crm_sync_enabled(current_app):
        return _json_error("CRM sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


@crm_blueprint.get("/health")
def crm_healthcheck():
    """
    Lightweight health endpoint proving the CRM blueprint mounted correctly.
    """
    state = _state()
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "providers": [_serialize_provider(provider) for provider in state.get("active_providers", ())],
            }
        ),
        200,
    )


@crm_blueprint.get("/worker_health")
def crm_worker_health():
    """
    Validate CRM sync worker availability via the heartbeat task.
    """
    state = _state()
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "crm_sync_enabled": state.get("enabled", False),
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set CRM_SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("crm_sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("CRM worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


# ---------------------------------------------------------------------------
# Request parsing helpers
# ---------------------------------------------------------------------------


def _payload() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _param(name: str, default=None):
    body = _payload()
    if name in body:
        return body[name]
    return request.args.get(name, default)


def _flag(name: str, default: bool = False) -> bool:
    value = _param(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    raise ValueError(f"Expected a boolean for '{name}', received '{value}'.")


def _positive_int(name: str, default: int | None = None) -> int | None:
    value = _param(name)
    if value in (None, ""):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected an integer for '{name}', received '{value}'.") from None
    if parsed < 1:
        raise ValueError(f"'{name}' must be a positive integer.")
    return parsed


def _datetime(name: str) -> datetime | None:
    value = _param(name)
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Unable to parse '{name}' value '{value}'. Expected ISO 8601.") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _cancel_token() -> CancellationToken:
    return CancellationToken.with_timeout(current_app.config.get("CRM_SYNC_PASS_TIMEOUT_SECONDS"))


def _queue(task_name: str, **kwargs):
    """Send a task to the worker; returns a 202 response or an error response."""
    if not _state().get("worker_enabled", False):
        return _json_error("CRM sync worker is disabled.", HTTPStatus.CONFLICT)
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Celery app unavailable.", HTTPStatus.SERVICE_UNAVAILABLE)
    async_result = celery_app.send_task(task_name, kwargs=kwargs, queue=DEFAULT_QUEUE_NAME)
    current_app.logger.info("Queued %s", task_name, extra={"crm_task": task_name, "crm_task_id": async_result.id})
    return jsonify({"status": "queued", "task_id": async_result.id, "task": task_name}), HTTPStatus.ACCEPTED


def _result_response(result):
    return jsonify(result.as_dict()), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Sync triggers
# ---------------------------------------------------------------------------


@crm_blueprint.post("/connections/<int:connection_id>/sync")
def crm_sync_connection(connection_id: int):
    try:
        incremental = _flag("incremental")
        run_async = _flag("async")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    if run_async:
        return _queue("crm_sync.sync_connection", connection_id=connection_id, incremental=incremental)

    service = SyncService()
    if incremental:
        return _result_response(service.sync_incremental(connection_id, cancel_token=_cancel_token()))
    return _result_response(service.sync_all(connection_id, cancel_token=_cancel_token()))


@crm_blueprint.post("/mappings/<int:mapping_id>/sync")
def crm_sync_mapping(mapping_id: int):
    try:
        is_full_sync = _flag("full", default=True)
        run_async = _flag("async")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    if run_async:
        return _queue("crm_sync.sync_entity_mapping", mapping_id=mapping_id, is_full_sync=is_full_sync)
    result = SyncService().sync_entity_mapping(mapping_id, is_full_sync=is_full_sync, cancel_token=_cancel_token())
    return _result_response(result)


@crm_blueprint.post("/mappings/<int:mapping_id>/relationships/sync")
def crm_sync_mapping_relationships(mapping_id: int):
    try:
        run_async = _flag("async")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    if run_async:
        return _queue("crm_sync.sync_relationships", mapping_id=mapping_id)
    return _result_response(SyncService().sync_relationships(mapping_id, cancel_token=_cancel_token()))


@crm_blueprint.post("/connections/<int:connection_id>/outbound")
def crm_sync_outbound(connection_id: int):
    entity_type = _param("entity_type")
    try:
        entity_id = _positive_int("entity_id")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if not entity_type or entity_id is None:
        return _json_error("entity_type and entity_id are required.", HTTPStatus.BAD_REQUEST)

    result = SyncService().sync_outbound(connection_id, entity_type, entity_id, cancel_token=_cancel_token())
    return _result_response(result)


@crm_blueprint.post("/outbound")
def crm_trigger_outbound():
    """Push one local record to every connection mapping its type."""
    entity_type = _param("entity_type")
    try:
        entity_id = _positive_int("entity_id")
        run_async = _flag("async")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if not entity_type or entity_id is None:
        return _json_error("entity_type and entity_id are required.", HTTPStatus.BAD_REQUEST)

    if run_async:
        return _queue("crm_sync.sync_outbound", entity_type=entity_type, entity_id=entity_id)
    result = SyncService().trigger_outbound_sync(entity_type, entity_id, cancel_token=_cancel_token())
    return _result_response(result)


@crm_blueprint.post("/connections/<int:connection_id>/inbound")
def crm_sync_inbound(connection_id: int):
    remote_entity_name = _param("remote_entity_name")
    remote_id = _param("remote_id")
    if not remote_entity_name or not remote_id:
        return _json_error("remote_entity_name and remote_id are required.", HTTPStatus.BAD_REQUEST)

    result = SyncService().sync_inbound(
        connection_id, str(remote_entity_name), str(remote_id), cancel_token=_cancel_token()
    )
    return _result_response(result)


@crm_blueprint.get("/progress")
def crm_progress_active():
    return jsonify({"active": get_progress_tracker().active()}), HTTPStatus.OK


@crm_blueprint.get("/progress/<sync_id>")
def crm_progress(sync_id: str):
    snapshot = get_progress_tracker().get(sync_id)
    if snapshot is None:
        return _json_error(f"Sync {sync_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(snapshot), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Connections, audit data and diagnostics
# ---------------------------------------------------------------------------


@crm_blueprint.get("/connections")
def crm_connections_list():
    connections = CrmAdminService().list_connections(organization_id=request.args.get("organization_id", type=int))
    return jsonify({"connections": [connection.as_dict() for connection in connections]}), HTTPStatus.OK


@crm_blueprint.get("/connections/<int:connection_id>")
def crm_connection_detail(connection_id: int):
    service = CrmAdminService()
    try:
        connection = service.get_connection(connection_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    payload = connection.as_dict()
    payload["entity_mappings"] = [mapping.as_dict() for mapping in service.list_entity_mappings(connection_id)]
    return jsonify(payload), HTTPStatus.OK


@crm_blueprint.post("/connections/<int:connection_id>/test")
def crm_connection_test(connection_id: int):
    valid = CrmAdminService().test_connection(connection_id)
    return jsonify({"connection_id": connection_id, "valid": valid}), HTTPStatus.OK


@crm_blueprint.get("/connections/<int:connection_id>/logs")
def crm_sync_logs(connection_id: int):
    try:
        limit = _positive_int("limit", default=100)
        since = _datetime("since")
        status = request.args.get("status")
    except ValueError as exc:
        CrmApiMonitoring.record_request("logs", duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        logs = CrmAdminService().get_sync_logs(connection_id, limit=limit, status=status, since=since)
    except ValueError as exc:
        CrmApiMonitoring.record_request("logs", duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    CrmApiMonitoring.record_request(
        "logs", duration_seconds=time.perf_counter() - start_time, status="success", result_count=len(logs)
    )
    return jsonify({"logs": [log.as_dict() for log in logs], "count": len(logs)}), HTTPStatus.OK


@crm_blueprint.delete("/connections/<int:connection_id>/logs")
def crm_clear_sync_logs(connection_id: int):
    try:
        older_than = _datetime("older_than")
        older_than_days = _positive_int("older_than_days")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if older_than is None and older_than_days is not None:
        older_than = datetime.now(timezone.utc) - timedelta(days=older_than_days)

    deleted = CrmAdminService().clear_sync_logs(connection_id, older_than=older_than)
    current_app.logger.info(
        "CRM sync logs cleared via API",
        extra={"crm_connection_id": connection_id, "crm_deleted_rows": deleted},
    )
    return (
        jsonify(
            {
                "deleted": deleted,
                "older_than": older_than.isoformat() if older_than else None,
            }
        ),
        HTTPStatus.OK,
    )


@crm_blueprint.get("/connections/<int:connection_id>/stats")
def crm_sync_stats(connection_id: int):
    try:
        since = _datetime("since")
    except ValueError as exc:
        CrmApiMonitoring.record_request("stats", duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    stats = CrmAdminService().get_sync_stats(connection_id, since=since)
    CrmApiMonitoring.record_request("stats", duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(stats.as_dict()), HTTPStatus.OK


@crm_blueprint.get("/connections/<int:connection_id>/external_ids")
def crm_external_ids(connection_id: int):
    start_time = time.perf_counter()
    try:
        limit = _positive_int("limit", default=100)
        entries = CrmAdminService().get_external_ids(
            connection_id, entity_type=request.args.get("entity_type"), limit=limit
        )
    except ValueError as exc:
        CrmApiMonitoring.record_request("external_ids", duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    CrmApiMonitoring.record_request(
        "external_ids",
        duration_seconds=time.perf_counter() - start_time,
        status="success",
        result_count=len(entries),
    )
    return jsonify({"external_ids": [entry.as_dict() for entry in entries], "count": len(entries)}), HTTPStatus.OK


@crm_blueprint.get("/connections/<int:connection_id>/diagnostics")
def crm_diagnostics(connection_id: int):
    start_time = time.perf_counter()
    diagnostics = CrmAdminService().get_sync_diagnostics(connection_id)
    CrmApiMonitoring.record_request(
        "diagnostics", duration_seconds=time.perf_counter() - start_time, status="success"
    )
    return jsonify(diagnostics.as_dict()), HTTPStatus.OK


__all__ = ["crm_blueprint"]
