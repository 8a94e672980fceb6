"""
CLI commands for CRM synchronization (``flask crm ...``).

Sync commands run inline by default and trip their cancellation token on
Ctrl+C, so an interrupted pass stops before the next record.
"""

from __future__ import annotations

import json
import signal
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from crm_sync.utils.crm import get_crm_sync_providers, is_crm_sync_enabled

from .admin import CrmAdminService
from .cancellation import CancellationToken
from .celery_app import CRM_SYNC_EXTENSION_KEY, DEFAULT_QUEUE_NAME, get_celery_app
from .orchestrator import SyncService
from .results import SyncResult


@click.group(name="crm", invoke_without_command=True)
@click.pass_context
def crm_cli(ctx):
    """
    CRM synchronization commands.

    Displays configured providers when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_crm_sync_enabled(app):
        raise click.ClickException(
            "CRM sync is disabled via CRM_SYNC_ENABLED=false. Enable it to run CRM CLI commands."
        )
    if ctx.invoked_subcommand is None:
        providers = get_crm_sync_providers(app)
        if not providers:
            click.echo("No CRM providers configured.")
        else:
            click.echo("Enabled CRM providers:")
            for provider in providers:
                click.echo(f"  - {provider}")


def get_disabled_crm_group() -> click.Group:
    """
    Return a minimal command group that informs the operator CRM sync is disabled.
    """

    @click.group(name="crm", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("CRM commands are unavailable because CRM_SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "CRM sync Celery app is unavailable. Ensure CRM_SYNC_ENABLED=true and the "
            "crm_sync package initialises before running worker commands."
        )
    return celery_app


@contextmanager
def _interruptible(token: CancellationToken) -> Iterator[CancellationToken]:
    """Trip ``token`` on SIGINT for the duration of the block."""

    def _handle(signum, frame):
        click.echo("Cancellation requested; finishing the current record...", err=True)
        token.cancel("interrupted")

    try:
        previous = signal.signal(signal.SIGINT, _handle)
    except ValueError:
        # Not in the main thread; leave the default handler in place.
        yield token
        return
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


def _format_result(result: SyncResult) -> str:
    stats = result.stats
    lines = [
        result.message or ("Sync completed successfully" if result.success else "Sync completed with errors"),
        f"  processed : {stats.processed}",
        f"  created   : {stats.created}",
        f"  updated   : {stats.updated}",
        f"  unchanged : {stats.unchanged}",
        f"  deleted   : {stats.deleted}",
        f"  skipped   : {stats.skipped}",
        f"  failed    : {stats.failed}",
        f"  inbound   : {stats.inbound}",
        f"  outbound  : {stats.outbound}",
        f"  duration  : {result.duration.total_seconds():.2f}s",
    ]
    if result.cancelled:
        lines.append("  cancelled : yes")
    if result.errors:
        lines.append("  errors:")
        lines.extend(f"    - {error}" for error in result.errors[-10:])
    return "\n".join(lines)


def _emit_result(result: SyncResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2))
    else:
        click.echo(_format_result(result))
    if not result.success:
        raise click.exceptions.Exit(1)


def _queue_task(app, task_name: str, as_json: bool, **kwargs) -> None:
    celery_app = _resolve_celery(app)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs, queue=DEFAULT_QUEUE_NAME)
    except Exception as exc:  # pragma: no cover - broker failures
        raise click.ClickException(f"Failed to enqueue {task_name}: {exc}") from exc
    payload = {"task": task_name, "task_id": async_result.id, "status": "queued", "kwargs": kwargs}
    app.logger.info("CRM sync task queued via CLI", extra={"crm_task": task_name, "crm_task_id": async_result.id})
    if as_json:
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(f"Queued {task_name} (task id {async_result.id}).")


def _runtime_token(app) -> CancellationToken:
    return CancellationToken.with_timeout(app.config.get("CRM_SYNC_PASS_TIMEOUT_SECONDS"))


@crm_cli.command("sync")
@click.option("--connection-id", type=int, help="Connection to sync (required unless --mapping-id is given).")
@click.option("--incremental", is_flag=True, help="Only pull remote records modified since the last sync.")
@click.option("--mapping-id", type=int, help="Sync a single entity mapping instead of the whole connection.")
@click.option("--relationships-only", is_flag=True, help="Only resolve relationship fields for --mapping-id.")
@click.option("--async", "run_async", is_flag=True, help="Queue the sync on the Celery worker.")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON.")
@click.pass_context
def crm_sync_command(
    ctx,
    connection_id: Optional[int],
    incremental: bool,
    mapping_id: Optional[int],
    relationships_only: bool,
    run_async: bool,
    as_json: bool,
):
    """Run a full, incremental, per-mapping or relationship-only sync."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    if mapping_id is None and connection_id is None:
        raise click.ClickException("Provide --connection-id or --mapping-id.")
    if relationships_only and mapping_id is None:
        raise click.ClickException("--relationships-only requires --mapping-id.")

    if run_async:
        if relationships_only:
            _queue_task(app, "crm_sync.sync_relationships", as_json, mapping_id=mapping_id)
        elif mapping_id is not None:
            _queue_task(
                app, "crm_sync.sync_entity_mapping", as_json, mapping_id=mapping_id, is_full_sync=not incremental
            )
        else:
            _queue_task(app, "crm_sync.sync_connection", as_json, connection_id=connection_id, incremental=incremental)
        return

    service = SyncService()
    with _interruptible(_runtime_token(app)) as token:
        if relationships_only:
            result = service.sync_relationships(mapping_id, cancel_token=token)
        elif mapping_id is not None:
            result = service.sync_entity_mapping(mapping_id, is_full_sync=not incremental, cancel_token=token)
        elif incremental:
            result = service.sync_incremental(connection_id, cancel_token=token)
        else:
            result = service.sync_all(connection_id, cancel_token=token)
    _emit_result(result, as_json)


@crm_cli.command("push")
@click.option("--connection-id", type=int, help="Limit the push to one connection.")
@click.option("--entity-type", required=True, type=click.Choice(["user", "organization", "location"]))
@click.option("--entity-id", required=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON.")
@click.pass_context
def crm_push(ctx, connection_id: Optional[int], entity_type: str, entity_id: int, as_json: bool):
    """Push one local record to the CRM."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    service = SyncService()
    with _interruptible(_runtime_token(app)) as token:
        if connection_id is None:
            result = service.trigger_outbound_sync(entity_type, entity_id, cancel_token=token)
        else:
            result = service.sync_outbound(connection_id, entity_type, entity_id, cancel_token=token)
    _emit_result(result, as_json)


@crm_cli.command("pull")
@click.option("--connection-id", required=True, type=int)
@click.option("--entity", "remote_entity_name", required=True, help="Remote entity logical name, e.g. 'contact'.")
@click.option("--record-id", required=True, help="Remote record id.")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON.")
@click.pass_context
def crm_pull(ctx, connection_id: int, remote_entity_name: str, record_id: str, as_json: bool):
    """Pull one remote record into the local store."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    with _interruptible(_runtime_token(app)) as token:
        result = SyncService().sync_inbound(connection_id, remote_entity_name, record_id, cancel_token=token)
    _emit_result(result, as_json)


@crm_cli.command("test-connection")
@click.option("--connection-id", required=True, type=int)
@click.pass_context
def crm_test_connection(ctx, connection_id: int):
    """Validate a connection's credentials against the CRM."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    if CrmAdminService().test_connection(connection_id):
        click.echo(f"Connection {connection_id} is valid.")
        return
    raise click.ClickException(f"Connection {connection_id} could not be validated.")


@crm_cli.command("logs")
@click.option("--connection-id", required=True, type=int)
@click.option("--limit", default=50, show_default=True, type=click.IntRange(1, 1000))
@click.option("--status", type=click.Choice(["success", "failed", "conflict", "skipped"]))
@click.option("--since-hours", type=click.IntRange(min=1), help="Only show rows from the last N hours.")
@click.option("--json", "as_json", is_flag=True, help="Emit rows as JSON.")
@click.pass_context
def crm_logs(ctx, connection_id: int, limit: int, status: Optional[str], since_hours: Optional[int], as_json: bool):
    """Show recent sync log rows for a connection."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    since = datetime.now(timezone.utc) - timedelta(hours=since_hours) if since_hours else None
    logs = CrmAdminService().get_sync_logs(connection_id, limit=limit, status=status, since=since)
    if as_json:
        click.echo(json.dumps([log.as_dict() for log in logs], indent=2))
        return
    if not logs:
        click.echo("No sync log rows found.")
        return
    for log in logs:
        target = f"{log.local_entity_type.value if log.local_entity_type else '-'}:{log.local_entity_id or '-'}"
        remote = f"{log.remote_entity_name or '-'}:{log.remote_entity_id or '-'}"
        line = (
            f"{log.synced_at.isoformat() if log.synced_at else '-'} "
            f"{log.direction.value:<8} {log.action.value:<6} {log.status.value:<8} {target} <-> {remote}"
        )
        if log.error_message:
            line += f" ({log.error_message})"
        click.echo(line)


@crm_cli.command("clear-logs")
@click.option("--connection-id", required=True, type=int)
@click.option("--older-than-days", type=click.IntRange(min=0), help="Defaults to CRM_SYNC_LOG_RETENTION_DAYS.")
@click.option("--all", "clear_all", is_flag=True, help="Delete every log row for the connection.")
@click.pass_context
def crm_clear_logs(ctx, connection_id: int, older_than_days: Optional[int], clear_all: bool):
    """Delete old sync log rows."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    older_than = None
    if not clear_all:
        days = older_than_days
        if days is None:
            days = int(app.config.get("CRM_SYNC_LOG_RETENTION_DAYS", 30))
        older_than = datetime.now(timezone.utc) - timedelta(days=days)
    deleted = CrmAdminService().clear_sync_logs(connection_id, older_than=older_than)
    scope = "all rows" if older_than is None else f"rows older than {older_than.date().isoformat()}"
    click.echo(f"Deleted {deleted} sync log row(s) ({scope}).")


@crm_cli.command("diagnostics")
@click.option("--connection-id", required=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit diagnostics as JSON.")
@click.pass_context
def crm_diagnostics(ctx, connection_id: int, as_json: bool):
    """Report correlation coverage and a next-step recommendation."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    diagnostics = CrmAdminService().get_sync_diagnostics(connection_id)
    if as_json:
        click.echo(json.dumps(diagnostics.as_dict(), indent=2))
        return
    click.echo(f"Connection {connection_id}: {diagnostics.connection_status}")
    click.echo(
        f"  local records       : {diagnostics.total_users} users, {diagnostics.total_locations} locations, "
        f"{diagnostics.total_organizations} organizations"
    )
    click.echo(f"  user -> contact     : {diagnostics.user_to_contact}")
    click.echo(f"  location -> account : {diagnostics.location_to_account}")
    click.echo(f"  org -> account      : {diagnostics.organization_to_account}")
    for sample in diagnostics.sample_user_mappings + diagnostics.sample_account_mappings:
        click.echo(f"    {sample}")
    for stripped in diagnostics.stripped_field_mappings:
        click.echo(f"  ignored field mapping: {stripped}")
    click.echo(f"Recommendation: {diagnostics.recommendation}")


@crm_cli.command("stats")
@click.option("--connection-id", required=True, type=int)
@click.pass_context
def crm_stats(ctx, connection_id: int):
    """Print sync log counts for a connection as JSON."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    service = CrmAdminService()
    try:
        service.get_connection(connection_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(service.get_sync_stats(connection_id).as_dict(), indent=2))


@crm_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the CRM sync background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get(CRM_SYNC_EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("CRM_SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: CRM_SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat", is_flag=True, help="Embed the beat scheduler for periodic incremental syncs.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get(CRM_SYNC_EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = [
        "worker",
        "--loglevel",
        loglevel,
        "-Q",
        queues,
    ]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting CRM sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("crm_sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'crm_sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


__all__ = ["crm_cli", "get_disabled_crm_group"]
