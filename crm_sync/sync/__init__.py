"""
CRM synchronization engine.

Provides conditional blueprint and CLI registration along with provider
registry validation while remaining lightweight when CRM sync is disabled.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from crm_sync.utils.crm import get_crm_sync_providers, is_crm_sync_enabled, is_crm_worker_enabled

from .admin import CrmAdminService
from .cancellation import CancellationToken
from .celery_app import CRM_SYNC_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import crm_cli, get_disabled_crm_group
from .metrics import record_sync_enabled
from .orchestrator import SyncService
from .progress import PROGRESS_EXTENSION_KEY, SyncProgressTracker
from .registry import ProviderDescriptor, get_provider_registry, resolve_providers
from .results import SyncResult, SyncStats
from .views import crm_blueprint
from .webhooks import WebhookSessionStore, webhook_blueprint

__all__ = [
    "init_crm_sync",
    "CRM_SYNC_EXTENSION_KEY",
    "get_celery_app",
    "CancellationToken",
    "CrmAdminService",
    "SyncService",
    "SyncResult",
    "SyncStats",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        CRM_SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_providers": (),
            "active_providers": (),
            "worker_enabled": False,
            "celery_app": None,
            "provider_builders": None,
            "webhook_sessions": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = crm_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(crm_cli)
    else:
        app.cli.add_command(get_disabled_crm_group())


def _register_blueprints(app: Flask) -> None:
    for blueprint in (crm_blueprint, webhook_blueprint):
        if blueprint.name in app.blueprints:
            continue
        if getattr(app, "_got_first_request", False):
            app.logger.warning(
                "CRM blueprint '%s' registration skipped because the app has already handled its first request.",
                blueprint.name,
            )
            continue
        app.register_blueprint(blueprint)


def init_crm_sync(app: Flask) -> None:
    """
    Conditionally mount the CRM blueprints and CLI based on configuration.

    Records state inside ``app.extensions['crm_sync']`` for reuse by the
    views, CLI, webhook receiver and Celery tasks.
    """
    enabled = is_crm_sync_enabled(app)
    configured_providers: Tuple[str, ...] = get_crm_sync_providers(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_providers": configured_providers,
            "worker_enabled": is_crm_worker_enabled(app),
        }
    )
    record_sync_enabled(enabled)

    if not enabled:
        state["active_providers"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("CRM sync disabled via CRM_SYNC_ENABLED flag; skipping registration.")
        return

    active_descriptors: Iterable[ProviderDescriptor] = resolve_providers(configured_providers, get_provider_registry())
    state["active_providers"] = tuple(active_descriptors)
    for descriptor in state["active_providers"]:
        if not descriptor.implemented:
            app.logger.warning(
                "CRM provider '%s' is configured but has no implementation yet.",
                descriptor.name,
                extra={"crm_provider": descriptor.name},
            )

    app.extensions.setdefault(PROGRESS_EXTENSION_KEY, SyncProgressTracker())
    if state.get("webhook_sessions") is None:
        state["webhook_sessions"] = WebhookSessionStore(
            ttl_seconds=app.config.get("CRM_SYNC_WEBHOOK_SESSION_TTL_SECONDS", 600),
            max_entries=app.config.get("CRM_SYNC_WEBHOOK_SESSION_MAX_ENTRIES", 10000),
        )
    ensure_celery_app(app, state)

    _register_blueprints(app)
    _set_cli(app, enabled=True)

    provider_names = ", ".join(descriptor.name for descriptor in state["active_providers"]) or "none"
    app.logger.info("CRM sync enabled with providers: %s", provider_names)
