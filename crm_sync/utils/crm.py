"""
Utility helpers for CRM sync feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_crm_sync_enabled(app=None) -> bool:
    """Return True when the CRM sync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("CRM_SYNC_ENABLED", False))


def get_crm_sync_providers(app=None) -> Tuple[str, ...]:
    """Return the configured CRM provider identifiers."""
    config = _get_config(app)
    providers: Iterable[str] = config.get("CRM_SYNC_PROVIDERS", ())
    if isinstance(providers, str):
        providers = [item.strip().lower() for item in providers.split(",") if item.strip()]
    return tuple(providers)


def is_crm_worker_enabled(app=None) -> bool:
    config = _get_config(app)
    return bool(config.get("CRM_SYNC_WORKER_ENABLED", False))
