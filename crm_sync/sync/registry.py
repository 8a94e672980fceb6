"""
Provider registry and factory.

Descriptors let configuration validation run without constructing providers;
the factory turns a connection into the concrete provider to talk to.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Mapping, Sequence, Tuple

from flask import current_app, has_app_context

from crm_sync.models.crm.schema import CrmConnection, ProviderType

from .celery_app import CRM_SYNC_EXTENSION_KEY
from .errors import ConfigurationError
from .providers.base import CrmProvider
from .providers.dynamics import DynamicsProvider


@dataclass(frozen=True)
class ProviderDescriptor:
    """Metadata describing a CRM provider."""

    name: str
    title: str
    optional_dependencies: Tuple[str, ...] = ()
    summary: str | None = None
    implemented: bool = False


def get_provider_registry() -> Mapping[str, ProviderDescriptor]:
    """Return the registry of known CRM providers."""
    return OrderedDict(
        (
            (
                ProviderType.DYNAMICS365.value,
                ProviderDescriptor(
                    name=ProviderType.DYNAMICS365.value,
                    title="Microsoft Dynamics 365",
                    optional_dependencies=(),
                    summary="Dataverse Web API with OAuth2 client credentials.",
                    implemented=True,
                ),
            ),
            (
                ProviderType.SALESFORCE.value,
                ProviderDescriptor(
                    name=ProviderType.SALESFORCE.value,
                    title="Salesforce",
                    optional_dependencies=("simple-salesforce",),
                    summary="Salesforce REST API (not yet implemented).",
                ),
            ),
            (
                ProviderType.HUBSPOT.value,
                ProviderDescriptor(
                    name=ProviderType.HUBSPOT.value,
                    title="HubSpot",
                    optional_dependencies=(),
                    summary="HubSpot CRM API (not yet implemented).",
                ),
            ),
        )
    )


def resolve_providers(
    configured: Sequence[str],
    registry: Mapping[str, ProviderDescriptor] | None = None,
) -> Iterable[ProviderDescriptor]:
    """
    Map configured provider names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_provider_registry()
    unknown = sorted({provider for provider in configured if provider not in registry})
    if unknown:
        raise ValueError(
            "Unknown CRM providers configured: "
            + ", ".join(unknown)
            + ". Update CRM_SYNC_PROVIDERS or register these providers first."
        )
    return tuple(registry[provider] for provider in configured)


ProviderBuilder = Callable[[CrmConnection], CrmProvider]


def build_dynamics_provider(connection: CrmConnection) -> CrmProvider:
    timeout = 30.0
    refresh_buffer = 300.0
    if has_app_context():
        timeout = float(current_app.config.get("CRM_SYNC_HTTP_TIMEOUT_SECONDS", timeout))
        refresh_buffer = float(current_app.config.get("CRM_SYNC_TOKEN_REFRESH_BUFFER_SECONDS", refresh_buffer))
    return DynamicsProvider(timeout=timeout, token_refresh_buffer=refresh_buffer)


class ProviderFactory:
    """
    Resolve the provider for a connection by its ``provider_type``.

    Providers are built once per factory and reused, so a factory should live
    for one pass (or one request) rather than the whole process.
    """

    def __init__(self, builders: Mapping[ProviderType, ProviderBuilder] | None = None) -> None:
        self._builders: Dict[ProviderType, ProviderBuilder] = dict(
            builders if builders is not None else {ProviderType.DYNAMICS365: build_dynamics_provider}
        )
        self._instances: Dict[ProviderType, CrmProvider] = {}

    def register(self, provider_type: ProviderType, builder: ProviderBuilder) -> None:
        self._builders[provider_type] = builder
        self._instances.pop(provider_type, None)

    def supports(self, provider_type: ProviderType) -> bool:
        return provider_type in self._builders

    def get_provider(self, connection: CrmConnection) -> CrmProvider:
        provider_type = connection.provider_type
        builder = self._builders.get(provider_type)
        if builder is None:
            name = provider_type.value if isinstance(provider_type, ProviderType) else provider_type
            raise ConfigurationError(f"CRM provider '{name}' is not supported")
        provider = self._instances.get(provider_type)
        if provider is None:
            provider = builder(connection)
            self._instances[provider_type] = provider
        return provider


def default_provider_factory() -> ProviderFactory:
    """
    Build a factory from the builders registered on the app, if any.

    ``init_crm_sync`` stores them under ``provider_builders`` in the extension
    state; without an app context the stock builders are used.
    """
    if has_app_context():
        state = current_app.extensions.get(CRM_SYNC_EXTENSION_KEY) or {}
        builders = state.get("provider_builders")
        if builders:
            return ProviderFactory(builders)
    return ProviderFactory()


__all__ = [
    "ProviderDescriptor",
    "ProviderFactory",
    "default_provider_factory",
    "build_dynamics_provider",
    "get_provider_registry",
    "resolve_providers",
]
