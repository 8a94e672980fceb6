"""Error taxonomy shared by providers and the sync orchestrator."""

from __future__ import annotations


class CrmSyncError(RuntimeError):
    """Base error for CRM synchronization failures."""


class ProviderError(CrmSyncError):
    """Raised by providers when a remote call fails."""

    def __init__(self, message: str, *, status_code: int | None = None, remote_message: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.remote_message = remote_message

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status={self.status_code})"
        return base


class AuthError(ProviderError):
    """Token acquisition or refresh failed; halts the current connection pass."""


class TransportError(ProviderError):
    """Network failure or unexpected remote status; recorded per record."""


class ValidationError(CrmSyncError):
    """A record cannot be synced as-is (missing identifier, malformed filter)."""


class ConflictError(CrmSyncError):
    """A natural-key match is already linked to a different counterpart."""

    def __init__(
        self,
        message: str,
        *,
        local_entity_id: int | None = None,
        remote_entity_id: str | None = None,
        existing_counterpart: str | None = None,
    ):
        super().__init__(message)
        self.local_entity_id = local_entity_id
        self.remote_entity_id = remote_entity_id
        self.existing_counterpart = existing_counterpart


class ConfigurationError(CrmSyncError):
    """The requested operation cannot start (disabled connection, missing mapping)."""


__all__ = [
    "CrmSyncError",
    "ProviderError",
    "AuthError",
    "TransportError",
    "ValidationError",
    "ConflictError",
    "ConfigurationError",
]
