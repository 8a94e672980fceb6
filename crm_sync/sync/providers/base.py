"""
Provider contract implemented by every CRM backend.

The orchestrator only talks to this interface; concrete providers own the wire
protocol, token handling and metadata discovery for their CRM.
"""

from __future__ import annotations

import abc
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence, Tuple

from crm_sync.models.crm.schema import CrmConnection, LocalEntityType, ProviderType

from ..values import Record


@dataclass(frozen=True)
class EntitySchema:
    logical_name: str
    display_name: str
    plural_name: str | None = None
    description: str | None = None
    is_custom_entity: bool = False
    primary_key_field: str = "id"
    primary_name_field: str | None = None
    collection_name: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "logical_name": self.logical_name,
            "display_name": self.display_name,
            "plural_name": self.plural_name,
            "description": self.description,
            "is_custom_entity": self.is_custom_entity,
            "primary_key_field": self.primary_key_field,
            "primary_name_field": self.primary_name_field,
            "collection_name": self.collection_name,
        }


@dataclass(frozen=True)
class FieldSchema:
    logical_name: str
    display_name: str
    data_type: str = "String"
    description: str | None = None
    is_required: bool = False
    is_read_only: bool = False
    is_custom_field: bool = False
    max_length: int | None = None
    related_entity_name: str | None = None
    options: Tuple[Tuple[int, str], ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "logical_name": self.logical_name,
            "display_name": self.display_name,
            "data_type": self.data_type,
            "description": self.description,
            "is_required": self.is_required,
            "is_read_only": self.is_read_only,
            "is_custom_field": self.is_custom_field,
            "max_length": self.max_length,
            "related_entity_name": self.related_entity_name,
            "options": [{"value": value, "label": label} for value, label in self.options],
        }


@dataclass(frozen=True)
class LookupFieldInfo:
    """
    A remote relationship field and the entity types it can point at.

    Polymorphic lookups (customer/owner style) list several targets and carry a
    distinct wire-level binding name per target; ``binding_name`` selects it.
    """

    logical_name: str
    display_name: str
    possible_targets: Tuple[str, ...]
    navigation_properties: Mapping[str, str] = field(default_factory=dict)
    attribute_type: str | None = None

    @property
    def is_polymorphic(self) -> bool:
        if len(self.possible_targets) > 1:
            return True
        return (self.attribute_type or "").lower() in {"customer", "owner"}

    def targets(self, entity_name: str) -> bool:
        wanted = entity_name.lower()
        return any(target.lower() == wanted for target in self.possible_targets)

    def binding_name(self, target_entity: str | None = None) -> str:
        if target_entity:
            wanted = target_entity.lower()
            for target, navigation in self.navigation_properties.items():
                if target.lower() == wanted and navigation:
                    return navigation
        if not self.is_polymorphic and len(self.navigation_properties) == 1:
            return next(iter(self.navigation_properties.values()))
        return self.logical_name


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    entity_name: str
    record_id: str
    record: Record | None = None
    delivery_id: str | None = None
    event_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_payload: str | None = None

    @property
    def is_upsert(self) -> bool:
        return self.event_type in {"create", "created", "update", "updated", "modify", "modified"}

    @property
    def is_delete(self) -> bool:
        return self.event_type in {"delete", "deleted"}


# Natural keys used by the identity matcher when no field mapping names one.
DEFAULT_NATURAL_KEY_FIELDS: Mapping[LocalEntityType, str] = {
    LocalEntityType.USER: "email",
    LocalEntityType.ORGANIZATION: "title",
    LocalEntityType.LOCATION: "title",
}


class CrmProvider(abc.ABC):
    """Capability interface every CRM backend implements."""

    provider_type: ProviderType

    # Remote field holding the natural key for each local entity type.
    natural_key_fields: Mapping[LocalEntityType, str] = {}

    @abc.abstractmethod
    def validate_connection(self, connection: CrmConnection) -> bool:
        """Cheap reachability and auth check. Never raises."""

    @abc.abstractmethod
    def discover_entities(self, connection: CrmConnection) -> Sequence[EntitySchema]:
        ...

    @abc.abstractmethod
    def discover_fields(self, connection: CrmConnection, entity_name: str) -> Sequence[FieldSchema]:
        ...

    @abc.abstractmethod
    def get_record(self, connection: CrmConnection, entity_name: str, record_id: str) -> Record | None:
        """Fetch one record, returning None when the remote reports it missing."""

    @abc.abstractmethod
    def list_records(
        self,
        connection: CrmConnection,
        entity_name: str,
        *,
        modified_since: datetime | None = None,
        filter_expression: str | None = None,
        top: int | None = None,
    ) -> Sequence[Record]:
        """List records ordered by remote modification time, newest first."""

    @abc.abstractmethod
    def create_record(self, connection: CrmConnection, entity_name: str, fields: Mapping[str, Any]) -> str:
        ...

    @abc.abstractmethod
    def update_record(
        self, connection: CrmConnection, entity_name: str, record_id: str, fields: Mapping[str, Any]
    ) -> None:
        ...

    @abc.abstractmethod
    def delete_record(self, connection: CrmConnection, entity_name: str, record_id: str) -> None:
        ...

    @abc.abstractmethod
    def discover_lookup_fields(
        self,
        connection: CrmConnection,
        entity_name: str,
        target_entity_name: str | None = None,
    ) -> Sequence[LookupFieldInfo]:
        ...

    @abc.abstractmethod
    def parse_webhook(self, payload: str | bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        ...

    def validate_webhook_signature(self, payload: str | bytes, signature: str | None, secret: str | None) -> bool:
        """HMAC-SHA256 over the raw body, hex encoded, optionally prefixed with ``sha256=``."""

        if not secret:
            return True
        if not signature:
            return False
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256=") :]
        return hmac.compare_digest(expected, provided.lower())

    # Wire conventions the orchestrator relies on but does not own ------------

    def natural_key_field(self, entity_type: LocalEntityType) -> str | None:
        return self.natural_key_fields.get(entity_type)

    def build_equality_filter(self, field_name: str, value: str) -> str:
        escaped = str(value).replace("'", "''")
        return f"{field_name} eq '{escaped}'"

    def format_lookup_binding(
        self, lookup_field: str, related_entity: str, remote_id: str | None
    ) -> tuple[str, Any]:
        """Return the (payload key, payload value) used to write a relationship."""

        return lookup_field, remote_id

    def read_lookup_value(self, record: Record, lookup_field: str) -> str | None:
        """Extract the remote id a lookup field points at, if any."""

        return record.get_text(lookup_field)

    def has_lookup_value(self, record: Record, lookup_field: str) -> bool:
        """True when the record carries the lookup at all, even as null."""

        return lookup_field in record


__all__ = [
    "CrmProvider",
    "EntitySchema",
    "FieldSchema",
    "LookupFieldInfo",
    "WebhookEvent",
    "DEFAULT_NATURAL_KEY_FIELDS",
]
