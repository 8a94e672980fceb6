"""
Natural-key record linkage used when no correlation entry exists yet.

Matches users by email and organizations/locations by title so the first sync
of data that already exists on both sides links records instead of duplicating
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from crm_sync.models.base import BaseModel
from crm_sync.models.crm.schema import CrmConnection, EntityMapping, FieldMapping

from .correlation import CorrelationStore
from .errors import ConflictError, ValidationError
from .local_store import LocalStore
from .providers.base import CrmProvider
from .values import Record


@dataclass(frozen=True)
class RemoteMatch:
    record: Record

    @property
    def remote_id(self) -> str:
        return self.record.id


def _mapped_remote_field(field_mappings: Iterable[FieldMapping], local_field: str) -> str | None:
    for mapping in field_mappings:
        if mapping.is_enabled and mapping.local_field == local_field and (mapping.remote_field or "").strip():
            return mapping.remote_field.strip()
    return None


class IdentityMatcher:
    def __init__(
        self,
        provider: CrmProvider,
        correlation: CorrelationStore,
        local_store: LocalStore,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.provider = provider
        self.correlation = correlation
        self.local_store = local_store
        self.logger = logger or logging.getLogger(__name__)

    def remote_key_field(self, mapping: EntityMapping) -> str | None:
        """Remote field holding the natural key for this mapping's entity type."""

        local_field = self.local_store.natural_key_field(mapping.local_entity_type)
        return _mapped_remote_field(mapping.field_mappings, local_field) or self.provider.natural_key_field(
            mapping.local_entity_type
        )

    def match_remote(
        self,
        connection: CrmConnection,
        mapping: EntityMapping,
        snapshot: Mapping[str, Any],
    ) -> RemoteMatch | None:
        """
        Look for an existing remote record sharing the local natural key.

        Raises ``ConflictError`` when the match is already linked to another
        local record.
        """

        key_value = snapshot.get(self.local_store.natural_key_field(mapping.local_entity_type))
        remote_field = self.remote_key_field(mapping)
        if remote_field is None or key_value is None or not str(key_value).strip():
            return None

        filter_expression = self.provider.build_equality_filter(remote_field, str(key_value).strip())
        records = self.provider.list_records(
            connection,
            mapping.remote_entity_name,
            filter_expression=filter_expression,
            top=1,
        )
        if not records:
            return None
        record = records[0]
        if not record.id:
            raise ValidationError(f"Matched {mapping.remote_entity_name} record has no identifier")

        existing = self.correlation.get_by_remote(
            connection.id,
            mapping.remote_entity_name,
            record.id,
            local_entity_type=mapping.local_entity_type,
        )
        local_id = snapshot.get("id")
        if existing is not None and existing.local_entity_id != local_id:
            raise ConflictError(
                f"Remote {mapping.remote_entity_name} {record.id} is already linked to "
                f"{mapping.local_entity_type.value} {existing.local_entity_id}",
                local_entity_id=local_id,
                remote_entity_id=record.id,
                existing_counterpart=str(existing.local_entity_id),
            )
        self.logger.info(
            "Matched local %s %s to existing %s %s by %s",
            mapping.local_entity_type.value,
            local_id,
            mapping.remote_entity_name,
            record.id,
            remote_field,
            extra={"crm_connection_id": connection.id, "crm_mapping_id": mapping.id},
        )
        return RemoteMatch(record=record)

    def natural_key_from_record(self, mapping: EntityMapping, record: Record, mapped_values: Mapping[str, Any]) -> Any:
        local_field = self.local_store.natural_key_field(mapping.local_entity_type)
        value = mapped_values.get(local_field)
        if value is None or not str(value).strip():
            fallback = self.provider.natural_key_field(mapping.local_entity_type)
            value = record.get_text(fallback) if fallback else None
        return value

    def match_local(
        self,
        connection: CrmConnection,
        mapping: EntityMapping,
        record: Record,
        mapped_values: Mapping[str, Any],
    ) -> BaseModel | None:
        """
        Find a local record sharing the remote record's natural key.

        Raises ``ConflictError`` when that local record is already linked to a
        different remote record.
        """

        key_value = self.natural_key_from_record(mapping, record, mapped_values)
        if key_value is None or not str(key_value).strip():
            return None
        entity = self.local_store.find_by_natural_key(mapping.local_entity_type, key_value)
        if entity is None:
            return None

        existing = self.correlation.get_by_local(connection.id, mapping.local_entity_type, entity.id)
        if existing is not None and existing.remote_entity_id != record.id:
            raise ConflictError(
                f"Local {mapping.local_entity_type.value} {entity.id} is already linked to "
                f"{existing.remote_entity_name} {existing.remote_entity_id}",
                local_entity_id=entity.id,
                remote_entity_id=record.id,
                existing_counterpart=existing.remote_entity_id,
            )
        self.logger.info(
            "Matched %s %s to local %s %s by natural key",
            mapping.remote_entity_name,
            record.id,
            mapping.local_entity_type.value,
            entity.id,
            extra={"crm_connection_id": connection.id, "crm_mapping_id": mapping.id},
        )
        return entity


__all__ = ["IdentityMatcher", "RemoteMatch"]
