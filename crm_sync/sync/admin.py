"""
Administration helpers for CRM connections, mappings, and the sync audit trail.

The JSON blueprint and the ``flask crm`` commands both go through
``CrmAdminService`` so query and validation logic stays in one place.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Type, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from crm_sync.models import Location, Organization, User, db
from crm_sync.models.crm.schema import (
    CorrelationEntry,
    CrmConnection,
    EntityMapping,
    FieldMapping,
    LocalEntityType,
    ProviderType,
    RelationshipMapping,
    SyncAction,
    SyncDirection,
    SyncLog,
    SyncStatus,
    TransformationType,
)

from .errors import CrmSyncError
from .mapping import DefaultFieldMapping, get_default_mapping_catalog, sanitize_field_mappings
from .registry import ProviderFactory, default_provider_factory

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 1000
DIAGNOSTIC_SAMPLE_SIZE = 5

# Lookup attributes that tie a CRM contact to its parent account.
CONTACT_PARENT_FIELDS = ("parentcustomerid", "_parentcustomerid_value")

CONNECTION_FIELDS = frozenset(
    {
        "provider_type",
        "display_name",
        "environment_url",
        "access_token",
        "refresh_token",
        "token_expiry",
        "api_key",
        "client_id",
        "client_secret",
        "tenant_id",
        "webhook_secret",
        "sync_interval_minutes",
        "is_enabled",
        "organization_id",
    }
)
ENTITY_MAPPING_FIELDS = frozenset(
    {
        "local_entity_type",
        "remote_entity_name",
        "remote_display_name",
        "sync_direction",
        "is_enabled",
        "filter_expression",
        "primary_key_field",
        "modified_date_field",
    }
)
FIELD_MAPPING_FIELDS = frozenset(
    {
        "local_field",
        "remote_field",
        "sync_direction",
        "is_required",
        "is_enabled",
        "transformation_type",
        "transformation_config",
        "display_order",
    }
)
RELATIONSHIP_MAPPING_FIELDS = frozenset(
    {
        "local_field",
        "related_local_type",
        "remote_lookup_field",
        "remote_related_entity",
        "sync_direction",
        "is_enabled",
        "auto_create_related",
        "sync_null_values",
        "display_order",
    }
)

_ENUM_FIELDS: Dict[str, Type[Enum]] = {
    "provider_type": ProviderType,
    "local_entity_type": LocalEntityType,
    "related_local_type": LocalEntityType,
    "sync_direction": SyncDirection,
    "transformation_type": TransformationType,
}

EnumT = TypeVar("EnumT", bound=Enum)


@dataclass(slots=True)
class SyncLogStats:
    """Aggregate counts over a connection's sync log."""

    total: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)
    directions: Dict[str, int] = field(default_factory=dict)
    actions: Dict[str, int] = field(default_factory=dict)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "statuses": dict(self.statuses),
            "directions": dict(self.directions),
            "actions": dict(self.actions),
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_successful_sync_at": (
                self.last_successful_sync_at.isoformat() if self.last_successful_sync_at else None
            ),
        }


@dataclass(slots=True)
class SyncDiagnostics:
    """Correlation health report for one connection."""

    connection_status: str = "Not Found"
    total_users: int = 0
    total_locations: int = 0
    total_organizations: int = 0
    user_to_contact: int = 0
    location_to_account: int = 0
    organization_to_account: int = 0
    contacts_with_parent: int = 0
    sample_user_mappings: List[str] = field(default_factory=list)
    sample_account_mappings: List[str] = field(default_factory=list)
    stripped_field_mappings: List[str] = field(default_factory=list)
    recommendation: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "connection_status": self.connection_status,
            "total_users": self.total_users,
            "total_locations": self.total_locations,
            "total_organizations": self.total_organizations,
            "user_to_contact_mappings": self.user_to_contact,
            "location_to_account_mappings": self.location_to_account,
            "organization_to_account_mappings": self.organization_to_account,
            "contacts_with_parent": self.contacts_with_parent,
            "sample_user_mappings": list(self.sample_user_mappings),
            "sample_account_mappings": list(self.sample_account_mappings),
            "stripped_field_mappings": list(self.stripped_field_mappings),
            "recommendation": self.recommendation,
        }


class CrmAdminService:
    """Facade over CRM configuration and audit tables."""

    def __init__(self, session: Session | None = None, *, provider_factory: ProviderFactory | None = None) -> None:
        self.session: Session = session or db.session
        self._provider_factory = provider_factory

    @property
    def provider_factory(self) -> ProviderFactory:
        if self._provider_factory is None:
            self._provider_factory = default_provider_factory()
        return self._provider_factory

    # ---------------------------------------------------------------------
    # Connections
    # ---------------------------------------------------------------------

    def list_connections(self, organization_id: int | None = None) -> List[CrmConnection]:
        query = self.session.query(CrmConnection)
        if organization_id is not None:
            query = query.filter(CrmConnection.organization_id == organization_id)
        return query.order_by(CrmConnection.display_name.asc(), CrmConnection.id.asc()).all()

    def get_connection(self, connection_id: int) -> CrmConnection:
        connection = self.session.get(CrmConnection, connection_id)
        if connection is None:
            raise NoResultFound(f"CRM connection {connection_id} not found.")
        return connection

    def create_connection(self, **values: Any) -> CrmConnection:
        cleaned = _clean_values(values, CONNECTION_FIELDS)
        if not cleaned.get("display_name"):
            raise ValueError("display_name is required.")
        connection = CrmConnection(**cleaned)
        self.session.add(connection)
        self.session.commit()
        logger.info("Created CRM connection %s", connection.id, extra={"crm_connection_id": connection.id})
        return connection

    def update_connection(self, connection_id: int, **changes: Any) -> CrmConnection:
        connection = self.get_connection(connection_id)
        _apply(connection, _clean_values(changes, CONNECTION_FIELDS))
        self.session.commit()
        return connection

    def delete_connection(self, connection_id: int) -> bool:
        connection = self.session.get(CrmConnection, connection_id)
        if connection is None:
            return False
        self.session.delete(connection)
        self.session.commit()
        logger.info("Deleted CRM connection %s", connection_id, extra={"crm_connection_id": connection_id})
        return True

    def test_connection(self, connection_id: int) -> bool:
        """Ask the provider to validate credentials; any failure reads as False."""
        connection = self.session.get(CrmConnection, connection_id)
        if connection is None:
            return False
        try:
            provider = self.provider_factory.get_provider(connection)
            valid = bool(provider.validate_connection(connection))
        except Exception as exc:
            logger.error(
                "Failed to test CRM connection %s: %s",
                connection_id,
                exc,
                extra={"crm_connection_id": connection_id},
            )
            self.session.rollback()
            return False
        # Token acquisition may have refreshed credentials on the connection.
        self.session.commit()
        return valid

    def discover_entities(self, connection_id: int) -> List[dict[str, object]]:
        connection = self.get_connection(connection_id)
        provider = self.provider_factory.get_provider(connection)
        return [schema.as_dict() for schema in provider.discover_entities(connection)]

    def discover_fields(self, connection_id: int, entity_name: str) -> List[dict[str, object]]:
        connection = self.get_connection(connection_id)
        provider = self.provider_factory.get_provider(connection)
        return [schema.as_dict() for schema in provider.discover_fields(connection, entity_name)]

    # ---------------------------------------------------------------------
    # Entity, field and relationship mappings
    # ---------------------------------------------------------------------

    def list_entity_mappings(self, connection_id: int) -> List[EntityMapping]:
        return (
            self.session.query(EntityMapping)
            .filter(EntityMapping.connection_id == connection_id)
            .order_by(EntityMapping.id.asc())
            .all()
        )

    def get_entity_mapping(self, mapping_id: int) -> EntityMapping:
        mapping = self.session.get(EntityMapping, mapping_id)
        if mapping is None:
            raise NoResultFound(f"Entity mapping {mapping_id} not found.")
        return mapping

    def create_entity_mapping(self, connection_id: int, **values: Any) -> EntityMapping:
        self.get_connection(connection_id)
        cleaned = _clean_values(values, ENTITY_MAPPING_FIELDS)
        for required in ("local_entity_type", "remote_entity_name"):
            if not cleaned.get(required):
                raise ValueError(f"{required} is required.")
        mapping = EntityMapping(connection_id=connection_id, **cleaned)
        self.session.add(mapping)
        self.session.commit()
        return mapping

    def update_entity_mapping(self, mapping_id: int, **changes: Any) -> EntityMapping:
        mapping = self.get_entity_mapping(mapping_id)
        _apply(mapping, _clean_values(changes, ENTITY_MAPPING_FIELDS))
        self.session.commit()
        return mapping

    def delete_entity_mapping(self, mapping_id: int) -> bool:
        """Delete a mapping together with its field and relationship mappings."""
        mapping = self.session.get(EntityMapping, mapping_id)
        if mapping is None:
            return False
        self.session.delete(mapping)
        self.session.commit()
        return True

    def get_field_mapping(self, field_mapping_id: int) -> FieldMapping:
        mapping = self.session.get(FieldMapping, field_mapping_id)
        if mapping is None:
            raise NoResultFound(f"Field mapping {field_mapping_id} not found.")
        return mapping

    def create_field_mapping(self, entity_mapping_id: int, **values: Any) -> FieldMapping:
        self.get_entity_mapping(entity_mapping_id)
        cleaned = _clean_values(values, FIELD_MAPPING_FIELDS)
        for required in ("local_field", "remote_field"):
            if not cleaned.get(required):
                raise ValueError(f"{required} is required.")
        mapping = FieldMapping(entity_mapping_id=entity_mapping_id, **cleaned)
        self.session.add(mapping)
        self.session.commit()
        _warn_stripped(mapping)
        return mapping

    def update_field_mapping(self, field_mapping_id: int, **changes: Any) -> FieldMapping:
        mapping = self.get_field_mapping(field_mapping_id)
        _apply(mapping, _clean_values(changes, FIELD_MAPPING_FIELDS))
        self.session.commit()
        _warn_stripped(mapping)
        return mapping

    def delete_field_mapping(self, field_mapping_id: int) -> bool:
        mapping = self.session.get(FieldMapping, field_mapping_id)
        if mapping is None:
            return False
        self.session.delete(mapping)
        self.session.commit()
        return True

    def get_relationship_mapping(self, relationship_mapping_id: int) -> RelationshipMapping:
        mapping = self.session.get(RelationshipMapping, relationship_mapping_id)
        if mapping is None:
            raise NoResultFound(f"Relationship mapping {relationship_mapping_id} not found.")
        return mapping

    def create_relationship_mapping(self, entity_mapping_id: int, **values: Any) -> RelationshipMapping:
        self.get_entity_mapping(entity_mapping_id)
        cleaned = _clean_values(values, RELATIONSHIP_MAPPING_FIELDS)
        for required in ("local_field", "related_local_type", "remote_related_entity"):
            if not cleaned.get(required):
                raise ValueError(f"{required} is required.")
        mapping = RelationshipMapping(entity_mapping_id=entity_mapping_id, **cleaned)
        self.session.add(mapping)
        self.session.commit()
        return mapping

    def update_relationship_mapping(self, relationship_mapping_id: int, **changes: Any) -> RelationshipMapping:
        mapping = self.get_relationship_mapping(relationship_mapping_id)
        _apply(mapping, _clean_values(changes, RELATIONSHIP_MAPPING_FIELDS))
        self.session.commit()
        return mapping

    def delete_relationship_mapping(self, relationship_mapping_id: int) -> bool:
        mapping = self.session.get(RelationshipMapping, relationship_mapping_id)
        if mapping is None:
            return False
        self.session.delete(mapping)
        self.session.commit()
        return True

    def get_default_field_mappings(
        self, connection_id: int, entity_type: LocalEntityType | str
    ) -> List[DefaultFieldMapping]:
        """Catalog defaults for the connection's provider and the given local type."""
        connection = self.get_connection(connection_id)
        resolved = _coerce_enum(LocalEntityType, entity_type, "entity_type")
        return list(get_default_mapping_catalog().for_entity(connection.provider_type, resolved))

    def apply_default_field_mappings(self, mapping_id: int) -> List[FieldMapping]:
        """
        Seed an entity mapping with the catalog defaults.

        Local fields that are already mapped are left alone; returns the new rows.
        """
        mapping = self.get_entity_mapping(mapping_id)
        defaults = self.get_default_field_mappings(mapping.connection_id, mapping.local_entity_type)
        existing = {field_mapping.local_field for field_mapping in mapping.field_mappings}
        created: List[FieldMapping] = []
        for default in defaults:
            if default.local_field in existing:
                continue
            field_mapping = FieldMapping(
                entity_mapping_id=mapping.id,
                local_field=default.local_field,
                remote_field=default.remote_field,
                is_required=default.is_required,
                display_order=default.display_order,
            )
            self.session.add(field_mapping)
            created.append(field_mapping)
        self.session.commit()
        return created

    # ---------------------------------------------------------------------
    # Audit trail
    # ---------------------------------------------------------------------

    def get_sync_logs(
        self,
        connection_id: int,
        limit: int = DEFAULT_LOG_LIMIT,
        status: SyncStatus | str | None = None,
        since: datetime | None = None,
    ) -> List[SyncLog]:
        query = self.session.query(SyncLog).filter(SyncLog.connection_id == connection_id)
        if status is not None and status != "":
            query = query.filter(SyncLog.status == _coerce_enum(SyncStatus, status, "status"))
        if since is not None:
            query = query.filter(SyncLog.synced_at >= _aware(since))
        limit = max(1, min(int(limit), MAX_LOG_LIMIT))
        return query.order_by(SyncLog.synced_at.desc(), SyncLog.id.desc()).limit(limit).all()

    def clear_sync_logs(self, connection_id: int, older_than: datetime | None = None) -> int:
        """Delete log rows for a connection, optionally only those before ``older_than``."""
        query = self.session.query(SyncLog).filter(SyncLog.connection_id == connection_id)
        if older_than is not None:
            query = query.filter(SyncLog.synced_at < _aware(older_than))
        deleted = query.delete(synchronize_session=False)
        self.session.commit()
        logger.info(
            "Cleared %s sync log rows for connection %s",
            deleted,
            connection_id,
            extra={"crm_connection_id": connection_id},
        )
        return deleted

    def get_sync_stats(self, connection_id: int, since: datetime | None = None) -> SyncLogStats:
        query = self.session.query(SyncLog).filter(SyncLog.connection_id == connection_id)
        if since is not None:
            query = query.filter(SyncLog.synced_at >= _aware(since))

        statuses = {
            _enum_label(status): count
            for status, count in query.with_entities(SyncLog.status, func.count()).group_by(SyncLog.status).all()
        }
        directions = {
            _enum_label(direction): count
            for direction, count in (
                query.with_entities(SyncLog.direction, func.count()).group_by(SyncLog.direction).all()
            )
        }
        successful = query.filter(SyncLog.status == SyncStatus.SUCCESS)
        actions = {
            _enum_label(action): count
            for action, count in successful.with_entities(SyncLog.action, func.count()).group_by(SyncLog.action).all()
        }
        last_sync_at = query.with_entities(func.max(SyncLog.synced_at)).scalar()
        last_success_at = successful.with_entities(func.max(SyncLog.synced_at)).scalar()

        return SyncLogStats(
            total=sum(statuses.values()),
            statuses=statuses,
            directions=directions,
            actions=actions,
            created=actions.get(SyncAction.CREATE.value, 0),
            updated=actions.get(SyncAction.UPDATE.value, 0),
            deleted=actions.get(SyncAction.DELETE.value, 0),
            last_sync_at=_aware(last_sync_at) if last_sync_at else None,
            last_successful_sync_at=_aware(last_success_at) if last_success_at else None,
        )

    def get_external_ids(
        self,
        connection_id: int,
        entity_type: LocalEntityType | str | None = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> List[CorrelationEntry]:
        query = self.session.query(CorrelationEntry).filter(CorrelationEntry.connection_id == connection_id)
        if entity_type is not None and entity_type != "":
            query = query.filter(
                CorrelationEntry.local_entity_type == _coerce_enum(LocalEntityType, entity_type, "entity_type")
            )
        limit = max(1, min(int(limit), MAX_LOG_LIMIT))
        return (
            query.order_by(CorrelationEntry.last_synced_at.desc(), CorrelationEntry.id.desc())
            .limit(limit)
            .all()
        )

    # ---------------------------------------------------------------------
    # Diagnostics
    # ---------------------------------------------------------------------

    def get_sync_diagnostics(self, connection_id: int) -> SyncDiagnostics:
        """
        Summarize how well local records are correlated with the remote CRM.

        Never raises: unexpected failures end up in ``recommendation``.
        """
        diagnostics = SyncDiagnostics()
        try:
            connection = self.session.get(CrmConnection, connection_id)
            if connection is not None:
                diagnostics.connection_status = "Enabled" if connection.is_enabled else "Disabled"

            diagnostics.total_users = self.session.query(func.count(User.id)).scalar() or 0
            diagnostics.total_locations = self.session.query(func.count(Location.id)).scalar() or 0
            diagnostics.total_organizations = self.session.query(func.count(Organization.id)).scalar() or 0

            diagnostics.user_to_contact = self._correlation_count(connection_id, LocalEntityType.USER, "contact")
            diagnostics.location_to_account = self._correlation_count(
                connection_id, LocalEntityType.LOCATION, "account"
            )
            diagnostics.organization_to_account = self._correlation_count(
                connection_id, LocalEntityType.ORGANIZATION, "account"
            )

            user_samples = self._correlation_sample(connection_id, (LocalEntityType.USER,), "contact")
            for entry in user_samples:
                user = self.session.get(User, entry.local_entity_id)
                email = user.email if user is not None else "?"
                diagnostics.sample_user_mappings.append(
                    f"User {entry.local_entity_id} ({email}) -> Contact {entry.remote_entity_id}"
                )
            for entry in self._correlation_sample(
                connection_id, (LocalEntityType.LOCATION, LocalEntityType.ORGANIZATION), "account"
            ):
                label = entry.local_entity_type.value.capitalize()
                diagnostics.sample_account_mappings.append(
                    f"{label} {entry.local_entity_id} -> Account {entry.remote_entity_id}"
                )

            if connection is not None:
                for entity_mapping in connection.entity_mappings:
                    for stripped in sanitize_field_mappings(entity_mapping.field_mappings):
                        diagnostics.stripped_field_mappings.append(
                            f"{entity_mapping.local_entity_type.value}.{stripped.local_field} -> "
                            f"{entity_mapping.remote_entity_name}.{stripped.remote_field}"
                        )

            if connection is not None and connection.is_enabled and user_samples:
                diagnostics.contacts_with_parent = self._count_contacts_with_parent(connection, user_samples)

            diagnostics.recommendation = _recommend(diagnostics)
        except Exception as exc:
            logger.error(
                "Error getting sync diagnostics: %s",
                exc,
                exc_info=True,
                extra={"crm_connection_id": connection_id},
            )
            self.session.rollback()
            diagnostics.recommendation = f"Error getting diagnostics: {exc}"
        return diagnostics

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _correlation_query(self, connection_id: int, entity_types, remote_entity_name: str):
        return self.session.query(CorrelationEntry).filter(
            CorrelationEntry.connection_id == connection_id,
            CorrelationEntry.local_entity_type.in_(list(entity_types)),
            CorrelationEntry.remote_entity_name == remote_entity_name,
        )

    def _correlation_count(self, connection_id: int, entity_type: LocalEntityType, remote_entity_name: str) -> int:
        return self._correlation_query(connection_id, (entity_type,), remote_entity_name).count()

    def _correlation_sample(self, connection_id: int, entity_types, remote_entity_name: str) -> List[CorrelationEntry]:
        return (
            self._correlation_query(connection_id, entity_types, remote_entity_name)
            .order_by(CorrelationEntry.id.asc())
            .limit(DIAGNOSTIC_SAMPLE_SIZE)
            .all()
        )

    def _count_contacts_with_parent(self, connection: CrmConnection, entries: List[CorrelationEntry]) -> int:
        try:
            provider = self.provider_factory.get_provider(connection)
            count = 0
            for entry in entries:
                record = provider.get_record(connection, "contact", entry.remote_entity_id)
                if record is None:
                    continue
                if any(provider.read_lookup_value(record, name) for name in CONTACT_PARENT_FIELDS):
                    count += 1
            return count
        except CrmSyncError as exc:
            logger.warning(
                "Error checking CRM contacts for a parent account: %s",
                exc,
                extra={"crm_connection_id": connection.id},
            )
            return 0


def _warn_stripped(mapping: FieldMapping) -> None:
    for stripped in sanitize_field_mappings([mapping]):
        logger.warning(
            "Field mapping %s targets '%s', which outbound writes always drop; use a relationship mapping instead",
            stripped.id,
            stripped.remote_field,
            extra={"crm_mapping_id": stripped.entity_mapping_id},
        )


def _recommend(diagnostics: SyncDiagnostics) -> str:
    if diagnostics.user_to_contact == 0:
        return (
            "No User -> Contact correlations found. Create an entity mapping User -> contact with an inbound "
            "or bidirectional direction, then run a sync."
        )
    if diagnostics.location_to_account == 0 and diagnostics.organization_to_account == 0:
        return (
            "No Location/Organization -> Account correlations found. Create an entity mapping Location -> account "
            "with an inbound or bidirectional direction, then run a sync."
        )
    if diagnostics.contacts_with_parent == 0:
        return "CRM contacts do not appear to have a parent account set. Check that contacts have a company assigned."
    return "Mappings look good. Run a relationship sync to link users to their locations."


def _coerce_enum(enum_cls: Type[EnumT], value: Any, field_name: str) -> EnumT:
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Unsupported {field_name} '{value}'. Expected one of: {allowed}.") from None


def _clean_values(values: Mapping[str, Any], allowed: frozenset) -> Dict[str, Any]:
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValueError("Unsupported fields: " + ", ".join(unknown))
    cleaned: Dict[str, Any] = {}
    for key, value in values.items():
        if key in _ENUM_FIELDS and value is not None:
            value = _coerce_enum(_ENUM_FIELDS[key], value, key)
        elif key == "transformation_config" and isinstance(value, Mapping):
            value = json.dumps(value, sort_keys=True)
        cleaned[key] = value
    return cleaned


def _apply(instance, changes: Mapping[str, Any]) -> None:
    for key, value in changes.items():
        setattr(instance, key, value)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _enum_label(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


__all__ = ["CrmAdminService", "SyncDiagnostics", "SyncLogStats"]
