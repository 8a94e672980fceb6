"""
SQLAlchemy models for CRM synchronization.

Connections own entity mappings, which in turn own field and relationship
mappings. Correlation entries link one local record to one remote record and
sync logs keep an append-only audit trail of every attempted record sync.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ProviderType(str, enum.Enum):
    """Remote CRM products a connection can point at."""

    DYNAMICS365 = "dynamics365"
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"


class SyncDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"

    def allows_outbound(self) -> bool:
        return self in (SyncDirection.OUTBOUND, SyncDirection.BIDIRECTIONAL)

    def allows_inbound(self) -> bool:
        return self in (SyncDirection.INBOUND, SyncDirection.BIDIRECTIONAL)


class LocalEntityType(str, enum.Enum):
    """Local record types that can be mapped to remote entities."""

    USER = "user"
    ORGANIZATION = "organization"
    LOCATION = "location"


class SyncAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


class TransformationType(str, enum.Enum):
    NONE = "none"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    DATEFORMAT = "dateformat"
    LOOKUP = "lookup"
    CONCAT = "concat"
    SPLIT = "split"
    DEFAULT = "default"
    BOOLEAN = "boolean"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrmConnection(BaseModel):
    """One configured link to a remote CRM tenant."""

    __tablename__ = "crm_connections"

    id: Mapped[int] = mapped_column(primary_key=True)
    provider_type: Mapped[ProviderType] = mapped_column(
        Enum(ProviderType, name="crm_provider_type_enum"),
        nullable=False,
        default=ProviderType.DYNAMICS365,
    )
    display_name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    environment_url: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    # Credential material is opaque to the engine; only providers read it.
    access_token: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    token_expiry: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    api_key: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    client_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    sync_interval_minutes: Mapped[int] = mapped_column(db.Integer, nullable=False, default=60)
    is_enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )

    entity_mappings = relationship(
        "EntityMapping",
        back_populates="connection",
        cascade="all, delete-orphan",
        order_by="EntityMapping.id",
    )
    external_ids = relationship(
        "CorrelationEntry",
        back_populates="connection",
        cascade="all, delete-orphan",
    )
    sync_logs = relationship(
        "SyncLog",
        back_populates="connection",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<CrmConnection {self.id} {self.display_name}>"

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "provider_type": self.provider_type.value if self.provider_type else None,
            "display_name": self.display_name,
            "environment_url": self.environment_url,
            "is_enabled": self.is_enabled,
            "sync_interval_minutes": self.sync_interval_minutes,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_sync_error": self.last_sync_error,
            "has_webhook_secret": bool(self.webhook_secret),
            "organization_id": self.organization_id,
        }


class EntityMapping(BaseModel):
    """Declares that a local entity type syncs with a named remote entity."""

    __tablename__ = "crm_entity_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("crm_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    local_entity_type: Mapped[LocalEntityType] = mapped_column(
        Enum(LocalEntityType, name="crm_local_entity_type_enum"), nullable=False
    )
    remote_entity_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    remote_display_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    sync_direction: Mapped[SyncDirection] = mapped_column(
        Enum(SyncDirection, name="crm_sync_direction_enum"),
        nullable=False,
        default=SyncDirection.BIDIRECTIONAL,
    )
    is_enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    filter_expression: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    primary_key_field: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    modified_date_field: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    connection = relationship("CrmConnection", back_populates="entity_mappings")
    field_mappings = relationship(
        "FieldMapping",
        back_populates="entity_mapping",
        cascade="all, delete-orphan",
        order_by="FieldMapping.display_order",
    )
    relationship_mappings = relationship(
        "RelationshipMapping",
        back_populates="entity_mapping",
        cascade="all, delete-orphan",
        order_by="RelationshipMapping.display_order",
    )

    __table_args__ = (
        Index("idx_crm_entity_mapping_lookup", "connection_id", "local_entity_type", "remote_entity_name"),
    )

    def __repr__(self) -> str:
        return f"<EntityMapping {self.local_entity_type.value}->{self.remote_entity_name}>"

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "local_entity_type": self.local_entity_type.value,
            "remote_entity_name": self.remote_entity_name,
            "remote_display_name": self.remote_display_name,
            "sync_direction": self.sync_direction.value,
            "is_enabled": self.is_enabled,
            "filter_expression": self.filter_expression,
            "field_mappings": [mapping.as_dict() for mapping in self.field_mappings],
            "relationship_mappings": [mapping.as_dict() for mapping in self.relationship_mappings],
        }


class FieldMapping(BaseModel):
    """Scalar field correspondence inside an entity mapping."""

    __tablename__ = "crm_field_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_mapping_id: Mapped[int] = mapped_column(
        ForeignKey("crm_entity_mappings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    local_field: Mapped[str] = mapped_column(db.String(100), nullable=False)
    remote_field: Mapped[str] = mapped_column(db.String(100), nullable=False)
    sync_direction: Mapped[SyncDirection] = mapped_column(
        Enum(SyncDirection, name="crm_sync_direction_enum"),
        nullable=False,
        default=SyncDirection.BIDIRECTIONAL,
    )
    is_required: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    transformation_type: Mapped[TransformationType] = mapped_column(
        Enum(TransformationType, name="crm_transformation_type_enum"),
        nullable=False,
        default=TransformationType.NONE,
    )
    transformation_config: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    display_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    entity_mapping = relationship("EntityMapping", back_populates="field_mappings")

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "local_field": self.local_field,
            "remote_field": self.remote_field,
            "sync_direction": self.sync_direction.value,
            "is_required": self.is_required,
            "is_enabled": self.is_enabled,
            "transformation_type": self.transformation_type.value,
            "transformation_config": self.transformation_config,
            "display_order": self.display_order,
        }


class RelationshipMapping(BaseModel):
    """Maps a local foreign-key field onto a remote lookup field."""

    __tablename__ = "crm_relationship_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_mapping_id: Mapped[int] = mapped_column(
        ForeignKey("crm_entity_mappings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    local_field: Mapped[str] = mapped_column(db.String(100), nullable=False)
    related_local_type: Mapped[LocalEntityType] = mapped_column(
        Enum(LocalEntityType, name="crm_local_entity_type_enum"), nullable=False
    )
    remote_lookup_field: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    remote_related_entity: Mapped[str] = mapped_column(db.String(100), nullable=False)
    sync_direction: Mapped[SyncDirection] = mapped_column(
        Enum(SyncDirection, name="crm_sync_direction_enum"),
        nullable=False,
        default=SyncDirection.BIDIRECTIONAL,
    )
    is_enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    auto_create_related: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sync_null_values: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    entity_mapping = relationship("EntityMapping", back_populates="relationship_mappings")

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "local_field": self.local_field,
            "related_local_type": self.related_local_type.value,
            "remote_lookup_field": self.remote_lookup_field,
            "remote_related_entity": self.remote_related_entity,
            "sync_direction": self.sync_direction.value,
            "is_enabled": self.is_enabled,
            "auto_create_related": self.auto_create_related,
            "sync_null_values": self.sync_null_values,
            "display_order": self.display_order,
        }


class CorrelationEntry(BaseModel):
    """Durable link between one local record and one remote record."""

    __tablename__ = "crm_external_ids"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("crm_connections.id", ondelete="CASCADE"), nullable=False
    )
    local_entity_type: Mapped[LocalEntityType] = mapped_column(
        Enum(LocalEntityType, name="crm_local_entity_type_enum"), nullable=False
    )
    local_entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    remote_entity_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    remote_entity_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    last_sync_direction: Mapped[SyncDirection | None] = mapped_column(
        Enum(SyncDirection, name="crm_sync_direction_enum"), nullable=True
    )
    last_outbound_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    last_inbound_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)

    connection = relationship("CrmConnection", back_populates="external_ids")

    __table_args__ = (
        UniqueConstraint(
            "connection_id",
            "local_entity_type",
            "local_entity_id",
            name="uq_crm_external_id_local",
        ),
        # Not unique: duplicate remote links are tolerated and reported as conflicts.
        Index(
            "idx_crm_external_id_remote",
            "connection_id",
            "remote_entity_name",
            "remote_entity_id",
        ),
    )

    def mark_synced(
        self,
        *,
        direction: SyncDirection,
        synced_at: datetime | None = None,
    ) -> None:
        """Refresh bookkeeping after a successful sync of the linked pair."""

        self.last_synced_at = synced_at or _utcnow()
        self.last_sync_direction = direction

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "local_entity_type": self.local_entity_type.value,
            "local_entity_id": self.local_entity_id,
            "remote_entity_name": self.remote_entity_name,
            "remote_entity_id": self.remote_entity_id,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_sync_direction": self.last_sync_direction.value if self.last_sync_direction else None,
        }


class SyncLog(db.Model):
    """Append-only audit row per attempted record sync."""

    __tablename__ = "crm_sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("crm_connections.id", ondelete="CASCADE"), nullable=False
    )
    entity_mapping_id: Mapped[int | None] = mapped_column(
        ForeignKey("crm_entity_mappings.id", ondelete="SET NULL"), nullable=True
    )
    local_entity_type: Mapped[LocalEntityType | None] = mapped_column(
        Enum(LocalEntityType, name="crm_local_entity_type_enum"), nullable=True
    )
    local_entity_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    remote_entity_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    remote_entity_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    direction: Mapped[SyncDirection] = mapped_column(
        Enum(SyncDirection, name="crm_sync_direction_enum"), nullable=False
    )
    action: Mapped[SyncAction] = mapped_column(Enum(SyncAction, name="crm_sync_action_enum"), nullable=False)
    status: Mapped[SyncStatus] = mapped_column(Enum(SyncStatus, name="crm_sync_status_enum"), nullable=False)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    error_details: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    changed_fields: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True,
    )

    connection = relationship("CrmConnection", back_populates="sync_logs")

    __table_args__ = (
        Index("idx_crm_sync_logs_connection_status", "connection_id", "status"),
        Index("idx_crm_sync_logs_connection_synced", "connection_id", "synced_at"),
    )

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "entity_mapping_id": self.entity_mapping_id,
            "local_entity_type": self.local_entity_type.value if self.local_entity_type else None,
            "local_entity_id": self.local_entity_id,
            "remote_entity_name": self.remote_entity_name,
            "remote_entity_id": self.remote_entity_id,
            "direction": self.direction.value,
            "action": self.action.value,
            "status": self.status.value,
            "error_message": self.error_message,
            "changed_fields": list(self.changed_fields or []),
            "duration_ms": self.duration_ms,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }

