from .schema import (
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

__all__ = [
    "CorrelationEntry",
    "CrmConnection",
    "EntityMapping",
    "FieldMapping",
    "LocalEntityType",
    "ProviderType",
    "RelationshipMapping",
    "SyncAction",
    "SyncDirection",
    "SyncLog",
    "SyncStatus",
    "TransformationType",
]
