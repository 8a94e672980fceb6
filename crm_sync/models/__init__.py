# crm_sync/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .crm import (
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
from .location import Location
from .organization import Organization
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "Organization",
    "Location",
    # CRM configuration and audit
    "CrmConnection",
    "EntityMapping",
    "FieldMapping",
    "RelationshipMapping",
    "CorrelationEntry",
    "SyncLog",
    # CRM enums
    "ProviderType",
    "SyncDirection",
    "LocalEntityType",
    "SyncAction",
    "SyncStatus",
    "TransformationType",
]
