"""CRM provider implementations."""

from .base import (
    DEFAULT_NATURAL_KEY_FIELDS,
    CrmProvider,
    EntitySchema,
    FieldSchema,
    LookupFieldInfo,
    WebhookEvent,
)
from .dynamics import DynamicsProvider

__all__ = [
    "CrmProvider",
    "EntitySchema",
    "FieldSchema",
    "LookupFieldInfo",
    "WebhookEvent",
    "DEFAULT_NATURAL_KEY_FIELDS",
    "DynamicsProvider",
]
