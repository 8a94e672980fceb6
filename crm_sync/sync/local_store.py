"""
Read/write access to the local entity store for the sync engine.

Wraps the User, Organization and Location models behind one interface keyed by
``LocalEntityType`` so the orchestrator never branches on concrete models.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Type

from sqlalchemy import func, inspect
from sqlalchemy.orm import Session

from crm_sync.models import Location, Organization, User
from crm_sync.models.base import BaseModel
from crm_sync.models.crm.schema import LocalEntityType

from .errors import ValidationError
from .values import parse_datetime

logger = logging.getLogger(__name__)

ENTITY_MODELS: Mapping[LocalEntityType, Type[BaseModel]] = {
    LocalEntityType.USER: User,
    LocalEntityType.ORGANIZATION: Organization,
    LocalEntityType.LOCATION: Location,
}

NATURAL_KEY_FIELDS: Mapping[LocalEntityType, str] = {
    LocalEntityType.USER: "email",
    LocalEntityType.ORGANIZATION: "title",
    LocalEntityType.LOCATION: "title",
}

# Identifier-valued fields and the entity type they point at.
RELATIONSHIP_FIELDS: Mapping[LocalEntityType, Mapping[str, LocalEntityType]] = {
    LocalEntityType.USER: {
        "organization_id": LocalEntityType.ORGANIZATION,
        "location_id": LocalEntityType.LOCATION,
    },
    LocalEntityType.LOCATION: {
        "organization_id": LocalEntityType.ORGANIZATION,
    },
    LocalEntityType.ORGANIZATION: {},
}

DEFAULT_TITLES: Mapping[LocalEntityType, str] = {
    LocalEntityType.ORGANIZATION: "Imported Organization",
    LocalEntityType.LOCATION: "Imported Location",
}

_READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at"})


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class LocalStore:
    """Entity store adapter used by the orchestrator and identity matcher."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Introspection ----------------------------------------------------------------

    @staticmethod
    def model_for(entity_type: LocalEntityType) -> Type[BaseModel]:
        return ENTITY_MODELS[entity_type]

    @staticmethod
    def natural_key_field(entity_type: LocalEntityType) -> str:
        return NATURAL_KEY_FIELDS[entity_type]

    @staticmethod
    def relationship_fields(entity_type: LocalEntityType) -> Mapping[str, LocalEntityType]:
        return RELATIONSHIP_FIELDS.get(entity_type, {})

    def field_catalog(self, entity_type: LocalEntityType) -> List[Dict[str, object]]:
        """Describe the writable local fields for mapping configuration."""

        columns = inspect(self.model_for(entity_type)).columns
        relationships = self.relationship_fields(entity_type)
        catalog: List[Dict[str, object]] = []
        for column in columns:
            if column.key in _READ_ONLY_FIELDS:
                continue
            try:
                python_type = column.type.python_type.__name__
            except NotImplementedError:  # pragma: no cover - exotic column types
                python_type = "str"
            catalog.append(
                {
                    "name": column.key,
                    "type": python_type,
                    "nullable": bool(column.nullable),
                    "is_relationship": column.key in relationships,
                    "related_type": relationships[column.key].value if column.key in relationships else None,
                }
            )
        return catalog

    # Reads ------------------------------------------------------------------------

    def get(self, entity_type: LocalEntityType, entity_id: int) -> BaseModel | None:
        return self.session.get(self.model_for(entity_type), entity_id)

    def snapshot(self, entity_type: LocalEntityType, entity_id: int) -> Dict[str, Any] | None:
        entity = self.get(entity_type, entity_id)
        if entity is None:
            return None
        return self.snapshot_of(entity)

    @staticmethod
    def snapshot_of(entity: BaseModel) -> Dict[str, Any]:
        return {column.key: getattr(entity, column.key) for column in inspect(type(entity)).columns}

    def list_ids(self, entity_type: LocalEntityType) -> List[int]:
        model = self.model_for(entity_type)
        return [row[0] for row in self.session.query(model.id).order_by(model.id.asc()).all()]

    def count(self, entity_type: LocalEntityType) -> int:
        return self.session.query(self.model_for(entity_type)).count()

    def find_by_natural_key(self, entity_type: LocalEntityType, value: Any) -> BaseModel | None:
        if _is_blank(value):
            return None
        model = self.model_for(entity_type)
        column = getattr(model, self.natural_key_field(entity_type))
        return (
            self.session.query(model)
            .filter(func.lower(column) == str(value).strip().lower())
            .order_by(model.id.asc())
            .first()
        )

    # Coercion ---------------------------------------------------------------------

    def coerce(self, entity_type: LocalEntityType, field_name: str, value: Any) -> Any:
        """Convert a remote-side value to the column's Python type."""

        columns = inspect(self.model_for(entity_type)).columns
        if field_name not in columns:
            raise ValidationError(f"Unknown {entity_type.value} field '{field_name}'")
        if value is None:
            return None
        try:
            python_type = columns[field_name].type.python_type
        except NotImplementedError:  # pragma: no cover - exotic column types
            return value

        if python_type is bool:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in {"true", "1", "yes"}
        if python_type is int:
            if isinstance(value, bool):
                return int(value)
            try:
                return int(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Cannot convert {value!r} to integer for '{field_name}'") from exc
        if python_type is float:
            try:
                return float(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Cannot convert {value!r} to number for '{field_name}'") from exc
        if python_type is datetime:
            if isinstance(value, datetime):
                return _aware(value)
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
            try:
                return parse_datetime(str(value))
            except ValueError as exc:
                raise ValidationError(f"Cannot convert {value!r} to datetime for '{field_name}'") from exc
        if python_type is str:
            if isinstance(value, datetime):
                return _aware(value).isoformat()
            return str(value)
        return value

    @staticmethod
    def _same(current: Any, new: Any) -> bool:
        if isinstance(current, datetime) and isinstance(new, datetime):
            return _aware(current) == _aware(new)
        return current == new

    # Writes -----------------------------------------------------------------------

    def diff(
        self,
        entity_type: LocalEntityType,
        entity: BaseModel,
        values: Mapping[str, Any],
        *,
        nullable_fields: frozenset[str] = frozenset(),
    ) -> Dict[str, Any]:
        """
        Return the subset of ``values`` that would change ``entity``.

        Users only take non-empty values; blank inbound values never overwrite
        what the user already has. ``nullable_fields`` may still be cleared.
        """

        changes: Dict[str, Any] = {}
        for field_name, raw in values.items():
            if field_name in _READ_ONLY_FIELDS:
                continue
            value = self.coerce(entity_type, field_name, raw)
            if isinstance(value, str):
                value = value.strip()
            if entity_type is LocalEntityType.USER and field_name not in nullable_fields and _is_blank(value):
                continue
            if field_name == "email" and isinstance(value, str):
                value = value.lower()
            if value is None and field_name not in nullable_fields:
                column = inspect(type(entity)).columns[field_name]
                if not column.nullable:
                    continue
            if not self._same(getattr(entity, field_name), value):
                changes[field_name] = value
        return changes

    def apply(self, entity: BaseModel, changes: Mapping[str, Any]) -> None:
        for field_name, value in changes.items():
            setattr(entity, field_name, value)
        if changes:
            entity.updated_at = datetime.now(timezone.utc)
        self.session.flush()

    def create(self, entity_type: LocalEntityType, values: Mapping[str, Any]) -> tuple[BaseModel, bool]:
        """
        Create a local entity from inbound values.

        Returns ``(entity, created)``; a user whose email already exists is
        returned as-is with ``created=False``.
        """

        model = self.model_for(entity_type)
        columns = inspect(model).columns
        attributes: Dict[str, Any] = {}
        for field_name, raw in values.items():
            if field_name in _READ_ONLY_FIELDS or field_name not in columns:
                continue
            value = self.coerce(entity_type, field_name, raw)
            if isinstance(value, str):
                value = value.strip()
            if value is None and not columns[field_name].nullable:
                continue
            attributes[field_name] = value

        if entity_type is LocalEntityType.USER:
            email = (attributes.get("email") or "").lower()
            if not email:
                email = f"crm-{uuid.uuid4().hex[:12]}@imported.local"
            attributes["email"] = email
            existing = self.find_by_natural_key(LocalEntityType.USER, email)
            if existing is not None:
                return existing, False
            if _is_blank(attributes.get("first_name")) and _is_blank(attributes.get("last_name")):
                attributes["first_name"] = email.split("@", 1)[0]
        else:
            if _is_blank(attributes.get("title")):
                attributes["title"] = DEFAULT_TITLES[entity_type]

        entity = model(**attributes)
        self.session.add(entity)
        self.session.flush()
        logger.info(
            "Created local %s %s from CRM data",
            entity_type.value,
            entity.id,
            extra={"crm_entity": entity_type.value},
        )
        return entity, True


__all__ = [
    "LocalStore",
    "ENTITY_MODELS",
    "NATURAL_KEY_FIELDS",
    "RELATIONSHIP_FIELDS",
    "DEFAULT_TITLES",
]
