"""
Typed remote record model.

Remote records are ordered mappings from field name to a ``RemoteValue``, a
small closed set of kinds, so wire conversions (dates, GUIDs, decimals) happen
in one place instead of leaking dynamic JSON through the engine.
"""

from __future__ import annotations

import enum
import re
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Mapping

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,7})?)?(Z|[+-]\d{2}:?\d{2})?$"
)

WIRE_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class ValueKind(str, enum.Enum):
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    GUID = "guid"
    NULL = "null"


def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""

    text = value.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat only accepts up to six fractional digits
    match = re.match(r"^(.*\.\d{6})\d+(.*)$", text)
    if match:
        text = match.group(1) + match.group(2)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_wire_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(WIRE_DATETIME_FORMAT)


@dataclass(frozen=True)
class RemoteValue:
    """One field value from a remote record, tagged with its kind."""

    kind: ValueKind
    value: Any = None

    @classmethod
    def null(cls) -> "RemoteValue":
        return cls(ValueKind.NULL, None)

    @classmethod
    def from_wire(cls, raw: Any) -> "RemoteValue":
        if raw is None:
            return cls.null()
        if isinstance(raw, RemoteValue):
            return raw
        if isinstance(raw, bool):
            return cls(ValueKind.BOOLEAN, raw)
        if isinstance(raw, int):
            return cls(ValueKind.INTEGER, raw)
        if isinstance(raw, Decimal):
            return cls(ValueKind.DECIMAL, raw)
        if isinstance(raw, float):
            return cls(ValueKind.DECIMAL, Decimal(str(raw)))
        if isinstance(raw, datetime):
            if raw.tzinfo is None:
                raw = raw.replace(tzinfo=timezone.utc)
            return cls(ValueKind.DATETIME, raw.astimezone(timezone.utc))
        if isinstance(raw, date):
            return cls(ValueKind.DATETIME, datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc))
        if isinstance(raw, uuid.UUID):
            return cls(ValueKind.GUID, raw)
        if isinstance(raw, str):
            if _GUID_RE.match(raw):
                return cls(ValueKind.GUID, uuid.UUID(raw))
            if _DATETIME_RE.match(raw):
                try:
                    return cls(ValueKind.DATETIME, parse_datetime(raw))
                except ValueError:
                    return cls(ValueKind.STRING, raw)
            return cls(ValueKind.STRING, raw)
        # Anything else (lists, nested objects) is kept as its text form.
        return cls(ValueKind.STRING, str(raw))

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def to_python(self) -> Any:
        """Return the value as a plain Python object (GUIDs as text)."""

        if self.kind is ValueKind.GUID:
            return str(self.value).lower()
        return self.value

    def to_wire(self) -> Any:
        """Return a JSON-serializable representation."""

        if self.kind is ValueKind.NULL:
            return None
        if self.kind is ValueKind.DATETIME:
            return format_wire_datetime(self.value)
        if self.kind is ValueKind.GUID:
            return str(self.value).lower()
        if self.kind is ValueKind.DECIMAL:
            return float(self.value)
        return self.value

    def as_text(self) -> str | None:
        if self.kind is ValueKind.NULL:
            return None
        if self.kind is ValueKind.DATETIME:
            return format_wire_datetime(self.value)
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.value else "false"
        return str(self.to_python())

    def as_int(self) -> int | None:
        if self.kind in (ValueKind.INTEGER, ValueKind.BOOLEAN):
            return int(self.value)
        if self.kind is ValueKind.DECIMAL:
            return int(self.value)
        if self.kind is ValueKind.STRING:
            try:
                return int(Decimal(self.value.strip()))
            except (InvalidOperation, ValueError):
                return None
        return None


@dataclass
class Record:
    """A remote CRM record with typed field values."""

    entity_name: str
    id: str
    fields: "OrderedDict[str, RemoteValue]" = field(default_factory=OrderedDict)
    created_on: datetime | None = None
    modified_on: datetime | None = None

    @classmethod
    def from_wire(
        cls,
        entity_name: str,
        record_id: str,
        values: Mapping[str, Any],
        *,
        created_on: datetime | None = None,
        modified_on: datetime | None = None,
    ) -> "Record":
        fields: OrderedDict[str, RemoteValue] = OrderedDict()
        for key, raw in values.items():
            fields[key] = RemoteValue.from_wire(raw)
        return cls(
            entity_name=entity_name,
            id=str(record_id),
            fields=fields,
            created_on=created_on,
            modified_on=modified_on,
        )

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def value(self, name: str) -> RemoteValue:
        return self.fields.get(name, RemoteValue.null())

    def get(self, name: str, default: Any = None) -> Any:
        remote_value = self.fields.get(name)
        if remote_value is None or remote_value.is_null:
            return default
        return remote_value.to_python()

    def get_text(self, name: str) -> str | None:
        remote_value = self.fields.get(name)
        if remote_value is None:
            return None
        text = remote_value.as_text()
        if text is None or not text.strip():
            return None
        return text

    def as_dict(self) -> dict[str, Any]:
        return {key: value.to_python() for key, value in self.fields.items()}

    def to_wire(self) -> dict[str, Any]:
        return {key: value.to_wire() for key, value in self.fields.items()}


__all__ = [
    "ValueKind",
    "RemoteValue",
    "Record",
    "parse_datetime",
    "format_wire_datetime",
    "WIRE_DATETIME_FORMAT",
]
