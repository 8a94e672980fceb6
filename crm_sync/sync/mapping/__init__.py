"""Field mapping, value transformations and the default mapping catalog."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import yaml
from flask import current_app

from crm_sync.models.crm.schema import FieldMapping, LocalEntityType, ProviderType, TransformationType

from ..values import WIRE_DATETIME_FORMAT, Record, parse_datetime

logger = logging.getLogger(__name__)

# Remote relationship fields that must be written through relationship
# mappings, never as plain scalar values.
LOOKUP_FIELDS = frozenset(
    {
        "accountid",
        "parentcustomerid",
        "parentaccountid",
        "ownerid",
        "owninguser",
        "owningteam",
        "owningbusinessunit",
        "transactioncurrencyid",
        "createdby",
        "modifiedby",
        "createdonbehalfby",
        "modifiedonbehalfby",
        "originatingleadid",
        "preferredsystemuserid",
        "preferredserviceid",
        "slaid",
        "slainvokedid",
        "parentcontactid",
        "masterid",
        "primarycontactid",
    }
)

# Server-generated primary keys, rejected by the remote on create/update.
PRIMARY_KEY_FIELDS = frozenset(
    {
        "accountid",
        "contactid",
        "leadid",
        "opportunityid",
        "incidentid",
        "systemuserid",
        "teamid",
        "businessunitid",
        "organizationid",
    }
)

STRIPPED_FIELDS = LOOKUP_FIELDS | PRIMARY_KEY_FIELDS

ENTITY_SET_OVERRIDES: Mapping[str, str] = {
    "opportunity": "opportunities",
    "category": "categories",
    "territory": "territories",
    "currency": "currencies",
    "transactioncurrency": "transactioncurrencies",
    "activityparty": "activityparties",
    "customeraddress": "customeraddresses",
    "businessunit": "businessunits",
    "systemuser": "systemusers",
}


def entity_set_name(logical_name: str) -> str:
    """Plural collection name used in relationship bind paths."""

    return ENTITY_SET_OVERRIDES.get(logical_name.lower(), logical_name + "s")


def is_stripped_field(remote_field: str | None) -> bool:
    return bool(remote_field) and remote_field.strip().lower() in STRIPPED_FIELDS


# Transformations ------------------------------------------------------------------


def parse_transformation_config(raw: str | Mapping[str, Any] | None) -> Dict[str, Any] | None:
    """Decode a JSON transformation config, returning None when unusable."""

    if raw is None:
        return None
    if isinstance(raw, Mapping):
        return dict(raw)
    if not str(raw).strip():
        return None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return parse_datetime(value)
        except ValueError:
            return None
    return None


def _truthy_text(value: Any) -> bool:
    return str(value).strip().lower() in {"true", "1", "yes"}


def apply_transformation(
    value: Any,
    transformation_type: TransformationType | str | None,
    config: str | Mapping[str, Any] | None = None,
    *,
    outbound: bool = True,
) -> Any:
    """
    Apply one field transformation in the given direction.

    Unknown types and unparseable configs leave the value unchanged.
    """

    try:
        kind = TransformationType(transformation_type or TransformationType.NONE)
    except ValueError:
        return value

    if kind is TransformationType.NONE:
        return value
    if kind is TransformationType.UPPERCASE:
        return value.upper() if isinstance(value, str) else value
    if kind is TransformationType.LOWERCASE:
        return value.lower() if isinstance(value, str) else value
    if kind is TransformationType.TRIM:
        return value.strip() if isinstance(value, str) else value

    options = parse_transformation_config(config)
    if options is None:
        return value

    if kind is TransformationType.DATEFORMAT:
        if outbound:
            moment = _as_datetime(value)
            if moment is None:
                return value
            return moment.strftime(options.get("remote_format") or WIRE_DATETIME_FORMAT)
        if isinstance(value, datetime):
            return value
        if isinstance(value, str) and value.strip():
            remote_format = options.get("remote_format")
            if remote_format:
                try:
                    parsed = datetime.strptime(value.strip(), remote_format)
                    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
                except ValueError:
                    pass
            return _as_datetime(value) or value
        return value

    if kind is TransformationType.LOOKUP:
        if value is None:
            return None
        if outbound:
            return options.get(str(value), value)
        reverse = {str(target): source for source, target in options.items()}
        return reverse.get(str(value), value)

    if kind is TransformationType.CONCAT:
        if value is None:
            return None
        prefix = str(options.get("prefix") or "")
        suffix = str(options.get("suffix") or "")
        text = str(value)
        if outbound:
            return f"{prefix}{text}{suffix}"
        if prefix and text.startswith(prefix):
            text = text[len(prefix) :]
        if suffix and text.endswith(suffix):
            text = text[: -len(suffix)]
        return text

    if kind is TransformationType.SPLIT:
        if not isinstance(value, str):
            return value
        delimiter = options.get("delimiter") or " "
        try:
            index = int(options.get("index", 0))
        except (TypeError, ValueError):
            return value
        parts = value.split(delimiter)
        if -len(parts) <= index < len(parts):
            return parts[index].strip()
        return None

    if kind is TransformationType.DEFAULT:
        if value is None or (isinstance(value, str) and not value.strip()):
            return options.get("value")
        return value

    if kind is TransformationType.BOOLEAN:
        true_value = options.get("remote_true_value")
        false_value = options.get("remote_false_value")
        if outbound:
            if value is None:
                return None
            flag = value if isinstance(value, bool) else _truthy_text(value)
            mapped = true_value if flag else false_value
            return mapped if mapped is not None else flag
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if true_value is not None:
            return str(value).strip().lower() == str(true_value).strip().lower()
        return _truthy_text(value)

    return value


# Mapping --------------------------------------------------------------------------


def to_wire(value: Any) -> Any:
    """Render a local Python value as a JSON-friendly wire value."""

    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).strftime(WIRE_DATETIME_FORMAT)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def outbound_field_mappings(field_mappings: Iterable[FieldMapping]) -> List[FieldMapping]:
    return [
        mapping
        for mapping in field_mappings
        if mapping.is_enabled and mapping.sync_direction.allows_outbound() and (mapping.remote_field or "").strip()
    ]


def inbound_field_mappings(field_mappings: Iterable[FieldMapping]) -> List[FieldMapping]:
    return [
        mapping
        for mapping in field_mappings
        if mapping.is_enabled and mapping.sync_direction.allows_inbound() and (mapping.remote_field or "").strip()
    ]


def map_outbound(snapshot: Mapping[str, Any], field_mappings: Iterable[FieldMapping]) -> "OrderedDict[str, Any]":
    """Build the remote write payload for one local entity snapshot."""

    payload: "OrderedDict[str, Any]" = OrderedDict()
    for mapping in outbound_field_mappings(field_mappings):
        remote_field = mapping.remote_field.strip()
        if is_stripped_field(remote_field):
            logger.debug("Skipping lookup field '%s' in direct mapping; use a relationship mapping", remote_field)
            continue
        if mapping.local_field not in snapshot:
            continue
        value = apply_transformation(
            snapshot[mapping.local_field],
            mapping.transformation_type,
            mapping.transformation_config,
            outbound=True,
        )
        payload[remote_field] = to_wire(value)
    return payload


def map_inbound(record: Record, field_mappings: Iterable[FieldMapping]) -> Dict[str, Any]:
    """Project a remote record onto local field names."""

    values: Dict[str, Any] = {}
    for mapping in inbound_field_mappings(field_mappings):
        remote_field = mapping.remote_field.strip()
        if remote_field not in record:
            continue
        values[mapping.local_field] = apply_transformation(
            record.get(remote_field),
            mapping.transformation_type,
            mapping.transformation_config,
            outbound=False,
        )
    return values


# Canonical remote fields that populate local fields even when unmapped.
BUILTIN_INBOUND_PROJECTIONS: Mapping[LocalEntityType, Tuple[Tuple[str, str], ...]] = {
    LocalEntityType.USER: (
        ("email", "emailaddress1"),
        ("first_name", "firstname"),
        ("last_name", "lastname"),
        ("phone_number", "telephone1"),
        ("is_active", "statecode"),
    ),
    LocalEntityType.LOCATION: (
        ("title", "name"),
        ("address", "address1_line1"),
        ("city", "address1_city"),
        ("state", "address1_stateorprovince"),
        ("zip_code", "address1_postalcode"),
    ),
    LocalEntityType.ORGANIZATION: (
        ("title", "name"),
        ("description", "description"),
    ),
}


def apply_builtin_projections(
    entity_type: LocalEntityType,
    record: Record,
    values: Dict[str, Any],
) -> Dict[str, Any]:
    """Fill unmapped local fields from well-known remote fields, in place."""

    for local_field, remote_field in BUILTIN_INBOUND_PROJECTIONS.get(entity_type, ()):
        if local_field in values or remote_field not in record:
            continue
        if local_field == "is_active":
            state = record.value(remote_field).as_int()
            if state is not None:
                values[local_field] = state == 0
            continue
        values[local_field] = record.get(remote_field)
    return values


def sanitize_field_mappings(field_mappings: Iterable[FieldMapping]) -> List[FieldMapping]:
    """Return configured mappings whose remote field is a lookup or primary key."""

    return [mapping for mapping in field_mappings if is_stripped_field(mapping.remote_field)]


def payload_hash(payload: Mapping[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


# Default mapping catalog ----------------------------------------------------------


class MappingLoadError(RuntimeError):
    """Raised when the default mapping catalog cannot be loaded or validated."""


@dataclass(frozen=True)
class DefaultFieldMapping:
    local_field: str
    remote_field: str
    display_order: int = 0
    is_required: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "local_field": self.local_field,
            "remote_field": self.remote_field,
            "display_order": self.display_order,
            "is_required": self.is_required,
        }


@dataclass(frozen=True)
class DefaultMappingCatalog:
    version: int
    entries: Mapping[Tuple[str, str], Tuple[DefaultFieldMapping, ...]]
    checksum: str
    path: Path

    def for_entity(
        self, provider: ProviderType | str, entity_type: LocalEntityType | str
    ) -> Tuple[DefaultFieldMapping, ...]:
        provider_key = provider.value if isinstance(provider, ProviderType) else str(provider)
        entity_key = entity_type.value if isinstance(entity_type, LocalEntityType) else str(entity_type)
        entries = self.entries.get((provider_key, entity_key))
        if entries is None:
            entries = self.entries.get(("generic", entity_key), ())
        return entries


def load_default_mappings(path: str | Path) -> DefaultMappingCatalog:
    """Load and validate the YAML catalog of default field mappings."""

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Default mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        providers_payload = raw["providers"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not isinstance(providers_payload, Mapping):
        raise MappingLoadError("'providers' must be a mapping of provider name to entity mappings.")

    valid_types = {member.value for member in LocalEntityType}
    entries: Dict[Tuple[str, str], Tuple[DefaultFieldMapping, ...]] = {}
    for provider_name, entities in providers_payload.items():
        if not isinstance(entities, Mapping):
            raise MappingLoadError(f"Provider '{provider_name}' must map entity types to field lists.")
        for entity_type, fields_payload in entities.items():
            if entity_type not in valid_types:
                raise MappingLoadError(f"Unknown local entity type '{entity_type}' for provider '{provider_name}'.")
            fields: List[DefaultFieldMapping] = []
            seen_locals: set[str] = set()
            for order, entry in enumerate(fields_payload or ()):
                if not isinstance(entry, Mapping):
                    raise MappingLoadError(f"Field definition must be a mapping, got {entry!r}")
                local_field = str(entry.get("local") or "").strip()
                remote_field = str(entry.get("remote") or "").strip()
                if not local_field or not remote_field:
                    raise MappingLoadError(f"Field entry requires 'local' and 'remote': {entry!r}")
                if local_field in seen_locals:
                    raise MappingLoadError(
                        f"Duplicate local field '{local_field}' for {provider_name}/{entity_type}."
                    )
                seen_locals.add(local_field)
                fields.append(
                    DefaultFieldMapping(
                        local_field=local_field,
                        remote_field=remote_field,
                        display_order=order,
                        is_required=bool(entry.get("required", False)),
                    )
                )
            entries[(str(provider_name), str(entity_type))] = tuple(fields)

    checksum = hashlib.sha256(json.dumps(raw, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return DefaultMappingCatalog(version=version, entries=entries, checksum=checksum, path=path)


def get_default_mapping_catalog() -> DefaultMappingCatalog:
    """
    Load the configured catalog, cached per app and reloaded when the file changes.
    """

    config_path = current_app.config.get("CRM_SYNC_DEFAULT_MAPPINGS_PATH")
    if not config_path:
        raise MappingLoadError("CRM_SYNC_DEFAULT_MAPPINGS_PATH is not configured.")
    config_path = Path(config_path)
    if not config_path.is_absolute():
        config_path = (Path(current_app.root_path) / config_path).resolve()
    if not config_path.exists():
        raise MappingLoadError(f"Default mapping file not found at {config_path}")

    cache: dict[str, tuple[DefaultMappingCatalog, float]] = current_app.extensions.setdefault(
        "_crm_default_mapping_cache", {}
    )
    current_mtime = config_path.stat().st_mtime
    cached = cache.get(str(config_path))
    if cached and cached[1] == current_mtime:
        return cached[0]
    catalog = load_default_mappings(config_path)
    cache[str(config_path)] = (catalog, current_mtime)
    return catalog


def get_default_field_mappings(
    provider: ProviderType | str, entity_type: LocalEntityType | str
) -> Sequence[DefaultFieldMapping]:
    return get_default_mapping_catalog().for_entity(provider, entity_type)


__all__ = [
    "LOOKUP_FIELDS",
    "PRIMARY_KEY_FIELDS",
    "STRIPPED_FIELDS",
    "ENTITY_SET_OVERRIDES",
    "entity_set_name",
    "is_stripped_field",
    "parse_transformation_config",
    "apply_transformation",
    "to_wire",
    "outbound_field_mappings",
    "inbound_field_mappings",
    "map_outbound",
    "map_inbound",
    "BUILTIN_INBOUND_PROJECTIONS",
    "apply_builtin_projections",
    "sanitize_field_mappings",
    "payload_hash",
    "MappingLoadError",
    "DefaultFieldMapping",
    "DefaultMappingCatalog",
    "load_default_mappings",
    "get_default_mapping_catalog",
    "get_default_field_mappings",
]
