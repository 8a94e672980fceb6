from __future__ import annotations

import json
import re
import uuid
from collections import OrderedDict, defaultdict
from datetime import datetime, timezone

import pytest

from crm_sync.models import db
from crm_sync.models.crm.schema import (
    CrmConnection,
    EntityMapping,
    FieldMapping,
    LocalEntityType,
    ProviderType,
    RelationshipMapping,
    SyncDirection,
)
from crm_sync.sync import init_crm_sync
from crm_sync.sync.celery_app import CRM_SYNC_EXTENSION_KEY
from crm_sync.sync.correlation import CorrelationStore
from crm_sync.sync.errors import TransportError
from crm_sync.sync.providers.base import CrmProvider, EntitySchema, FieldSchema, LookupFieldInfo, WebhookEvent
from crm_sync.sync.values import Record

_EQUALITY_FILTER = re.compile(r"^(\w+) eq '(.*)'$", re.IGNORECASE)

DEFAULT_FIELDS = {
    LocalEntityType.USER: (("email", "emailaddress1"), ("first_name", "firstname"), ("last_name", "lastname")),
    LocalEntityType.ORGANIZATION: (("title", "name"), ("description", "description")),
    LocalEntityType.LOCATION: (("title", "name"), ("city", "address1_city")),
}

DEFAULT_REMOTE_ENTITIES = {
    LocalEntityType.USER: "contact",
    LocalEntityType.ORGANIZATION: "account",
    LocalEntityType.LOCATION: "account",
}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FakeCrmProvider(CrmProvider):
    """
    In-memory CRM used by the engine tests.

    Every call is recorded in ``calls``; ``fail_on[method]`` makes that method
    raise after the call is recorded, and ``on_write`` runs after each create
    or update so tests can act in the middle of a pass.
    """

    provider_type = ProviderType.DYNAMICS365
    natural_key_fields = {
        LocalEntityType.USER: "emailaddress1",
        LocalEntityType.ORGANIZATION: "name",
        LocalEntityType.LOCATION: "name",
    }

    def __init__(self):
        self.records = defaultdict(OrderedDict)
        self.modified = {}
        self.calls = []
        self.fail_on = {}
        self.valid = True
        self.on_write = None
        self.lookup_fields = defaultdict(list)
        self._sequence = 0

    # Test helpers -----------------------------------------------------------------

    def next_id(self) -> str:
        self._sequence += 1
        return str(uuid.UUID(int=self._sequence))

    def add_record(self, entity_name, values, record_id=None, modified_on=None) -> str:
        record_id = record_id or self.next_id()
        self.records[entity_name][record_id] = dict(values)
        self.modified[(entity_name, record_id)] = _aware(modified_on or datetime.now(timezone.utc))
        return record_id

    def register_lookup(self, entity_name, logical_name, *targets, navigation=None, attribute_type="Lookup"):
        info = LookupFieldInfo(
            logical_name=logical_name,
            display_name=logical_name,
            possible_targets=tuple(targets),
            navigation_properties=dict(navigation or {}),
            attribute_type=attribute_type,
        )
        self.lookup_fields[entity_name].append(info)
        return info

    def calls_to(self, name):
        return [call for call in self.calls if call[0] == name]

    def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def _record(self, entity_name, record_id) -> Record:
        return Record.from_wire(
            entity_name,
            record_id,
            self.records[entity_name][record_id],
            modified_on=self.modified.get((entity_name, record_id)),
        )

    def _written(self, method, entity_name, record_id):
        if self.on_write is not None:
            self.on_write(method, entity_name, record_id)

    # Provider contract ------------------------------------------------------------

    def validate_connection(self, connection):
        self._call("validate_connection", connection.id)
        return self.valid

    def discover_entities(self, connection):
        self._call("discover_entities", connection.id)
        return [EntitySchema("contact", "Contact", plural_name="Contacts"), EntitySchema("account", "Account")]

    def discover_fields(self, connection, entity_name):
        self._call("discover_fields", connection.id, entity_name)
        return [
            FieldSchema("emailaddress1", "Email", is_required=True),
            FieldSchema("firstname", "First Name"),
        ]

    def get_record(self, connection, entity_name, record_id):
        self._call("get_record", entity_name, record_id)
        if record_id not in self.records[entity_name]:
            return None
        return self._record(entity_name, record_id)

    def list_records(self, connection, entity_name, *, modified_since=None, filter_expression=None, top=None):
        self._call(
            "list_records",
            entity_name,
            modified_since=modified_since,
            filter_expression=filter_expression,
            top=top,
        )
        matches = []
        equality = _EQUALITY_FILTER.match(filter_expression or "")
        for record_id, values in self.records[entity_name].items():
            modified_on = self.modified[(entity_name, record_id)]
            if modified_since is not None and modified_on < _aware(modified_since):
                continue
            if equality is not None:
                field_name, expected = equality.group(1), equality.group(2).replace("''", "'")
                actual = values.get(field_name)
                if actual is None or str(actual).lower() != expected.lower():
                    continue
            matches.append(record_id)
        matches.sort(key=lambda record_id: self.modified[(entity_name, record_id)], reverse=True)
        if top is not None:
            matches = matches[:top]
        return [self._record(entity_name, record_id) for record_id in matches]

    def create_record(self, connection, entity_name, fields):
        self._call("create_record", entity_name, dict(fields))
        record_id = self.add_record(entity_name, fields)
        self._written("create_record", entity_name, record_id)
        return record_id

    def update_record(self, connection, entity_name, record_id, fields):
        self._call("update_record", entity_name, record_id, dict(fields))
        if record_id not in self.records[entity_name]:
            raise TransportError("HTTP 404: record does not exist", status_code=404)
        self.records[entity_name][record_id].update(fields)
        self.modified[(entity_name, record_id)] = datetime.now(timezone.utc)
        self._written("update_record", entity_name, record_id)

    def delete_record(self, connection, entity_name, record_id):
        self._call("delete_record", entity_name, record_id)
        self.records[entity_name].pop(record_id, None)
        self.modified.pop((entity_name, record_id), None)

    def discover_lookup_fields(self, connection, entity_name, target_entity_name=None):
        self._call("discover_lookup_fields", entity_name, target_entity_name)
        return [
            info
            for info in self.lookup_fields[entity_name]
            if target_entity_name is None or info.targets(target_entity_name)
        ]

    def parse_webhook(self, payload, headers):
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("entity") or not data.get("id"):
            return None
        return WebhookEvent(
            event_type=str(data.get("event") or "update"),
            entity_name=str(data["entity"]),
            record_id=str(data["id"]),
            raw_payload=text,
        )


class RecordingReporter:
    """Progress reporter that keeps every call for assertions."""

    def __init__(self):
        self.started = []
        self.progress = []
        self.successes = 0
        self.failures = 0
        self.completed = []

    def start_sync(self, mapping_id, label, total, *, connection_id=None):
        self.started.append({"mapping_id": mapping_id, "label": label, "total": total, "connection_id": connection_id})
        return "sync-1"

    def report_progress(self, sync_id, processed, message=None):
        self.progress.append(processed)

    def report_success(self, sync_id):
        self.successes += 1

    def report_failure(self, sync_id, error_message=None):
        self.failures += 1

    def complete_sync(self, sync_id, success, message=None):
        self.completed.append((success, message))


@pytest.fixture
def crm_app(app):
    app.config.update(
        {
            "CRM_SYNC_ENABLED": True,
            "CRM_SYNC_PROVIDERS": ("dynamics365",),
            "CRM_SYNC_WORKER_ENABLED": False,
            "CRM_SYNC_WEBHOOK_ASYNC": False,
            "CRM_SYNC_PROGRESS_INTERVAL": 10,
        }
    )
    init_crm_sync(app)
    state = app.extensions[CRM_SYNC_EXTENSION_KEY]
    state["worker_enabled"] = False
    state["webhook_sessions"].clear()
    yield app


@pytest.fixture
def fake_provider(crm_app):
    provider = FakeCrmProvider()
    state = crm_app.extensions[CRM_SYNC_EXTENSION_KEY]
    previous = state.get("provider_builders")
    state["provider_builders"] = {ProviderType.DYNAMICS365: lambda connection: provider}
    yield provider
    state["provider_builders"] = previous


@pytest.fixture
def recording_reporter():
    return RecordingReporter()


@pytest.fixture
def connection_factory(crm_app):
    def _factory(**overrides) -> CrmConnection:
        values = {
            "provider_type": ProviderType.DYNAMICS365,
            "display_name": "Dynamics Sandbox",
            "environment_url": "https://sandbox.crm.dynamics.com",
            "client_id": "client-id",
            "client_secret": "client-secret",
            "tenant_id": "tenant-id",
        }
        values.update(overrides)
        connection = CrmConnection(**values)
        db.session.add(connection)
        db.session.commit()
        return connection

    return _factory


@pytest.fixture
def connection(connection_factory):
    return connection_factory()


@pytest.fixture
def mapping_factory(crm_app):
    def _factory(
        connection,
        *,
        local_entity_type: LocalEntityType = LocalEntityType.USER,
        remote_entity_name: str | None = None,
        sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        fields=None,
        filter_expression: str | None = None,
        is_enabled: bool = True,
    ) -> EntityMapping:
        mapping = EntityMapping(
            connection_id=connection.id,
            local_entity_type=local_entity_type,
            remote_entity_name=remote_entity_name or DEFAULT_REMOTE_ENTITIES[local_entity_type],
            sync_direction=sync_direction,
            filter_expression=filter_expression,
            is_enabled=is_enabled,
        )
        db.session.add(mapping)
        db.session.flush()
        for order, (local_field, remote_field) in enumerate(fields or DEFAULT_FIELDS[local_entity_type]):
            db.session.add(
                FieldMapping(
                    entity_mapping_id=mapping.id,
                    local_field=local_field,
                    remote_field=remote_field,
                    display_order=order,
                )
            )
        db.session.commit()
        return mapping

    return _factory


@pytest.fixture
def relationship_factory(crm_app):
    def _factory(
        mapping,
        *,
        local_field: str = "organization_id",
        related_local_type: LocalEntityType = LocalEntityType.ORGANIZATION,
        remote_related_entity: str = "account",
        remote_lookup_field: str | None = "parentcustomerid",
        sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        sync_null_values: bool = True,
    ) -> RelationshipMapping:
        relationship = RelationshipMapping(
            entity_mapping_id=mapping.id,
            local_field=local_field,
            related_local_type=related_local_type,
            remote_related_entity=remote_related_entity,
            remote_lookup_field=remote_lookup_field,
            sync_direction=sync_direction,
            sync_null_values=sync_null_values,
        )
        db.session.add(relationship)
        db.session.commit()
        return relationship

    return _factory


@pytest.fixture
def link(crm_app):
    """Create a correlation entry directly."""

    def _link(connection, local_entity_type, local_entity_id, remote_entity_name, remote_entity_id, **attributes):
        entry = CorrelationStore(db.session).upsert(
            connection.id,
            local_entity_type,
            local_entity_id,
            remote_entity_name,
            remote_entity_id,
            direction=SyncDirection.OUTBOUND,
        )
        for key, value in attributes.items():
            setattr(entry, key, value)
        db.session.commit()
        return entry

    return _link
