from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from crm_sync.models import db
from crm_sync.models.crm.schema import LocalEntityType, SyncAction, SyncDirection, SyncLog, SyncStatus
from crm_sync.sync import views
from crm_sync.sync.celery_app import CRM_SYNC_EXTENSION_KEY


def _log(connection, *, status=SyncStatus.SUCCESS, action=SyncAction.CREATE, synced_at=None, **values):
    entry = SyncLog(
        connection_id=connection.id,
        direction=values.pop("direction", SyncDirection.OUTBOUND),
        action=action,
        status=status,
        synced_at=synced_at or datetime.now(timezone.utc),
        **values,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


@pytest.fixture
def queued(crm_app, monkeypatch):
    """Enable the worker and capture every task sent to it."""
    sent = []

    def fake_send_task(name, kwargs=None, **options):
        sent.append((name, kwargs, options))
        return SimpleNamespace(id=f"task-{len(sent)}")

    monkeypatch.setitem(crm_app.extensions[CRM_SYNC_EXTENSION_KEY], "worker_enabled", True)
    monkeypatch.setattr(views, "get_celery_app", lambda app: SimpleNamespace(send_task=fake_send_task))
    return sent


class TestHealth:
    def test_service_health_and_json_404(self, client):
        health = client.get("/health")
        missing = client.get("/does-not-exist")

        assert health.get_json() == {"status": "ok", "crm_sync_enabled": True}
        assert missing.status_code == 404
        assert missing.get_json() == {"error": "Not found"}

    def test_health_lists_active_providers(self, client, crm_app):
        response = client.get("/crm/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "ok"
        assert body["enabled"] is True
        assert [provider["name"] for provider in body["providers"]] == ["dynamics365"]

    def test_worker_health_reports_disabled_worker(self, client, crm_app):
        response = client.get("/crm/worker_health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "disabled"
        assert body["worker_enabled"] is False
        assert body["queue"] == "crm_sync"

    def test_blueprint_is_hidden_when_sync_disabled(self, client, crm_app, monkeypatch):
        monkeypatch.setitem(crm_app.config, "CRM_SYNC_ENABLED", False)

        response = client.get("/crm/health")

        assert response.status_code == 404
        assert response.get_json() == {"error": "CRM sync is disabled."}


class TestSyncTriggers:
    def test_connection_sync_runs_inline(self, client, fake_provider, connection, mapping_factory, test_user):
        mapping_factory(connection, sync_direction=SyncDirection.OUTBOUND)

        response = client.post(f"/crm/connections/{connection.id}/sync")

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["stats"]["created"] == 1
        assert body["cancelled"] is False
        assert len(fake_provider.calls_to("create_record")) == 1

    def test_unknown_connection_reports_failure(self, client, fake_provider):
        response = client.post("/crm/connections/999/sync", json={"incremental": True})

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is False
        assert body["errors"]

    def test_invalid_flag_is_rejected(self, client, fake_provider, connection):
        response = client.post(f"/crm/connections/{connection.id}/sync?incremental=maybe")

        assert response.status_code == 400
        assert response.get_json() == {"error": "Expected a boolean for 'incremental', received 'maybe'."}

    def test_async_requires_worker(self, client, fake_provider, connection):
        response = client.post(f"/crm/connections/{connection.id}/sync", json={"async": True})

        assert response.status_code == 409
        assert response.get_json() == {"error": "CRM sync worker is disabled."}
        assert fake_provider.calls == []

    def test_async_connection_sync_is_queued(self, client, fake_provider, connection, queued):
        response = client.post(f"/crm/connections/{connection.id}/sync", json={"async": True, "incremental": "yes"})

        assert response.status_code == 202
        assert response.get_json() == {"status": "queued", "task_id": "task-1", "task": "crm_sync.sync_connection"}
        ((name, kwargs, options),) = queued
        assert kwargs == {"connection_id": connection.id, "incremental": True}
        assert options == {"queue": "crm_sync"}

    def test_mapping_sync_exposes_progress(self, client, fake_provider, connection, mapping_factory):
        mapping = mapping_factory(connection, sync_direction=SyncDirection.INBOUND)
        fake_provider.add_record("contact", {"emailaddress1": "progress@example.com", "firstname": "Pro"})

        response = client.post(f"/crm/mappings/{mapping.id}/sync")

        body = response.get_json()
        assert body["success"] is True
        assert body["stats"]["created"] == 1
        progress = client.get(f"/crm/progress/{body['sync_id']}")
        assert progress.status_code == 200
        snapshot = progress.get_json()
        assert snapshot["status"] == "Completed"
        assert snapshot["mapping_id"] == mapping.id
        assert snapshot["total_records"] == 1

    def test_async_mapping_sync_passes_full_flag(self, client, fake_provider, connection, mapping_factory, queued):
        mapping = mapping_factory(connection)

        response = client.post(f"/crm/mappings/{mapping.id}/sync?async=1&full=false")

        assert response.status_code == 202
        assert queued[0][:2] == ("crm_sync.sync_entity_mapping", {"mapping_id": mapping.id, "is_full_sync": False})

    def test_relationship_sync_for_mapping_without_relationships(
        self, client, fake_provider, connection, mapping_factory
    ):
        mapping = mapping_factory(connection)

        response = client.post(f"/crm/mappings/{mapping.id}/relationships/sync")

        assert response.status_code == 200
        assert response.get_json()["stats"]["processed"] == 0

    def test_outbound_requires_entity(self, client, fake_provider, connection):
        response = client.post(f"/crm/connections/{connection.id}/outbound", json={"entity_type": "user"})

        assert response.status_code == 400
        assert response.get_json() == {"error": "entity_type and entity_id are required."}

    def test_outbound_rejects_non_positive_id(self, client, fake_provider, connection):
        response = client.post(
            f"/crm/connections/{connection.id}/outbound", json={"entity_type": "user", "entity_id": 0}
        )

        assert response.status_code == 400
        assert response.get_json() == {"error": "'entity_id' must be a positive integer."}

    def test_outbound_pushes_single_record(self, client, fake_provider, connection, mapping_factory, test_user):
        mapping_factory(connection)

        response = client.post(
            f"/crm/connections/{connection.id}/outbound", json={"entity_type": "user", "entity_id": test_user.id}
        )

        assert response.status_code == 200
        assert response.get_json()["stats"]["created"] == 1
        ((_, (entity_name, fields), _),) = fake_provider.calls_to("create_record")
        assert entity_name == "contact"
        assert fields["emailaddress1"] == "test@example.com"

    def test_trigger_outbound_is_queued(self, client, fake_provider, queued):
        response = client.post("/crm/outbound", json={"entity_type": "user", "entity_id": 7, "async": True})

        assert response.status_code == 202
        assert queued[0][:2] == ("crm_sync.sync_outbound", {"entity_type": "user", "entity_id": 7})

    def test_trigger_outbound_unknown_type(self, client, fake_provider):
        response = client.post("/crm/outbound", json={"entity_type": "invoice", "entity_id": 1})

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is False
        assert "Unknown local entity type 'invoice'" in body["errors"][0]

    def test_inbound_requires_remote_reference(self, client, fake_provider, connection):
        response = client.post(f"/crm/connections/{connection.id}/inbound", json={"remote_entity_name": "contact"})

        assert response.status_code == 400
        assert response.get_json() == {"error": "remote_entity_name and remote_id are required."}

    def test_inbound_pulls_single_record(self, client, fake_provider, connection, mapping_factory):
        mapping_factory(connection, sync_direction=SyncDirection.INBOUND)
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "pulled@example.com"})

        response = client.post(
            f"/crm/connections/{connection.id}/inbound",
            json={"remote_entity_name": "contact", "remote_id": remote_id},
        )

        assert response.status_code == 200
        assert response.get_json()["stats"]["created"] == 1


class TestProgress:
    def test_unknown_sync_id(self, client, crm_app):
        response = client.get("/crm/progress/nope")

        assert response.status_code == 404
        assert response.get_json() == {"error": "Sync nope not found."}

    def test_active_passes_listed(self, client, crm_app):
        response = client.get("/crm/progress")

        assert response.status_code == 200
        assert response.get_json() == {"active": []}


class TestConnections:
    def test_list_connections(self, client, connection_factory):
        connection_factory(display_name="B connection")
        connection_factory(display_name="A connection", webhook_secret="s3cret")

        response = client.get("/crm/connections")

        assert response.status_code == 200
        connections = response.get_json()["connections"]
        assert [item["display_name"] for item in connections] == ["A connection", "B connection"]
        assert connections[0]["has_webhook_secret"] is True
        assert "client_secret" not in connections[0]
        assert "webhook_secret" not in connections[0]

    def test_detail_includes_mappings(self, client, connection, mapping_factory):
        mapping = mapping_factory(connection)

        response = client.get(f"/crm/connections/{connection.id}")

        assert response.status_code == 200
        body = response.get_json()
        assert body["provider_type"] == "dynamics365"
        assert [item["id"] for item in body["entity_mappings"]] == [mapping.id]
        assert body["entity_mappings"][0]["field_mappings"][0]["remote_field"] == "emailaddress1"

    def test_detail_not_found(self, client, crm_app):
        response = client.get("/crm/connections/404")

        assert response.status_code == 404
        assert response.get_json() == {"error": "CRM connection 404 not found."}

    def test_connection_test_uses_provider(self, client, fake_provider, connection):
        fake_provider.valid = False

        response = client.post(f"/crm/connections/{connection.id}/test")

        assert response.get_json() == {"connection_id": connection.id, "valid": False}


class TestAuditEndpoints:
    def test_logs_are_newest_first_and_filterable(self, client, connection):
        now = datetime.now(timezone.utc)
        older = _log(connection, synced_at=now - timedelta(hours=2))
        newer = _log(connection, status=SyncStatus.FAILED, error_message="boom", synced_at=now)

        response = client.get(f"/crm/connections/{connection.id}/logs")
        failed = client.get(f"/crm/connections/{connection.id}/logs?status=failed")

        assert [log["id"] for log in response.get_json()["logs"]] == [newer.id, older.id]
        assert failed.get_json()["count"] == 1
        assert failed.get_json()["logs"][0]["error_message"] == "boom"

    @pytest.mark.parametrize(
        "query,message",
        [
            ("status=exploded", "Unsupported status 'exploded'"),
            ("limit=abc", "Expected an integer for 'limit'"),
            ("since=yesterday", "Unable to parse 'since'"),
        ],
    )
    def test_logs_reject_bad_parameters(self, client, connection, query, message):
        response = client.get(f"/crm/connections/{connection.id}/logs?{query}")

        assert response.status_code == 400
        assert message in response.get_json()["error"]

    def test_clear_logs_older_than(self, client, connection):
        now = datetime.now(timezone.utc)
        _log(connection, synced_at=now - timedelta(days=10))
        kept = _log(connection, synced_at=now)

        response = client.delete(f"/crm/connections/{connection.id}/logs?older_than_days=5")

        assert response.status_code == 200
        body = response.get_json()
        assert body["deleted"] == 1
        assert body["older_than"] is not None
        db.session.expire_all()
        assert [entry.id for entry in db.session.query(SyncLog).all()] == [kept.id]

    def test_clear_all_logs(self, client, connection):
        _log(connection)
        _log(connection)

        response = client.delete(f"/crm/connections/{connection.id}/logs")

        assert response.get_json() == {"deleted": 2, "older_than": None}

    def test_stats_aggregate_log_rows(self, client, connection):
        _log(connection, action=SyncAction.CREATE)
        _log(connection, action=SyncAction.UPDATE, direction=SyncDirection.INBOUND)
        _log(connection, status=SyncStatus.FAILED, action=SyncAction.UPDATE)

        response = client.get(f"/crm/connections/{connection.id}/stats")

        assert response.status_code == 200
        body = response.get_json()
        assert body["total"] == 3
        assert body["statuses"] == {"success": 2, "failed": 1}
        assert body["directions"] == {"outbound": 2, "inbound": 1}
        assert body["created"] == 1
        assert body["updated"] == 1
        assert body["last_successful_sync_at"] is not None

    def test_external_ids_filter_by_type(self, client, connection, link, test_user, test_organization):
        link(connection, LocalEntityType.USER, test_user.id, "contact", "contact-1")
        link(connection, LocalEntityType.ORGANIZATION, test_organization.id, "account", "account-1")

        response = client.get(f"/crm/connections/{connection.id}/external_ids?entity_type=organization")

        body = response.get_json()
        assert body["count"] == 1
        assert body["external_ids"][0]["remote_entity_id"] == "account-1"

    def test_external_ids_reject_unknown_type(self, client, connection):
        response = client.get(f"/crm/connections/{connection.id}/external_ids?entity_type=invoice")

        assert response.status_code == 400

    def test_diagnostics_recommend_user_mapping(self, client, fake_provider, connection, test_user):
        response = client.get(f"/crm/connections/{connection.id}/diagnostics")

        assert response.status_code == 200
        body = response.get_json()
        assert body["connection_status"] == "Enabled"
        assert body["total_users"] == 1
        assert body["user_to_contact_mappings"] == 0
        assert body["recommendation"].startswith("No User -> Contact correlations found.")
