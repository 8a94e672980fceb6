from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from crm_sync.models import User
from crm_sync.models.crm.schema import SyncDirection
from crm_sync.sync import tasks


class TestFindDueConnections:
    def test_never_synced_connections_are_due(self, connection_factory):
        fresh = connection_factory(display_name="Fresh")

        assert tasks.find_due_connections() == [fresh]

    def test_interval_controls_due_state(self, connection_factory):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        due = connection_factory(display_name="Due", sync_interval_minutes=30, last_sync_at=now - timedelta(minutes=45))
        connection_factory(display_name="Recent", sync_interval_minutes=30, last_sync_at=now - timedelta(minutes=5))
        connection_factory(display_name="Disabled", is_enabled=False)

        assert tasks.find_due_connections(now=now) == [due]


class TestScheduleDueConnections:
    def test_fans_out_one_task_per_due_connection(self, crm_app, connection_factory, monkeypatch):
        never = connection_factory(display_name="Never synced")
        stale = connection_factory(
            display_name="Stale",
            sync_interval_minutes=5,
            last_sync_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        queued = []

        def fake_apply_async(kwargs=None, **options):
            queued.append(kwargs)
            return SimpleNamespace(id=f"task-{kwargs['connection_id']}")

        monkeypatch.setattr(tasks, "sync_connection", SimpleNamespace(apply_async=fake_apply_async))

        payload = tasks.schedule_due_connections.run()

        assert queued == [
            {"connection_id": never.id, "incremental": False},
            {"connection_id": stale.id, "incremental": True},
        ]
        assert [item["task_id"] for item in payload["queued"]] == [f"task-{never.id}", f"task-{stale.id}"]
        assert "timestamp" in payload


class TestSyncTasks:
    def test_sync_connection_returns_result_dict(self, fake_provider, connection, mapping_factory, test_user):
        mapping_factory(connection, sync_direction=SyncDirection.OUTBOUND)

        payload = tasks.sync_connection.run(connection_id=connection.id, incremental=False)

        assert payload["success"] is True
        assert payload["stats"]["created"] == 1

    def test_failed_task_raises_alert(self, fake_provider, monkeypatch):
        alerts = []
        monkeypatch.setattr(tasks, "alert_sync_failure", lambda summary, context: alerts.append((summary, context)))

        payload = tasks.sync_entity_mapping.run(mapping_id=404)

        assert payload["success"] is False
        ((summary, context),) = alerts
        assert summary.startswith("CRM sync task sync_entity_mapping finished with errors")
        assert context["endpoint"] == "celery:sync_entity_mapping"
        assert context["crm_mapping_id"] == 404

    def test_sync_inbound_task(self, fake_provider, connection, mapping_factory):
        mapping_factory(connection, sync_direction=SyncDirection.INBOUND)
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "task@example.com"})

        payload = tasks.sync_inbound.run(connection_id=connection.id, remote_entity_name="contact", remote_id=remote_id)

        assert payload["stats"]["created"] == 1
        assert User.find_by_email("task@example.com") is not None

    def test_sync_outbound_task_fans_out(self, fake_provider, connection, mapping_factory, test_user):
        mapping_factory(connection)

        payload = tasks.sync_outbound.run(entity_type="user", entity_id=test_user.id)

        assert payload["stats"]["created"] == 1
        assert len(fake_provider.calls_to("create_record")) == 1

    def test_process_webhook_task(self, fake_provider, connection, mapping_factory):
        mapping_factory(connection, sync_direction=SyncDirection.INBOUND)
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "queued@example.com"})

        payload = tasks.process_webhook.run(
            connection_id=connection.id, event_type="update", entity_name="contact", record_id=remote_id
        )

        assert payload["success"] is True
        assert User.find_by_email("queued@example.com") is not None

    def test_relationship_task_for_missing_mapping(self, fake_provider, monkeypatch):
        monkeypatch.setattr(tasks, "alert_sync_failure", lambda summary, context: None)

        payload = tasks.sync_relationships.run(mapping_id=9)

        assert payload["success"] is False
        assert payload["errors"]
