import hashlib
import hmac
import json
from types import SimpleNamespace

import pytest

from crm_sync.models import User
from crm_sync.models.crm.schema import LocalEntityType, SyncDirection
from crm_sync.sync import webhooks
from crm_sync.sync.webhooks import WebhookSessionStore

pytestmark = pytest.mark.webhooks


def _sign(secret, body):
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def hook_connection(connection_factory, mapping_factory):
    connection = connection_factory(webhook_secret="hook-secret")
    mapping_factory(connection, sync_direction=SyncDirection.INBOUND)
    return connection


def _post(client, connection_id, payload, *, secret="hook-secret", headers=None, query=""):
    body = json.dumps(payload).encode("utf-8")
    request_headers = {"Content-Type": "application/json"}
    if secret:
        request_headers["X-Crm-Signature"] = _sign(secret, body)
    request_headers.update(headers or {})
    return client.post(f"/crm/webhooks/{connection_id}{query}", data=body, headers=request_headers)


class TestWebhookReceiver:
    def test_signed_update_is_processed_inline(self, client, fake_provider, hook_connection):
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "hooked@example.com", "firstname": "Hook"})

        response = _post(client, hook_connection.id, {"event": "update", "entity": "contact", "id": remote_id})

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "processed"
        assert body["result"]["stats"]["created"] == 1
        assert User.find_by_email("hooked@example.com") is not None

    def test_unknown_connection(self, client, fake_provider):
        response = _post(client, 9999, {"event": "update", "entity": "contact", "id": "x"})

        assert response.status_code == 404
        assert response.get_json()["status"] == "not_found"

    def test_bad_signature_is_rejected(self, client, fake_provider, hook_connection):
        response = _post(
            client, hook_connection.id, {"event": "update", "entity": "contact", "id": "x"}, secret="wrong-secret"
        )

        assert response.status_code == 401
        assert response.get_json()["status"] == "unauthorized"
        assert fake_provider.calls_to("get_record") == []

    def test_missing_signature_is_rejected(self, client, fake_provider, hook_connection):
        response = _post(client, hook_connection.id, {"event": "update", "entity": "contact", "id": "x"}, secret=None)

        assert response.status_code == 401

    def test_provider_mismatch(self, client, fake_provider, hook_connection):
        response = _post(
            client,
            hook_connection.id,
            {"event": "update", "entity": "contact", "id": "x"},
            query="?provider=salesforce",
        )

        assert response.status_code == 400
        assert response.get_json()["status"] == "provider_mismatch"

    def test_provider_header_matching_connection_is_accepted(self, client, fake_provider, hook_connection):
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "header@example.com"})

        response = _post(
            client,
            hook_connection.id,
            {"event": "update", "entity": "contact", "id": remote_id},
            headers={"X-Crm-Provider": "Dynamics365"},
        )

        assert response.status_code == 200

    def test_disabled_connection_is_ignored(self, client, fake_provider, connection_factory):
        connection = connection_factory(is_enabled=False)

        response = _post(client, connection.id, {"event": "update", "entity": "contact", "id": "x"}, secret=None)

        assert response.status_code == 200
        assert response.get_json()["status"] == "ignored"

    def test_unparseable_payload(self, client, fake_provider, hook_connection):
        response = _post(client, hook_connection.id, {"unexpected": True})

        assert response.status_code == 400
        assert response.get_json()["status"] == "invalid"

    def test_duplicate_delivery_is_ignored(self, client, fake_provider, hook_connection):
        remote_id = fake_provider.add_record("contact", {"emailaddress1": "once@example.com"})
        payload = {"event": "update", "entity": "contact", "id": remote_id}
        headers = {"X-Crm-Delivery-Id": "delivery-1"}

        first = _post(client, hook_connection.id, payload, headers=headers)
        second = _post(client, hook_connection.id, payload, headers=headers)

        assert first.get_json()["status"] == "processed"
        assert second.status_code == 200
        assert second.get_json() == {"status": "duplicate", "delivery_id": "delivery-1"}
        assert len(fake_provider.calls_to("get_record")) == 1

    def test_delete_event_removes_link(self, client, fake_provider, hook_connection, test_user, link):
        link(hook_connection, LocalEntityType.USER, test_user.id, "contact", "contact-9")

        response = _post(client, hook_connection.id, {"event": "delete", "entity": "contact", "id": "contact-9"})

        body = response.get_json()
        assert body["status"] == "processed"
        assert body["result"]["message"] == "Removed link for deleted CRM record"

    def test_async_delivery_is_queued(self, client, fake_provider, hook_connection, monkeypatch):
        sent = []

        def fake_send_task(name, kwargs=None, **options):
            sent.append((name, kwargs))
            return SimpleNamespace(id="task-123")

        monkeypatch.setitem(client.application.config, "CRM_SYNC_WEBHOOK_ASYNC", True)
        monkeypatch.setitem(client.application.config, "CRM_SYNC_WORKER_ENABLED", True)
        monkeypatch.setattr(webhooks, "get_celery_app", lambda app: SimpleNamespace(send_task=fake_send_task))

        response = _post(client, hook_connection.id, {"event": "update", "entity": "contact", "id": "abc"})

        assert response.status_code == 202
        assert response.get_json()["task_id"] == "task-123"
        ((name, kwargs),) = sent
        assert name == "crm_sync.process_webhook"
        assert kwargs["connection_id"] == hook_connection.id
        assert kwargs["record_id"] == "abc"
        assert fake_provider.calls_to("get_record") == []


class TestWebhookSessionStore:
    def test_entries_expire_after_ttl(self):
        now = [0.0]
        store = WebhookSessionStore(ttl_seconds=10, clock=lambda: now[0])

        assert store.register("a") is True
        assert store.register("a") is False
        now[0] = 11.0
        assert "a" not in store
        assert store.register("a") is True

    def test_oldest_entries_are_evicted(self):
        store = WebhookSessionStore(ttl_seconds=600, max_entries=2, clock=lambda: 0.0)

        for delivery in ("a", "b", "c"):
            store.register(delivery)

        assert len(store) == 2
        assert "a" not in store
        assert "c" in store
