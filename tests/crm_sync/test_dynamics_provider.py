import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from crm_sync.models import User, db
from crm_sync.models.crm.schema import CrmConnection, ProviderType, SyncDirection
from crm_sync.sync.celery_app import CRM_SYNC_EXTENSION_KEY
from crm_sync.sync.errors import AuthError, TransportError
from crm_sync.sync.orchestrator import SyncService
from crm_sync.sync.providers.dynamics import DynamicsProvider
from crm_sync.sync.values import Record

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
API = "https://sandbox.crm.dynamics.com/api/data/v9.2"


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None, text=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        if text is not None:
            self.text = text
        else:
            self.text = json.dumps(body) if body is not None else ""

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeSession:
    def __init__(self):
        self.token_responses = []
        self.responses = []
        self.posts = []
        self.requests = []

    def post(self, url, data=None, timeout=None):
        self.posts.append({"url": url, "data": data, "timeout": timeout})
        if self.token_responses:
            return self.token_responses.pop(0)
        return FakeResponse(body={"access_token": f"token-{len(self.posts)}", "expires_in": 3600})

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.requests.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers, "timeout": timeout}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def provider(session):
    return DynamicsProvider(session=session, timeout=5, clock=lambda: NOW)


@pytest.fixture
def dynamics_connection():
    return CrmConnection(
        provider_type=ProviderType.DYNAMICS365,
        display_name="Dynamics Sandbox",
        environment_url="https://sandbox.crm.dynamics.com/",
        client_id="client-id",
        client_secret="client-secret",
        tenant_id="tenant-id",
    )


class TestTokens:
    def test_acquires_client_credentials_token(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(body={"UserId": "abc"}))

        assert provider.validate_connection(dynamics_connection) is True

        (post,) = session.posts
        assert post["url"] == "https://login.microsoftonline.com/tenant-id/oauth2/v2.0/token"
        assert post["data"]["grant_type"] == "client_credentials"
        assert post["data"]["scope"] == "https://sandbox.crm.dynamics.com/.default"
        assert post["timeout"] == 5
        (request,) = session.requests
        assert request["url"] == f"{API}/WhoAmI"
        assert request["headers"]["Authorization"] == "Bearer token-1"
        assert dynamics_connection.access_token == "token-1"
        assert dynamics_connection.token_expiry == NOW + timedelta(seconds=3600)

    def test_valid_token_is_reused(self, provider, session, dynamics_connection):
        dynamics_connection.access_token = "cached"
        dynamics_connection.token_expiry = NOW + timedelta(hours=1)
        session.responses.append(FakeResponse(body={}))

        provider.validate_connection(dynamics_connection)

        assert session.posts == []
        assert session.requests[0]["headers"]["Authorization"] == "Bearer cached"

    def test_token_inside_refresh_buffer_is_renewed(self, provider, session, dynamics_connection):
        dynamics_connection.access_token = "stale"
        dynamics_connection.token_expiry = NOW + timedelta(seconds=60)

        assert provider.ensure_token(dynamics_connection) == "token-1"

    def test_refresh_token_grant_is_used_when_available(self, provider, session, dynamics_connection):
        dynamics_connection.access_token = "stale"
        dynamics_connection.refresh_token = "refresh-me"
        session.token_responses.append(
            FakeResponse(body={"access_token": "fresh", "refresh_token": "rotated", "expires_in": "120"})
        )

        provider.ensure_token(dynamics_connection)

        assert session.posts[0]["data"]["grant_type"] == "refresh_token"
        assert session.posts[0]["data"]["scope"].endswith("/.default offline_access")
        assert dynamics_connection.refresh_token == "rotated"
        assert dynamics_connection.token_expiry == NOW + timedelta(seconds=120)

    def test_token_endpoint_error(self, provider, session, dynamics_connection):
        session.token_responses.append(
            FakeResponse(status_code=401, body={"error": "invalid_client", "error_description": "bad secret"})
        )

        with pytest.raises(AuthError) as excinfo:
            provider.ensure_token(dynamics_connection)

        assert "invalid_client: bad secret" in str(excinfo.value)
        assert excinfo.value.status_code == 401

    def test_missing_credentials(self, provider, dynamics_connection):
        dynamics_connection.client_secret = None

        with pytest.raises(AuthError, match="ClientSecret: False"):
            provider.ensure_token(dynamics_connection)

    def test_resource_url_drops_api_segment(self, provider, dynamics_connection):
        dynamics_connection.environment_url = "https://org.api.crm.dynamics.com"

        assert provider.resource_url(dynamics_connection) == "https://org.crm.dynamics.com"


class TestRequests:
    def test_unauthorized_response_refreshes_once(self, provider, session, dynamics_connection):
        session.responses.extend([FakeResponse(status_code=401, body={}), FakeResponse(body={"UserId": "abc"})])

        assert provider.validate_connection(dynamics_connection) is True
        assert len(session.posts) == 2
        assert session.requests[1]["headers"]["Authorization"] == "Bearer token-2"

    def test_repeated_unauthorized_raises_auth_error(self, provider, session, dynamics_connection):
        session.responses.extend([FakeResponse(status_code=403, body={}), FakeResponse(status_code=403, body={})])

        with pytest.raises(AuthError):
            provider.update_record(dynamics_connection, "contact", "abc", {"firstname": "Ada"})

    def test_error_status_raises_transport_error(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(status_code=500, body={"error": {"message": "Something broke"}}))

        with pytest.raises(TransportError) as excinfo:
            provider.update_record(dynamics_connection, "contact", "abc", {"firstname": "Ada"})

        assert str(excinfo.value) == "HTTP 500: Something broke (status=500)"

    def test_network_failure_raises_transport_error(self, provider, session, dynamics_connection):
        session.responses.append(requests.ConnectionError("connection reset"))

        with pytest.raises(TransportError, match="connection reset"):
            provider.delete_record(dynamics_connection, "contact", "abc")

    def test_validate_connection_never_raises(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(status_code=500, text="boom"))

        assert provider.validate_connection(dynamics_connection) is False


class TestRecords:
    def test_get_record_not_found_returns_none(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(status_code=404, body={}))

        assert provider.get_record(dynamics_connection, "contact", "abc") is None
        assert session.requests[0]["url"] == f"{API}/contacts(abc)"

    def test_parse_record_keeps_lookup_values(self, provider):
        record = provider.parse_record(
            "contact",
            {
                "@odata.etag": 'W/"1"',
                "contactid": "00000000-0000-0000-0000-000000000001",
                "firstname": "Ada",
                "_parentcustomerid_value": "00000000-0000-0000-0000-0000000000AA",
                "_parentcustomerid_value@OData.Community.Display.V1.FormattedValue": "Contoso",
                "_private": "hidden",
                "modifiedon": "2024-04-30T08:00:00Z",
            },
        )

        assert record.id == "00000000-0000-0000-0000-000000000001"
        assert "_private" not in record
        assert "@odata.etag" not in record
        assert provider.read_lookup_value(record, "parentcustomerid") == "00000000-0000-0000-0000-0000000000aa"
        assert provider.has_lookup_value(record, "parentcustomerid")
        assert record.modified_on == datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)

    def test_build_list_params(self, provider):
        params = provider.build_list_params(
            modified_since=datetime(2024, 4, 1, tzinfo=timezone.utc), filter_expression="statecode eq 0", top=10
        )

        assert params == {
            "$filter": "modifiedon ge 2024-04-01T00:00:00Z and (statecode eq 0)",
            "$top": "10",
            "$orderby": "modifiedon desc",
        }
        assert provider.build_list_params() == {"$orderby": "modifiedon desc"}

    def test_list_records_follows_next_link(self, provider, session, dynamics_connection):
        next_link = f"{API}/contacts?$skiptoken=2"
        session.responses.extend(
            [
                FakeResponse(body={"value": [{"contactid": "1"}], "@odata.nextLink": next_link}),
                FakeResponse(body={"value": [{"contactid": "2"}]}),
            ]
        )

        records = provider.list_records(dynamics_connection, "contact")

        assert [record.id for record in records] == ["1", "2"]
        assert session.requests[0]["params"] == {"$orderby": "modifiedon desc"}
        assert session.requests[1]["url"] == next_link
        assert session.requests[1]["params"] is None

    def test_list_records_stops_at_top(self, provider, session, dynamics_connection):
        session.responses.append(
            FakeResponse(body={"value": [{"contactid": "1"}, {"contactid": "2"}], "@odata.nextLink": "more"})
        )

        records = provider.list_records(dynamics_connection, "contact", top=1)

        assert [record.id for record in records] == ["1"]
        assert len(session.requests) == 1

    def test_create_record_reads_id_from_body(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(status_code=201, body={"contactid": "new-id"}))

        record_id = provider.create_record(
            dynamics_connection, "contact", {"contactid": "ignored", "firstname": "Ada"}
        )

        assert record_id == "new-id"
        request = session.requests[0]
        assert request["method"] == "POST"
        assert request["json"] == {"firstname": "Ada"}
        assert request["headers"]["Prefer"] == "return=representation"

    def test_create_record_reads_id_from_header(self, provider, session, dynamics_connection):
        session.responses.append(
            FakeResponse(
                status_code=204,
                headers={"OData-EntityId": f"{API}/contacts(6f0c1a1e-0000-0000-0000-000000000001)"},
            )
        )

        assert provider.create_record(dynamics_connection, "contact", {}) == "6f0c1a1e-0000-0000-0000-000000000001"

    def test_create_record_without_id_fails(self, provider, session, dynamics_connection):
        session.responses.append(FakeResponse(status_code=204))

        with pytest.raises(TransportError, match="did not return an id"):
            provider.create_record(dynamics_connection, "contact", {})

    def test_unknown_entity_collection_is_looked_up_once(self, provider, session, dynamics_connection):
        session.responses.extend(
            [
                FakeResponse(body={"EntitySetName": "new_projectses"}),
                FakeResponse(body={}),
                FakeResponse(body={}),
            ]
        )

        provider.update_record(dynamics_connection, "new_project", "1", {"new_name": "A"})
        provider.update_record(dynamics_connection, "new_project", "2", {"new_name": "B"})

        assert session.requests[0]["url"] == f"{API}/EntityDefinitions(LogicalName='new_project')"
        assert session.requests[1]["url"] == f"{API}/new_projectses(1)"
        assert session.requests[2]["url"] == f"{API}/new_projectses(2)"


class TestLookups:
    def test_discover_lookup_fields_with_navigation(self, provider, session, dynamics_connection):
        session.responses.extend(
            [
                FakeResponse(
                    body={
                        "value": [
                            {
                                "LogicalName": "parentcustomerid",
                                "DisplayName": {"UserLocalizedLabel": {"Label": "Company Name"}},
                                "Targets": ["account", "contact"],
                                "AttributeType": "Customer",
                            },
                            {"LogicalName": "owninguser", "Targets": ["systemuser"], "AttributeType": "Lookup"},
                        ]
                    }
                ),
                FakeResponse(
                    body={
                        "value": [
                            {
                                "ReferencingAttribute": "parentcustomerid",
                                "ReferencedEntity": "account",
                                "ReferencingEntityNavigationPropertyName": "parentcustomerid_account",
                            }
                        ]
                    }
                ),
            ]
        )

        fields = provider.discover_lookup_fields(dynamics_connection, "contact", "account")

        assert len(session.requests) == 2
        (info,) = fields
        assert info.display_name == "Company Name"
        assert info.binding_name("account") == "parentcustomerid_account"

    def test_format_lookup_binding(self, provider):
        assert provider.format_lookup_binding("parentcustomerid_account", "account", "abc") == (
            "parentcustomerid_account@odata.bind",
            "/accounts(abc)",
        )
        assert provider.format_lookup_binding("parentcustomerid", "account", None) == (
            "parentcustomerid@odata.bind",
            None,
        )

    def test_read_lookup_value_falls_back_to_plain_field(self, provider):
        record = Record.from_wire("contact", "1", {"parentcustomerid": "plain"})

        assert provider.read_lookup_value(record, "parentcustomerid") == "plain"


class TestWebhookParsing:
    def test_parses_plugin_payload(self, provider):
        payload = json.dumps(
            {
                "MessageName": "Update",
                "PrimaryEntityName": "contact",
                "PrimaryEntityId": "abc",
                "CorrelationId": "corr-1",
                "InputParameters": [
                    {
                        "key": "Target",
                        "value": {"Attributes": [{"key": "firstname", "value": "Ada"}]},
                    }
                ],
            }
        )

        event = provider.parse_webhook(payload.encode("utf-8"), {})

        assert event.event_type == "update"
        assert event.is_upsert
        assert event.entity_name == "contact"
        assert event.record_id == "abc"
        assert event.delivery_id == "corr-1"
        assert event.record.get("firstname") == "Ada"

    def test_delivery_header_wins(self, provider):
        payload = json.dumps({"MessageName": "Delete", "PrimaryEntityName": "contact", "PrimaryEntityId": "abc"})

        event = provider.parse_webhook(payload, {"X-Crm-Delivery-Id": "delivery-9"})

        assert event.is_delete
        assert event.delivery_id == "delivery-9"

    def test_invalid_json_returns_none(self, provider):
        assert provider.parse_webhook("not json", {}) is None

    def test_signature_validation(self, provider):
        body = b'{"a": 1}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()

        assert provider.validate_webhook_signature(body, f"sha256={signature}", "secret")
        assert not provider.validate_webhook_signature(body, "sha256=deadbeef", "secret")
        assert not provider.validate_webhook_signature(body, None, "secret")
        assert provider.validate_webhook_signature(body, None, None)


class TestTokensDuringSync:
    def test_failed_records_keep_the_acquired_token(
        self, crm_app, provider, session, connection, mapping_factory, test_user, monkeypatch
    ):
        state = crm_app.extensions[CRM_SYNC_EXTENSION_KEY]
        monkeypatch.setitem(state, "provider_builders", {ProviderType.DYNAMICS365: lambda _connection: provider})
        db.session.add(User(email="second@example.com", first_name="Second"))
        db.session.commit()
        mapping_factory(connection, sync_direction=SyncDirection.OUTBOUND)
        session.responses.extend(
            FakeResponse(status_code=500, body={"error": {"message": "server busy"}}) for _ in range(2)
        )

        result = SyncService().sync_all(connection.id)

        assert result.stats.failed == 2
        assert len(session.posts) == 1
        assert [request["headers"]["Authorization"] for request in session.requests] == ["Bearer token-1"] * 2
        db.session.expire_all()
        stored = db.session.get(CrmConnection, connection.id)
        assert stored.access_token == "token-1"
        assert stored.token_expiry.replace(tzinfo=timezone.utc) == NOW + timedelta(seconds=3600)

    def test_rotated_refresh_token_survives_a_failed_record(
        self, crm_app, provider, session, connection, mapping_factory, test_user, monkeypatch
    ):
        state = crm_app.extensions[CRM_SYNC_EXTENSION_KEY]
        monkeypatch.setitem(state, "provider_builders", {ProviderType.DYNAMICS365: lambda _connection: provider})
        connection.access_token = "stale"
        connection.refresh_token = "refresh-me"
        db.session.commit()
        session.token_responses.append(
            FakeResponse(body={"access_token": "fresh", "refresh_token": "rotated", "expires_in": 3600})
        )
        session.responses.append(FakeResponse(status_code=500, body={"error": {"message": "server busy"}}))
        mapping_factory(connection, sync_direction=SyncDirection.OUTBOUND)

        result = SyncService().sync_all(connection.id)

        assert result.stats.failed == 1
        db.session.expire_all()
        stored = db.session.get(CrmConnection, connection.id)
        assert stored.access_token == "fresh"
        assert stored.refresh_token == "rotated"
