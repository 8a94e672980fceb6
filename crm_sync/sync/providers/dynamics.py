"""
Dynamics 365 / Dataverse Web API provider.

Talks OData v4 over ``requests`` with bearer tokens from Azure AD. Token state
lives on the ``CrmConnection`` row itself so a refresh in the middle of a pass
is visible to every later call that shares the connection object.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Sequence

import requests
from sqlalchemy.orm import object_session

from crm_sync.models.crm.schema import CrmConnection, LocalEntityType, ProviderType

from ..errors import AuthError, ProviderError, TransportError
from ..mapping import PRIMARY_KEY_FIELDS, entity_set_name
from ..metrics import record_provider_auth
from ..values import Record, format_wire_datetime, parse_datetime
from .base import CrmProvider, EntitySchema, FieldSchema, LookupFieldInfo, WebhookEvent

API_VERSION = "v9.2"
AZURE_AD_AUTHORITY = "https://login.microsoftonline.com"
DEFAULT_ENVIRONMENT_URL = "https://org.crm.dynamics.com"

KNOWN_COLLECTIONS: Mapping[str, str] = {
    "contact": "contacts",
    "account": "accounts",
    "lead": "leads",
    "opportunity": "opportunities",
    "systemuser": "systemusers",
    "team": "teams",
}

ATTRIBUTE_TYPE_MAP: Mapping[str, str] = {
    "String": "String",
    "Memo": "String",
    "Integer": "Integer",
    "BigInt": "Integer",
    "Double": "Decimal",
    "Decimal": "Decimal",
    "Money": "Decimal",
    "Boolean": "Boolean",
    "DateTime": "DateTime",
    "Lookup": "Lookup",
    "Customer": "Lookup",
    "Owner": "Lookup",
    "Picklist": "OptionSet",
    "State": "OptionSet",
    "Status": "OptionSet",
    "Uniqueidentifier": "Guid",
}

_ENTITY_ID_RE = re.compile(r"\(([a-fA-F0-9-]+)\)")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _localized_label(token: Any) -> str | None:
    """Pull a display string out of a Dataverse Label object."""

    if token is None:
        return None
    if isinstance(token, str):
        return token
    if not isinstance(token, Mapping):
        return None
    user_label = token.get("UserLocalizedLabel")
    if isinstance(user_label, Mapping) and user_label.get("Label"):
        return str(user_label["Label"])
    labels = token.get("LocalizedLabels")
    if isinstance(labels, list) and labels and isinstance(labels[0], Mapping):
        label = labels[0].get("Label")
        return str(label) if label is not None else None
    return None


def _as_bool(token: Any) -> bool:
    if isinstance(token, bool):
        return token
    if isinstance(token, str):
        return token.strip().lower() == "true"
    if isinstance(token, Mapping):
        return _as_bool(token.get("Value"))
    return False


def _as_int(token: Any) -> int | None:
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token
    if isinstance(token, str):
        try:
            return int(token)
        except ValueError:
            return None
    return None


def _required_level(token: Any) -> bool:
    if isinstance(token, str):
        return token == "ApplicationRequired"
    if isinstance(token, Mapping):
        return str(token.get("Value")) == "ApplicationRequired"
    return False


def _optional_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return parse_datetime(str(value))
    except ValueError:
        return None


class DynamicsProvider(CrmProvider):
    """CRM provider for Microsoft Dynamics 365 (Dataverse Web API)."""

    provider_type = ProviderType.DYNAMICS365
    natural_key_fields = {
        LocalEntityType.USER: "emailaddress1",
        LocalEntityType.ORGANIZATION: "name",
        LocalEntityType.LOCATION: "name",
    }

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        token_refresh_buffer: float = 300.0,
        authority: str = AZURE_AD_AUTHORITY,
        clock: Callable[[], datetime] = _utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.token_refresh_buffer = timedelta(seconds=token_refresh_buffer)
        self.authority = authority.rstrip("/")
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._collection_cache: Dict[str, str] = {}

    # URLs -----------------------------------------------------------------------

    def api_base_url(self, connection: CrmConnection) -> str:
        base = (connection.environment_url or "https://org.api.crm.dynamics.com").rstrip("/")
        return f"{base}/api/data/{API_VERSION}"

    def resource_url(self, connection: CrmConnection) -> str:
        env_url = connection.environment_url or DEFAULT_ENVIRONMENT_URL
        return env_url.replace(".api.", ".").rstrip("/")

    def token_url(self, tenant_id: str) -> str:
        return f"{self.authority}/{tenant_id}/oauth2/v2.0/token"

    # Token management -------------------------------------------------------------

    def is_token_expired(self, connection: CrmConnection) -> bool:
        expiry = connection.token_expiry
        if expiry is None:
            return True
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry <= self.clock() + self.token_refresh_buffer

    def has_refresh_credential(self, connection: CrmConnection) -> bool:
        if connection.refresh_token:
            return True
        return bool(connection.client_id and connection.client_secret and connection.tenant_id)

    def ensure_token(self, connection: CrmConnection) -> str:
        """Return a usable access token, acquiring or refreshing it when needed."""

        if connection.access_token and not self.is_token_expired(connection):
            return connection.access_token
        if connection.access_token and connection.refresh_token:
            self.refresh_token(connection)
        else:
            self.acquire_client_credentials_token(connection)
        return connection.access_token or ""

    def acquire_client_credentials_token(self, connection: CrmConnection) -> None:
        client_id = connection.client_id
        client_secret = connection.client_secret
        tenant_id = connection.tenant_id
        if not (client_id and client_secret and tenant_id):
            record_provider_auth("failure")
            raise AuthError(
                "ClientId, ClientSecret, and TenantId are required. "
                f"Have ClientId: {bool(client_id)}, ClientSecret: {bool(client_secret)}, TenantId: {bool(tenant_id)}"
            )
        scope = f"{self.resource_url(connection)}/.default"
        payload = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
            "scope": scope,
        }
        self._request_token(connection, self.token_url(tenant_id), payload, context=f"scope={scope}")

    def refresh_token(self, connection: CrmConnection) -> None:
        if not connection.refresh_token:
            raise AuthError("no_refresh_token")
        payload = {
            "client_id": connection.client_id or "",
            "client_secret": connection.client_secret or "",
            "refresh_token": connection.refresh_token,
            "grant_type": "refresh_token",
            "scope": f"{self.resource_url(connection)}/.default offline_access",
        }
        self._request_token(connection, self.token_url(connection.tenant_id or "common"), payload, context="refresh")

    def _request_token(
        self,
        connection: CrmConnection,
        url: str,
        payload: Mapping[str, str],
        *,
        context: str,
    ) -> None:
        try:
            response = self.session.post(url, data=dict(payload), timeout=self.timeout)
        except requests.RequestException as exc:
            record_provider_auth("failure")
            raise AuthError(f"Token request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            record_provider_auth("failure")
            raise AuthError(
                f"Token endpoint returned non-JSON response: {response.text[:500]}",
                status_code=response.status_code,
            )

        if not response.ok:
            record_provider_auth("failure")
            error_code = data.get("error") or "unknown_error"
            description = data.get("error_description") or response.text
            raise AuthError(
                f"{error_code}: {description} ({context})",
                status_code=response.status_code,
                remote_message=description,
            )

        access_token = data.get("access_token")
        if not access_token:
            record_provider_auth("failure")
            raise AuthError("Token response did not contain access_token", status_code=response.status_code)

        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = 3600

        connection.access_token = access_token
        if data.get("refresh_token"):
            connection.refresh_token = data["refresh_token"]
        connection.token_expiry = self.clock() + timedelta(seconds=expires_in)
        db_session = object_session(connection)
        if db_session is not None:
            db_session.flush()
        record_provider_auth("success")
        self.logger.info(
            "Acquired Dynamics access token",
            extra={"crm_connection_id": connection.id, "expires_in": expires_in},
        )

    # HTTP -------------------------------------------------------------------------

    def _request(
        self,
        connection: CrmConnection,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        payload: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> requests.Response | None:
        retried = False
        while True:
            token = self.ensure_token(connection)
            request_headers = {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "OData-MaxVersion": "4.0",
                "OData-Version": "4.0",
            }
            if payload is not None:
                request_headers["Content-Type"] = "application/json"
            if headers:
                request_headers.update(headers)
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    headers=request_headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise TransportError(f"{method} {url} failed: {exc}") from exc

            if response.status_code in (401, 403):
                if not retried and self.has_refresh_credential(connection):
                    retried = True
                    # Force a fresh token on the next loop iteration.
                    connection.token_expiry = None
                    self.logger.warning(
                        "Dynamics rejected the access token; refreshing once",
                        extra={"crm_connection_id": connection.id, "status_code": response.status_code},
                    )
                    continue
                raise AuthError(
                    f"HTTP {response.status_code} from Dynamics",
                    status_code=response.status_code,
                    remote_message=self._error_message(response),
                )
            if response.status_code == 404 and allow_not_found:
                return None
            if not response.ok:
                remote_message = self._error_message(response)
                self.logger.error(
                    "Dynamics request failed: %s",
                    remote_message,
                    extra={"status_code": response.status_code, "url": url, "method": method},
                )
                raise TransportError(
                    f"HTTP {response.status_code}: {remote_message}",
                    status_code=response.status_code,
                    remote_message=remote_message,
                )
            return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(data, Mapping):
            error = data.get("error")
            if isinstance(error, Mapping) and error.get("message"):
                return str(error["message"])
            if data.get("message"):
                return str(data["message"])
        return response.text or ""

    def _get_json(self, connection: CrmConnection, url: str, params: Mapping[str, Any] | None = None) -> Any:
        response = self._request(connection, "GET", url, params=params)
        return response.json() if response is not None else None

    # Metadata ---------------------------------------------------------------------

    def collection_name(self, connection: CrmConnection, entity_name: str) -> str:
        cached = self._collection_cache.get(entity_name)
        if cached:
            return cached
        collection = KNOWN_COLLECTIONS.get(entity_name.lower())
        if collection is None:
            collection = entity_name + "s"
            url = f"{self.api_base_url(connection)}/EntityDefinitions(LogicalName='{entity_name}')"
            try:
                data = self._get_json(connection, url, params={"$select": "EntitySetName"})
                if isinstance(data, Mapping) and data.get("EntitySetName"):
                    collection = str(data["EntitySetName"])
            except TransportError as exc:
                self.logger.warning(
                    "Could not read EntitySetName for %s, using %s: %s", entity_name, collection, exc
                )
        self._collection_cache[entity_name] = collection
        return collection

    def validate_connection(self, connection: CrmConnection) -> bool:
        try:
            self._get_json(connection, f"{self.api_base_url(connection)}/WhoAmI")
            return True
        except ProviderError as exc:
            self.logger.warning("Dynamics connection %s failed validation: %s", connection.id, exc)
            return False
        except Exception as exc:  # pragma: no cover
            self.logger.warning("Unexpected error validating connection %s: %s", connection.id, exc)
            return False

    def discover_entities(self, connection: CrmConnection) -> Sequence[EntitySchema]:
        params = {
            "$select": "LogicalName,DisplayName,DisplayCollectionName,Description,IsCustomEntity,"
            "PrimaryIdAttribute,PrimaryNameAttribute,EntitySetName",
            "$filter": "IsValidForAdvancedFind eq true",
        }
        data = self._get_json(connection, f"{self.api_base_url(connection)}/EntityDefinitions", params) or {}
        entities: List[EntitySchema] = []
        for item in data.get("value") or []:
            if not isinstance(item, Mapping):
                continue
            logical_name = str(item.get("LogicalName") or "")
            if not logical_name:
                continue
            entities.append(
                EntitySchema(
                    logical_name=logical_name,
                    display_name=_localized_label(item.get("DisplayName")) or logical_name,
                    plural_name=_localized_label(item.get("DisplayCollectionName")),
                    description=_localized_label(item.get("Description")),
                    is_custom_entity=_as_bool(item.get("IsCustomEntity")),
                    primary_key_field=str(item.get("PrimaryIdAttribute") or "id"),
                    primary_name_field=item.get("PrimaryNameAttribute"),
                    collection_name=item.get("EntitySetName"),
                )
            )
        return sorted(entities, key=lambda entity: entity.display_name)

    def discover_fields(self, connection: CrmConnection, entity_name: str) -> Sequence[FieldSchema]:
        base = f"{self.api_base_url(connection)}/EntityDefinitions(LogicalName='{entity_name}')/Attributes"
        data = self._get_json(
            connection,
            base,
            {"$select": "LogicalName,DisplayName,Description,AttributeType,RequiredLevel,IsCustomAttribute"},
        ) or {}
        lookups = self._get_json(
            connection,
            f"{base}/Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            {"$select": "LogicalName,Targets"},
        ) or {}
        lookup_targets: Dict[str, str] = {}
        for lookup in lookups.get("value") or []:
            targets = lookup.get("Targets") or []
            if lookup.get("LogicalName") and targets:
                lookup_targets[lookup["LogicalName"]] = str(targets[0])

        fields: List[FieldSchema] = []
        for item in data.get("value") or []:
            logical_name = str(item.get("LogicalName") or "")
            if not logical_name or logical_name.startswith("yomi") or logical_name.endswith("_base"):
                continue
            attribute_type = str(item.get("AttributeType") or "String")
            related = None
            if attribute_type in {"Lookup", "Customer", "Owner"}:
                related = lookup_targets.get(logical_name)
            fields.append(
                FieldSchema(
                    logical_name=logical_name,
                    display_name=_localized_label(item.get("DisplayName")) or logical_name,
                    description=_localized_label(item.get("Description")),
                    data_type=ATTRIBUTE_TYPE_MAP.get(attribute_type, "String"),
                    is_required=_required_level(item.get("RequiredLevel")),
                    is_read_only=attribute_type in {"Uniqueidentifier", "EntityName"},
                    is_custom_field=_as_bool(item.get("IsCustomAttribute")),
                    max_length=_as_int(item.get("MaxLength")),
                    related_entity_name=related,
                )
            )
        return sorted(fields, key=lambda schema: schema.display_name)

    def discover_lookup_fields(
        self,
        connection: CrmConnection,
        entity_name: str,
        target_entity_name: str | None = None,
    ) -> Sequence[LookupFieldInfo]:
        base = f"{self.api_base_url(connection)}/EntityDefinitions(LogicalName='{entity_name}')"
        lookups = self._get_json(
            connection,
            f"{base}/Attributes/Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            {"$select": "LogicalName,DisplayName,Targets,AttributeType"},
        ) or {}
        relationships = self._get_json(
            connection,
            f"{base}/ManyToOneRelationships",
            {"$select": "ReferencingAttribute,ReferencedEntity,ReferencingEntityNavigationPropertyName"},
        ) or {}

        navigation: Dict[str, Dict[str, str]] = {}
        for rel in relationships.get("value") or []:
            attribute = rel.get("ReferencingAttribute")
            target = rel.get("ReferencedEntity")
            nav_property = rel.get("ReferencingEntityNavigationPropertyName")
            if attribute and target and nav_property:
                navigation.setdefault(str(attribute).lower(), {})[str(target)] = str(nav_property)

        results: List[LookupFieldInfo] = []
        for lookup in lookups.get("value") or []:
            logical_name = lookup.get("LogicalName")
            if not logical_name:
                continue
            info = LookupFieldInfo(
                logical_name=str(logical_name),
                display_name=_localized_label(lookup.get("DisplayName")) or str(logical_name),
                possible_targets=tuple(str(target) for target in lookup.get("Targets") or ()),
                navigation_properties=navigation.get(str(logical_name).lower(), {}),
                attribute_type=lookup.get("AttributeType"),
            )
            if target_entity_name and not info.targets(target_entity_name):
                continue
            results.append(info)
        return results

    # Records ----------------------------------------------------------------------

    def parse_record(self, entity_name: str, data: Mapping[str, Any]) -> Record:
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key.startswith("@") or "@" in key:
                continue
            if key.startswith("_") and not key.endswith("_value"):
                continue
            values[key] = value
        record_id = data.get(f"{entity_name}id") or data.get("id") or ""
        return Record.from_wire(
            entity_name,
            str(record_id),
            values,
            created_on=_optional_datetime(data.get("createdon")),
            modified_on=_optional_datetime(data.get("modifiedon")),
        )

    def get_record(self, connection: CrmConnection, entity_name: str, record_id: str) -> Record | None:
        collection = self.collection_name(connection, entity_name)
        url = f"{self.api_base_url(connection)}/{collection}({record_id})"
        response = self._request(connection, "GET", url, allow_not_found=True)
        if response is None:
            return None
        return self.parse_record(entity_name, response.json())

    def build_list_params(
        self,
        *,
        modified_since: datetime | None = None,
        filter_expression: str | None = None,
        top: int | None = None,
    ) -> Dict[str, str]:
        params: Dict[str, str] = {}
        clauses: List[str] = []
        if modified_since is not None:
            clauses.append(f"modifiedon ge {format_wire_datetime(modified_since)}")
        if filter_expression:
            clauses.append(f"({filter_expression})")
        if clauses:
            params["$filter"] = " and ".join(clauses)
        if top is not None:
            params["$top"] = str(int(top))
        params["$orderby"] = "modifiedon desc"
        return params

    def list_records(
        self,
        connection: CrmConnection,
        entity_name: str,
        *,
        modified_since: datetime | None = None,
        filter_expression: str | None = None,
        top: int | None = None,
    ) -> Sequence[Record]:
        collection = self.collection_name(connection, entity_name)
        url: str | None = f"{self.api_base_url(connection)}/{collection}"
        params: Mapping[str, str] | None = self.build_list_params(
            modified_since=modified_since, filter_expression=filter_expression, top=top
        )
        records: List[Record] = []
        while url:
            data = self._get_json(connection, url, params) or {}
            for item in data.get("value") or []:
                if isinstance(item, Mapping):
                    records.append(self.parse_record(entity_name, item))
            if top is not None and len(records) >= top:
                return records[:top]
            url = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None
        return records

    def sanitize_payload(self, entity_name: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        sanitized: Dict[str, Any] = {}
        for key, value in fields.items():
            if key.lower() in PRIMARY_KEY_FIELDS:
                self.logger.warning("Stripping read-only primary key '%s' from %s write payload", key, entity_name)
                continue
            sanitized[key] = value
        return sanitized

    def create_record(self, connection: CrmConnection, entity_name: str, fields: Mapping[str, Any]) -> str:
        collection = self.collection_name(connection, entity_name)
        response = self._request(
            connection,
            "POST",
            f"{self.api_base_url(connection)}/{collection}",
            payload=self.sanitize_payload(entity_name, fields),
            headers={"Prefer": "return=representation"},
        )
        if response.text:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, Mapping) and body.get(f"{entity_name}id"):
                return str(body[f"{entity_name}id"])
        entity_url = response.headers.get("OData-EntityId")
        if entity_url:
            match = _ENTITY_ID_RE.search(entity_url)
            if match:
                return match.group(1)
        raise TransportError(f"Dynamics did not return an id for the new {entity_name} record")

    def update_record(
        self, connection: CrmConnection, entity_name: str, record_id: str, fields: Mapping[str, Any]
    ) -> None:
        collection = self.collection_name(connection, entity_name)
        self._request(
            connection,
            "PATCH",
            f"{self.api_base_url(connection)}/{collection}({record_id})",
            payload=self.sanitize_payload(entity_name, fields),
        )

    def delete_record(self, connection: CrmConnection, entity_name: str, record_id: str) -> None:
        collection = self.collection_name(connection, entity_name)
        self._request(connection, "DELETE", f"{self.api_base_url(connection)}/{collection}({record_id})")

    # Wire conventions -------------------------------------------------------------

    def format_lookup_binding(self, lookup_field: str, related_entity: str, remote_id: str | None):
        if not remote_id:
            return f"{lookup_field}@odata.bind", None
        return f"{lookup_field}@odata.bind", f"/{entity_set_name(related_entity)}({remote_id})"

    def read_lookup_value(self, record: Record, lookup_field: str) -> str | None:
        value = record.get_text(f"_{lookup_field}_value")
        if value:
            return value
        return record.get_text(lookup_field)

    def has_lookup_value(self, record: Record, lookup_field: str) -> bool:
        return f"_{lookup_field}_value" in record or lookup_field in record

    # Webhooks ---------------------------------------------------------------------

    def parse_webhook(self, payload: str | bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            data = json.loads(text)
        except (TypeError, ValueError):
            self.logger.warning("Discarding webhook payload that is not valid JSON")
            return None
        if not isinstance(data, Mapping):
            return None

        event_type = str(data.get("MessageName") or "update").lower()
        entity_name = str(data.get("PrimaryEntityName") or "")
        record_id = str(data.get("PrimaryEntityId") or "")

        values: Dict[str, Any] = {}
        for param in data.get("InputParameters") or []:
            if not isinstance(param, Mapping) or param.get("key") != "Target":
                continue
            target = param.get("value")
            if not isinstance(target, Mapping):
                continue
            attributes = target.get("Attributes")
            if isinstance(attributes, list):
                for attribute in attributes:
                    if isinstance(attribute, Mapping) and attribute.get("key"):
                        values[str(attribute["key"])] = attribute.get("value")
            else:
                for key, value in target.items():
                    if not key.startswith("@"):
                        values[key] = value

        delivery_id = (
            headers.get("X-Crm-Delivery-Id")
            or data.get("CorrelationId")
            or data.get("RequestId")
        )
        record = Record.from_wire(entity_name, record_id, values)
        return WebhookEvent(
            event_type=event_type,
            entity_name=entity_name,
            record_id=record_id,
            record=record,
            delivery_id=str(delivery_id) if delivery_id else None,
            raw_payload=text,
        )


__all__ = ["DynamicsProvider", "KNOWN_COLLECTIONS", "API_VERSION", "AZURE_AD_AUTHORITY"]
