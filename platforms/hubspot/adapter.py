"""
HubSpot CRM adapter.

Private-app token sent as a bearer header (no refresh path). Objects are
read through the CRM v3 API with `after` cursor paging; webhooks deliver
batches of `{objectId, subscriptionType}` events that carry no record
body, so each one is fetched before it is applied.
"""
from __future__ import annotations
from typing import Any
import logging

from sync_core.config import AuthType, PlatformType
from sync_core.errors import ConfigurationError, TerminalRemoteError
from sync_core.integrations.adapter_base import (
    AdapterRequest,
    ConnectionAdapter,
    FetchPage,
    MutationIntent,
)
from sync_core.integrations.canonical import EntityType

from platforms.hubspot.mappings import MAPPINGS, OBJECT_TYPES, PROPERTIES

logger = logging.getLogger(__name__)

API_VERSION = "v3"

# subscriptionType prefix -> entity
SUBSCRIPTION_OBJECTS = {
    "contact": EntityType.CLIENT,
    "deal": EntityType.INVOICE,
}


class HubSpotAdapter(ConnectionAdapter):
    platform = "hubspot"
    platform_type = PlatformType.CRM
    auth_type = AuthType.API_KEY
    auth_check_path = "/account-info/v3/details"
    supported_entities = (EntityType.CLIENT, EntityType.INVOICE)
    mapping_overrides = MAPPINGS
    webhook_signature_header = "X-HubSpot-Signature"

    def _object_path(self, entity_type: EntityType, external_id: str | None = None) -> str:
        object_type = OBJECT_TYPES.get(EntityType(entity_type))
        if object_type is None:
            raise ConfigurationError(
                f"HubSpot does not sync {EntityType(entity_type).value} entities", platform=self.platform
            )
        path = f"/crm/{API_VERSION}/objects/{object_type}"
        return f"{path}/{external_id}" if external_id else path

    async def fetch_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> FetchPage:
        path = self._object_path(entity_type)
        params: dict[str, Any] = {
            "limit": min(limit, 100),
            "properties": ",".join(PROPERTIES[EntityType(entity_type)]),
            "archived": "false",
        }
        if cursor:
            params["after"] = cursor
        if filter:
            params.update(filter)

        resp = await self.request(AdapterRequest("GET", path, params=params))
        data = resp.data or {}
        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")
        return FetchPage(records=list(data.get("results") or []), next_cursor=next_cursor)

    async def fetch_entity(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None:
        path = self._object_path(entity_type, external_id)
        try:
            resp = await self.request(AdapterRequest(
                "GET",
                path,
                params={"properties": ",".join(PROPERTIES[EntityType(entity_type)])},
            ))
        except TerminalRemoteError as exc:
            if exc.status_code == 404:
                return None
            raise
        return resp.data

    async def upsert_entity(
        self,
        entity_type: EntityType,
        mapped_record: dict[str, Any],
        external_id: str | None = None,
    ) -> str:
        properties = dict(mapped_record.get("properties") or {})
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.CLIENT and " " in properties.get("firstname", ""):
            properties["firstname"], properties["lastname"] = properties["firstname"].split(" ", 1)
        if entity_type == EntityType.INVOICE and not properties.get("dealname"):
            properties["dealname"] = f"Invoice {properties.get('invoice_number', '')}".strip()

        if external_id:
            req = AdapterRequest("PATCH", self._object_path(entity_type, external_id), body={"properties": properties})
        else:
            req = AdapterRequest("POST", self._object_path(entity_type), body={"properties": properties})
        resp = await self.request(req)
        return str((resp.data or {}).get("id") or external_id)

    def receive_webhook(self, payload: Any) -> list[MutationIntent]:
        events = payload if isinstance(payload, list) else [payload]
        intents = []
        for event in events:
            if not isinstance(event, dict):
                continue
            subscription = str(event.get("subscriptionType", ""))
            object_name, _, change = subscription.partition(".")
            entity_type = SUBSCRIPTION_OBJECTS.get(object_name)
            if entity_type is None or event.get("objectId") is None:
                logger.info("[hubspot] Ignoring webhook event %s", subscription or "<none>")
                continue
            intents.append(MutationIntent(
                entity_type=entity_type,
                action="delete" if change == "deletion" else "upsert",
                external_id=str(event["objectId"]),
            ))
        return intents
