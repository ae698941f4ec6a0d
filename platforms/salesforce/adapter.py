"""
Salesforce adapter.

OAuth2 web-server flow. The token response names the org's instance_url,
which becomes the base URL for every data call. Reads go through SOQL with
`nextRecordsUrl` as the paging cursor; writes go through the sObject REST
endpoints (POST to create, PATCH to update).
"""
from __future__ import annotations
from datetime import datetime
from typing import Any
import logging

from sync_core.config import AuthType, PlatformType
from sync_core.errors import ConfigurationError, TerminalRemoteError
from sync_core.integrations.adapter_base import AdapterRequest, ConnectionAdapter, FetchPage
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.oauth_manager import OAuthProvider

from platforms.salesforce.mappings import FIELDS, MAPPINGS, SOBJECTS

logger = logging.getLogger(__name__)

API_VERSION = "v58.0"
DATA_PATH = f"/services/data/{API_VERSION}"
# Salesforce accepts query batch sizes between 200 and 2000
MIN_BATCH, MAX_BATCH = 200, 2000

SALESFORCE_OAUTH = OAuthProvider(
    name="salesforce",
    authorize_url="https://login.salesforce.com/services/oauth2/authorize",
    token_url="https://login.salesforce.com/services/oauth2/token",
    revoke_url="https://login.salesforce.com/services/oauth2/revoke",
    scopes=["api", "refresh_token", "offline_access"],
    default_expires_in=7200,
    extra_fields=("instance_url",),
)


def build_soql(sobject: str, fields: tuple[str, ...], filter: dict[str, Any] | None = None) -> str:
    query = f"SELECT {', '.join(fields)} FROM {sobject}"
    modified_since = (filter or {}).get("modified_since")
    if modified_since:
        if isinstance(modified_since, datetime):
            modified_since = modified_since.strftime("%Y-%m-%dT%H:%M:%SZ")
        # SOQL datetime literals are unquoted; reject anything that is not one
        if not all(ch.isalnum() or ch in "-:.+Z" for ch in str(modified_since)):
            raise ConfigurationError(f"Invalid modified_since: {modified_since}", platform="salesforce")
        query += f" WHERE LastModifiedDate > {modified_since}"
    return query + " ORDER BY LastModifiedDate ASC"


class SalesforceAdapter(ConnectionAdapter):
    platform = "salesforce"
    platform_type = PlatformType.CRM
    auth_type = AuthType.OAUTH2
    auth_check_path = f"{DATA_PATH}/sobjects/"
    supported_entities = (EntityType.CLIENT, EntityType.INVOICE)
    mapping_overrides = MAPPINGS
    oauth_provider = SALESFORCE_OAUTH

    @property
    def base_url(self) -> str:
        return self.config.options.get("instance_url") or self.config.base_url

    def _sobject(self, entity_type: EntityType) -> str:
        sobject = SOBJECTS.get(EntityType(entity_type))
        if sobject is None:
            raise ConfigurationError(
                f"Salesforce does not sync {EntityType(entity_type).value} entities", platform=self.platform
            )
        return sobject

    async def fetch_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> FetchPage:
        batch = max(MIN_BATCH, min(limit, MAX_BATCH))
        headers = {"Sforce-Query-Options": f"batchSize={batch}"}
        if cursor:
            req = AdapterRequest("GET", cursor, headers=headers)
        else:
            soql = build_soql(self._sobject(entity_type), FIELDS[EntityType(entity_type)], filter)
            req = AdapterRequest("GET", f"{DATA_PATH}/query/", params={"q": soql}, headers=headers)

        resp = await self.request(req)
        data = resp.data or {}
        next_cursor = None if data.get("done", True) else data.get("nextRecordsUrl")
        return FetchPage(records=list(data.get("records") or []), next_cursor=next_cursor)

    async def fetch_entity(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None:
        path = f"{DATA_PATH}/sobjects/{self._sobject(entity_type)}/{external_id}"
        try:
            resp = await self.request(AdapterRequest("GET", path))
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
        sobject = self._sobject(entity_type)
        body = dict(mapped_record)
        if EntityType(entity_type) == EntityType.INVOICE:
            # Required on Opportunity
            body.setdefault("Name", f"Invoice {body.get('Invoice_Number__c', '')}".strip())
            body.setdefault("StageName", "Prospecting")
            body.setdefault("CloseDate", body.get("Invoice_Date__c"))

        if external_id:
            await self.request(AdapterRequest("PATCH", f"{DATA_PATH}/sobjects/{sobject}/{external_id}", body=body))
            return external_id

        resp = await self.request(AdapterRequest("POST", f"{DATA_PATH}/sobjects/{sobject}/", body=body))
        return str((resp.data or {}).get("id"))
