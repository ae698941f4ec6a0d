"""
Trello adapter.

Authenticates with an application key plus a member token, both sent as
query parameters. Boards map to projects and cards to tasks. Cards are
paged newest-first with the `before` parameter; boards come back in one
response.
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

from platforms.trello.mappings import MAPPINGS

logger = logging.getLogger(__name__)

MAX_CARDS_PER_PAGE = 1000

# action.data key -> entity
ACTION_OBJECTS = {
    "card": EntityType.TASK,
    "board": EntityType.PROJECT,
}


class TrelloAdapter(ConnectionAdapter):
    platform = "trello"
    platform_type = PlatformType.PROJECT_MANAGEMENT
    auth_type = AuthType.API_KEY
    auth_check_path = "/members/me"
    supported_entities = (EntityType.PROJECT, EntityType.TASK)
    required_config = ("token",)
    mapping_overrides = MAPPINGS
    webhook_signature_header = "X-Trello-Webhook"

    def get_auth_headers(self) -> dict[str, str]:
        return {}

    def get_auth_params(self) -> dict[str, str]:
        return {
            "key": self.config.credentials.api_key or "",
            "token": self.config.options.get("token", ""),
        }

    def _board_id(self, filter: dict[str, Any] | None) -> str:
        board_id = (filter or {}).get("board_id") or self.config.options.get("board_id")
        if not board_id:
            raise ConfigurationError("Trello task sync needs a board_id", platform=self.platform)
        return board_id

    async def fetch_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> FetchPage:
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.PROJECT:
            resp = await self.request(AdapterRequest(
                "GET", "/members/me/boards", params={"filter": (filter or {}).get("boards", "open")}
            ))
            return FetchPage(records=list(resp.data or []))

        limit = min(limit, MAX_CARDS_PER_PAGE)
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["before"] = cursor
        resp = await self.request(AdapterRequest("GET", f"/boards/{self._board_id(filter)}/cards", params=params))
        cards = list(resp.data or [])
        next_cursor = cards[-1]["id"] if len(cards) == limit and cards else None
        return FetchPage(records=cards, next_cursor=next_cursor)

    async def fetch_entity(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None:
        path = f"/cards/{external_id}" if EntityType(entity_type) == EntityType.TASK else f"/boards/{external_id}"
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
        body = dict(mapped_record)
        if EntityType(entity_type) == EntityType.TASK:
            collection = "/cards"
            if not external_id:
                body.setdefault("idList", self.config.options.get("list_id"))
                if not body.get("idList"):
                    raise ConfigurationError("Trello card creation needs a list_id", platform=self.platform)
        else:
            collection = "/boards"

        if external_id:
            await self.request(AdapterRequest("PUT", f"{collection}/{external_id}", body=body))
            return external_id
        resp = await self.request(AdapterRequest("POST", collection, body=body))
        return str((resp.data or {}).get("id"))

    def receive_webhook(self, payload: Any) -> list[MutationIntent]:
        action = (payload or {}).get("action") or {}
        action_type = str(action.get("type", ""))
        data = action.get("data") or {}

        for key, entity_type in ACTION_OBJECTS.items():
            obj = data.get(key)
            if not isinstance(obj, dict) or not obj.get("id"):
                continue
            if action_type.startswith("delete"):
                return [MutationIntent(entity_type=entity_type, action="delete", external_id=obj["id"])]
            # Action payloads only carry the changed fields
            return [MutationIntent(entity_type=entity_type, external_id=obj["id"])]

        logger.info("[trello] Ignoring webhook action %s", action_type or "<none>")
        return []
