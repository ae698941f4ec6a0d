"""Test platform adapters against mocked HTTP transports."""
import asyncio
import json
from urllib.parse import parse_qsl

import httpx
import pytest

from conftest import json_response, make_config
from platforms import PLATFORM_DEFAULTS, build_registry
from platforms.hubspot.adapter import HubSpotAdapter
from platforms.salesforce.adapter import SalesforceAdapter, build_soql
from platforms.trello.adapter import TrelloAdapter
from sync_core.audit import InMemoryAuditLog, SyncLogStatus, SyncOperation
from sync_core.config import AuthType, Credentials, PlatformType
from sync_core.errors import (
    AuthError,
    ConfigurationError,
    TerminalRemoteError,
    TransientNetworkError,
)
from sync_core.integrations.canonical import EntityType
from sync_core.storage import InMemoryEntityStore
from sync_core.sync.orchestrator import SyncOrchestrator


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def hubspot_config(**overrides):
    return make_config("hubspot", base_url="https://api.hubapi.com", **overrides)


def salesforce_config():
    return make_config(
        "salesforce",
        base_url="https://login.salesforce.com",
        credentials=Credentials(
            auth_type=AuthType.OAUTH2,
            access_token="old",
            refresh_token="r1",
            client_id="cid",
            client_secret="secret",
            redirect_uri="https://app.test/oauth/callback",
        ),
        options={"instance_url": "https://na1.my.salesforce.com"},
    )


def trello_config():
    return make_config(
        "trello",
        base_url="https://api.trello.com/1",
        options={"token": "member-token", "board_id": "board-1", "list_id": "list-1"},
    )


# ---------------------------------------------------------------------------
# HubSpot
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hubspot_pages_with_after_cursor():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params.get("after") is None:
            return json_response(200, {
                "results": [{"id": "1", "properties": {"email": "a@a.test"}}],
                "paging": {"next": {"after": "cursor-2"}},
            })
        return json_response(200, {"results": [{"id": "2", "properties": {"email": "b@b.test"}}]})

    async with mock_client(handler) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        first = await adapter.fetch_entities(EntityType.CLIENT, limit=50)
        second = await adapter.fetch_entities(EntityType.CLIENT, cursor=first.next_cursor)

    assert [r["id"] for r in first.records] == ["1"]
    assert first.next_cursor == "cursor-2"
    assert second.next_cursor is None
    assert seen[0].url.path == "/crm/v3/objects/contacts"
    assert seen[0].url.params["limit"] == "50"
    assert "email" in seen[0].url.params["properties"]
    assert seen[0].headers["Authorization"] == "Bearer key-123"
    assert seen[1].url.params["after"] == "cursor-2"


@pytest.mark.asyncio
async def test_hubspot_upsert_splits_name_and_patches_existing():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.method, request.url.path, json.loads(request.content)))
        return json_response(200 if request.method == "PATCH" else 201, {"id": "901"})

    async with mock_client(handler) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        created = await adapter.upsert_entity(
            EntityType.CLIENT, {"properties": {"firstname": "Ada Lovelace", "email": "ada@x.test"}}
        )
        updated = await adapter.upsert_entity(
            EntityType.INVOICE, {"properties": {"invoice_number": "F-1", "amount": "10.00"}}, external_id="77"
        )

    assert created == "901"
    assert updated == "901"
    method, path, body = bodies[0]
    assert (method, path) == ("POST", "/crm/v3/objects/contacts")
    assert body["properties"]["firstname"] == "Ada"
    assert body["properties"]["lastname"] == "Lovelace"
    method, path, body = bodies[1]
    assert (method, path) == ("PATCH", "/crm/v3/objects/deals/77")
    assert body["properties"]["dealname"] == "Invoice F-1"


@pytest.mark.asyncio
async def test_hubspot_fetch_entity_missing_returns_none():
    async with mock_client(lambda request: json_response(404, {"message": "not found"})) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        assert await adapter.fetch_entity(EntityType.CLIENT, "404") is None


@pytest.mark.asyncio
async def test_hubspot_rejects_unsupported_entity():
    async with mock_client(lambda request: json_response(200, {})) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        with pytest.raises(ConfigurationError):
            await adapter.fetch_entities(EntityType.TASK)
        with pytest.raises(ConfigurationError):
            await adapter.fetch_entity(EntityType.PROJECT, "42")
        assert adapter.get_health().total_requests == 0


def test_hubspot_webhook_events_become_intents():
    adapter = HubSpotAdapter(hubspot_config(), httpx.AsyncClient())
    intents = adapter.receive_webhook([
        {"subscriptionType": "contact.propertyChange", "objectId": 101},
        {"subscriptionType": "deal.deletion", "objectId": 202},
        {"subscriptionType": "company.creation", "objectId": 303},
        {"subscriptionType": "contact.creation"},
    ])

    assert [(i.entity_type, i.action, i.external_id) for i in intents] == [
        (EntityType.CLIENT, "upsert", "101"),
        (EntityType.INVOICE, "delete", "202"),
    ]
    assert all(i.record is None for i in intents)


@pytest.mark.parametrize("status,expected", [
    (400, TerminalRemoteError),
    (429, TransientNetworkError),
    (503, TransientNetworkError),
])
@pytest.mark.asyncio
async def test_status_classification(status, expected):
    async with mock_client(lambda request: json_response(status, {"message": "nope"})) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        with pytest.raises(expected) as exc_info:
            await adapter.fetch_entities(EntityType.CLIENT)

    assert exc_info.value.status_code == status
    assert adapter.get_health().failed_requests == 1


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection reset", request=request)

    async with mock_client(handler) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        with pytest.raises(TransientNetworkError):
            await adapter.fetch_entities(EntityType.CLIENT)


@pytest.mark.asyncio
async def test_validate_connection():
    async with mock_client(lambda request: json_response(200, {"portalId": 1})) as client:
        assert await HubSpotAdapter(hubspot_config(), client).validate_connection() is True

    async with mock_client(lambda request: json_response(401, {"message": "expired"})) as client:
        adapter = HubSpotAdapter(hubspot_config(), client)
        assert await adapter.validate_connection() is False
        assert adapter.get_health().auth_failures == 1


# ---------------------------------------------------------------------------
# Salesforce
# ---------------------------------------------------------------------------

def salesforce_handler(calls: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/services/oauth2/token":
            calls["token"] += 1
            calls["form"] = dict(parse_qsl(request.content.decode()))
            return json_response(200, {
                "access_token": "new",
                "refresh_token": "r2",
                "instance_url": "https://na2.my.salesforce.com",
            })
        calls["data"].append((request.url.host, request.headers["Authorization"]))
        if request.headers["Authorization"] == "Bearer old":
            return json_response(401, [{"errorCode": "INVALID_SESSION_ID"}])
        return json_response(200, {"done": True, "totalSize": 1, "records": [{"Id": "003A", "LastName": "Doe"}]})
    return handler


@pytest.mark.asyncio
async def test_salesforce_refreshes_once_and_replays_on_401():
    calls = {"token": 0, "data": []}
    config = salesforce_config()

    async with mock_client(salesforce_handler(calls)) as client:
        adapter = SalesforceAdapter(config, client)
        page = await adapter.fetch_entities(EntityType.CLIENT)

    assert page.records == [{"Id": "003A", "LastName": "Doe"}]
    assert page.next_cursor is None
    assert calls["token"] == 1
    assert calls["form"]["grant_type"] == "refresh_token"
    assert calls["form"]["refresh_token"] == "r1"
    assert calls["data"] == [
        ("na1.my.salesforce.com", "Bearer old"),
        ("na2.my.salesforce.com", "Bearer new"),
    ]
    assert config.credentials.access_token == "new"
    assert config.credentials.refresh_token == "r2"
    assert config.options["instance_url"] == "https://na2.my.salesforce.com"
    assert adapter.get_health().token_refreshes == 1


@pytest.mark.asyncio
async def test_salesforce_concurrent_401s_share_one_refresh():
    calls = {"token": 0, "data": []}

    async with mock_client(salesforce_handler(calls)) as client:
        adapter = SalesforceAdapter(salesforce_config(), client)
        pages = await asyncio.gather(*(adapter.fetch_entities(EntityType.CLIENT) for _ in range(5)))

    assert calls["token"] == 1
    assert all(len(page.records) == 1 for page in pages)


@pytest.mark.asyncio
async def test_concurrent_salesforce_syncs_share_one_refresh():
    calls = {"token": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/services/oauth2/token":
            calls["token"] += 1
            return json_response(200, {"access_token": "new", "instance_url": "https://na1.my.salesforce.com"})
        if request.headers["Authorization"] == "Bearer old":
            return json_response(401, [{"errorCode": "INVALID_SESSION_ID"}])
        return json_response(200, {
            "done": True,
            "records": [{"Id": "003A", "Name": "Jane Doe", "Email": "jane@doe.test"}],
        })

    async with mock_client(handler) as client:
        adapter = SalesforceAdapter(salesforce_config(), client)
        orchestrator = SyncOrchestrator(
            adapter, build_registry().mapper_for("salesforce"), InMemoryEntityStore(), InMemoryAuditLog()
        )
        results = await asyncio.gather(
            *(orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL) for _ in range(5))
        )

    assert calls["token"] == 1
    assert [result.status for result in results] == [SyncLogStatus.SUCCESS] * 5


@pytest.mark.asyncio
async def test_salesforce_second_401_is_auth_error():
    def handler(request):
        if request.url.path == "/services/oauth2/token":
            return json_response(200, {"access_token": "new"})
        return json_response(401, [{"errorCode": "INVALID_SESSION_ID"}])

    async with mock_client(handler) as client:
        adapter = SalesforceAdapter(salesforce_config(), client)
        with pytest.raises(AuthError):
            await adapter.fetch_entities(EntityType.INVOICE)


@pytest.mark.asyncio
async def test_salesforce_follows_next_records_url():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if "query/" in request.url.path and not request.url.path.endswith("-2000"):
            return json_response(200, {
                "done": False,
                "records": [{"Id": "006A"}],
                "nextRecordsUrl": "/services/data/v58.0/query/01gxx-2000",
            })
        return json_response(200, {"done": True, "records": [{"Id": "006B"}]})

    config = salesforce_config()
    config.credentials.access_token = "new"
    async with mock_client(handler) as client:
        adapter = SalesforceAdapter(config, client)
        first = await adapter.fetch_entities(EntityType.INVOICE)
        second = await adapter.fetch_entities(EntityType.INVOICE, cursor=first.next_cursor)

    assert first.next_cursor == "/services/data/v58.0/query/01gxx-2000"
    assert [r["Id"] for r in second.records] == ["006B"]
    assert paths[1] == "/services/data/v58.0/query/01gxx-2000"


def test_build_soql_filters_on_modified_since():
    query = build_soql("Contact", ("Id", "Email"), {"modified_since": "2024-01-01T00:00:00Z"})
    assert query == (
        "SELECT Id, Email FROM Contact WHERE LastModifiedDate > 2024-01-01T00:00:00Z "
        "ORDER BY LastModifiedDate ASC"
    )
    with pytest.raises(ConfigurationError):
        build_soql("Contact", ("Id",), {"modified_since": "2024 OR Name != null"})


def test_salesforce_authorization_url_requires_state():
    adapter = SalesforceAdapter(salesforce_config(), httpx.AsyncClient())
    url = adapter.authorization_url("state-abc")
    assert url.startswith("https://login.salesforce.com/services/oauth2/authorize?")
    assert "state=state-abc" in url
    with pytest.raises(ConfigurationError):
        adapter.authorization_url("")


# ---------------------------------------------------------------------------
# Trello
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trello_sends_key_and_token_as_query_params():
    seen = []

    def handler(request):
        seen.append(request)
        return json_response(200, [{"id": f"card-{i}", "name": "x"} for i in range(2)])

    async with mock_client(handler) as client:
        adapter = TrelloAdapter(trello_config(), client)
        page = await adapter.fetch_entities(EntityType.TASK, limit=2)

    request = seen[0]
    assert request.url.path == "/1/boards/board-1/cards"
    assert request.url.params["key"] == "key-123"
    assert request.url.params["token"] == "member-token"
    assert "Authorization" not in request.headers
    # A full page means there may be older cards
    assert page.next_cursor == "card-1"


@pytest.mark.asyncio
async def test_trello_card_creation_uses_default_list():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return json_response(200, {"id": "card-new"})

    async with mock_client(handler) as client:
        adapter = TrelloAdapter(trello_config(), client)
        external_id = await adapter.upsert_entity(EntityType.TASK, {"name": "Chase payment"})

    assert external_id == "card-new"
    assert bodies[0]["idList"] == "list-1"


def test_trello_webhook_actions():
    adapter = TrelloAdapter(trello_config(), httpx.AsyncClient())
    update = adapter.receive_webhook({
        "action": {"type": "updateCard", "data": {"card": {"id": "c1", "name": "Renamed"}}},
    })
    delete = adapter.receive_webhook({"action": {"type": "deleteCard", "data": {"card": {"id": "c2"}}}})
    ignored = adapter.receive_webhook({"action": {"type": "addMemberToBoard", "data": {}}})

    assert [(i.entity_type, i.action, i.external_id) for i in update] == [(EntityType.TASK, "upsert", "c1")]
    assert [(i.entity_type, i.action, i.external_id) for i in delete] == [(EntityType.TASK, "delete", "c2")]
    assert ignored == []


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registry_lists_platforms_by_type():
    registry = build_registry()
    assert registry.adapter_count == 3
    assert registry.supported_platforms() == ["hubspot", "salesforce", "trello"]
    assert registry.supported_platforms(PlatformType.PROJECT_MANAGEMENT) == ["trello"]
    assert registry.is_supported("hubspot")
    assert not registry.is_supported("pipedrive")


def test_registry_fails_fast_on_incomplete_config():
    registry = build_registry()
    client = httpx.AsyncClient()

    with pytest.raises(ConfigurationError, match="Unsupported platform"):
        registry.create(make_config("pipedrive"), client)

    with pytest.raises(ConfigurationError, match="token"):
        registry.create(make_config("trello", base_url="https://api.trello.com/1"), client)

    with pytest.raises(ConfigurationError, match="oauth2"):
        registry.create(make_config("salesforce"), client)

    incomplete = make_config(
        "salesforce",
        credentials=Credentials(auth_type=AuthType.OAUTH2, client_id="cid"),
    )
    with pytest.raises(ConfigurationError) as exc_info:
        registry.create(incomplete, client)
    assert "client_secret" in exc_info.value.message
    assert "access_token" in exc_info.value.message


def test_registry_creates_adapter_and_mapper():
    registry = build_registry()
    adapter = registry.create(hubspot_config(), httpx.AsyncClient())
    assert isinstance(adapter, HubSpotAdapter)

    mapper = registry.mapper_for("hubspot")
    mapped = mapper.map({"id": "1", "properties": {"email": "X@Y.test"}}, EntityType.CLIENT)
    assert mapped["email"] == "x@y.test"
    assert PLATFORM_DEFAULTS["hubspot"]["base_url"] == "https://api.hubapi.com"
