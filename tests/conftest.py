"""Shared fixtures: an in-memory adapter, configs and a no-wait sleep."""
import json
from typing import Any

import httpx
import pytest

from sync_core.audit import InMemoryAuditLog
from sync_core.config import AuthType, Credentials, IntegrationConfig, PlatformType
from sync_core.integrations.adapter_base import ConnectionAdapter, FetchPage, MutationIntent
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.mapper import DataMapper
from sync_core.resilience.quarantine import QuarantineQueue
from sync_core.storage import InMemoryEntityStore
from sync_core.sync.orchestrator import SyncOrchestrator


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeAdapter(ConnectionAdapter):
    """Serves pages from memory and records pushes."""

    platform = "fake"
    platform_type = PlatformType.CRM
    auth_type = AuthType.API_KEY
    supported_entities = (EntityType.CLIENT, EntityType.INVOICE, EntityType.PROJECT, EntityType.TASK)
    webhook_signature_header = "X-Fake-Signature"

    def __init__(self, config, http_client=None, oauth=None, pages=None):
        super().__init__(config, http_client or httpx.AsyncClient(), oauth=oauth)
        self.pages: list[list[dict[str, Any]]] = pages or []
        self.remote: dict[str, dict[str, Any]] = {}
        self.pushed: list[tuple[str | None, dict[str, Any]]] = []
        self.fetch_calls = 0
        self.fetch_failures: list[Exception] = []
        self.push_failures: dict[str, Exception] = {}

    async def fetch_entities(self, entity_type, filter=None, cursor=None, limit=100):
        self.fetch_calls += 1
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        index = int(cursor or 0)
        records = self.pages[index] if index < len(self.pages) else []
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return FetchPage(records=records, next_cursor=next_cursor)

    async def fetch_entity(self, entity_type, external_id):
        return self.remote.get(external_id)

    async def upsert_entity(self, entity_type, mapped_record, external_id=None):
        key = mapped_record.get("invoiceNumber") or mapped_record.get("name")
        if key in self.push_failures:
            raise self.push_failures[key]
        self.pushed.append((external_id, mapped_record))
        return external_id or f"remote-{len(self.pushed)}"

    def receive_webhook(self, payload):
        return [
            MutationIntent(
                entity_type=EntityType(event["type"]),
                action=event.get("action", "upsert"),
                external_id=event.get("id"),
                record=event.get("record"),
            )
            for event in payload.get("events", [])
        ]


def make_config(platform: str = "fake", **overrides) -> IntegrationConfig:
    values = dict(
        platform=platform,
        base_url="https://api.example.test",
        credentials=Credentials(auth_type=AuthType.API_KEY, api_key="key-123"),
        retry_attempts=3,
        retry_delay_ms=10,
        batch_size=100,
        batch_delay_ms=0,
        webhook_secret="whsec",
    )
    values.update(overrides)
    return IntegrationConfig(**values)


def json_response(status: int, payload: Any = None, **kwargs) -> httpx.Response:
    if payload is None:
        return httpx.Response(status, **kwargs)
    return httpx.Response(
        status,
        content=json.dumps(payload).encode(),
        headers={"content-type": "application/json"},
        **kwargs,
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def quarantine():
    return QuarantineQueue()


@pytest.fixture
def fake_adapter():
    return FakeAdapter(make_config())


@pytest.fixture
def orchestrator(fake_adapter, store, audit_log, quarantine, sleep):
    return SyncOrchestrator(
        fake_adapter,
        DataMapper("fake"),
        store,
        audit_log,
        quarantine=quarantine,
        sleep=sleep,
    )
