"""Test sync orchestration: pull, push, bidirectional, audit trail, cancellation."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import FakeAdapter, RecordingSleep, make_config
from sync_core.audit import InMemoryAuditLog, SyncLogStatus, SyncOperation, SyncTrigger
from sync_core.errors import AuthError, TerminalRemoteError, TransientNetworkError
from sync_core.integrations.canonical import Client, EntityType, Invoice
from sync_core.integrations.mapper import DataMapper
from sync_core.storage import InMemoryEntityStore
from sync_core.sync import SyncRunner
from sync_core.sync.orchestrator import SyncOrchestrator, remote_wins


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def client_record(external_id: str, name: str | None = "Acme", updated="2024-01-10T00:00:00Z", **extra):
    record = {"id": external_id, "name": name, "updatedAt": updated}
    record.update(extra)
    return record


def build(config=None, pages=None):
    adapter = FakeAdapter(config or make_config(), pages=pages)
    store = InMemoryEntityStore()
    audit_log = InMemoryAuditLog()
    sleep = RecordingSleep()
    orchestrator = SyncOrchestrator(adapter, DataMapper("fake"), store, audit_log, sleep=sleep)
    return orchestrator, adapter, store, audit_log, sleep


# ---------------------------------------------------------------------------
# Last-writer-wins
# ---------------------------------------------------------------------------

def test_remote_wins_rules():
    synced = Client(name="A", external_updated_at=utc(2024, 1, 10), updated_at=utc(2024, 1, 11))
    assert not remote_wins(synced, utc(2024, 1, 5))
    assert not remote_wins(synced, utc(2024, 1, 10))
    assert remote_wins(synced, utc(2024, 1, 12))
    assert not remote_wins(synced, None)

    dirty = Client(name="A", dirty=True, external_updated_at=utc(2024, 1, 1), updated_at=utc(2024, 1, 10))
    assert not remote_wins(dirty, utc(2024, 1, 9))
    # Exact tie goes to remote
    assert remote_wins(dirty, utc(2024, 1, 10))
    assert remote_wins(dirty, utc(2024, 1, 11))

    never_synced = Client(name="A", updated_at=utc(2024, 1, 10))
    assert not remote_wins(never_synced, utc(2024, 1, 10))
    assert remote_wins(never_synced, utc(2024, 1, 10, 0, 0, 1))

    # Naive timestamps are treated as UTC
    assert remote_wins(synced, datetime(2024, 1, 12))


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pull_creates_local_entities(orchestrator, fake_adapter, store, audit_log):
    fake_adapter.pages = [[client_record("ext-1", email="a@acme.test"), client_record("ext-2", name="Globex")]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.status == SyncLogStatus.SUCCESS
    assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
    assert [d.action for d in result.details] == ["created", "created"]

    local = await store.find_entity_by_external_id("fake", "ext-1", EntityType.CLIENT)
    assert local.email == "a@acme.test"
    assert local.external_updated_at == utc(2024, 1, 10)
    assert local.sync_status == "synced"
    assert not local.dirty

    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.status == SyncLogStatus.SUCCESS
    assert entry.operation == SyncOperation.PULL
    assert entry.direction == "inbound"
    assert entry.processed == 2
    assert entry.completed_at is not None


@pytest.mark.asyncio
async def test_pull_with_invalid_record_is_partial(orchestrator, fake_adapter, audit_log, quarantine):
    fake_adapter.pages = [[
        client_record("ext-1"),
        client_record("ext-2"),
        client_record("ext-3", name=None),
        client_record("ext-4"),
        client_record("ext-5"),
    ]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert (result.processed, result.succeeded, result.failed) == (5, 4, 1)
    assert result.status == SyncLogStatus.PARTIAL
    failed = [d for d in result.details if not d.success]
    assert failed[0].external_id == "ext-3"
    assert "name or email" in failed[0].error

    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.status == SyncLogStatus.PARTIAL
    assert (entry.processed, entry.succeeded, entry.failed) == (5, 4, 1)

    parked = quarantine.list_pending(integration_id="fake")
    assert len(parked) == 1
    assert parked[0].external_id == "ext-3"
    assert parked[0].log_id == result.log_id


@pytest.mark.asyncio
async def test_pull_where_every_record_fails_is_failed(orchestrator, fake_adapter):
    fake_adapter.pages = [[client_record("ext-1", name=None), client_record("ext-2", name=None)]]
    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)
    assert result.status == SyncLogStatus.FAILED
    assert result.error_message is None


@pytest.mark.asyncio
async def test_empty_pull_is_success(orchestrator):
    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)
    assert result.status == SyncLogStatus.SUCCESS
    assert result.processed == 0


@pytest.mark.asyncio
async def test_older_remote_version_is_skipped(orchestrator, fake_adapter, store):
    existing = await store.upsert_local_entity(Client(
        name="Local Name",
        platform="fake",
        external_id="ext-1",
        external_updated_at=utc(2024, 1, 10),
        sync_status="synced",
    ))
    fake_adapter.pages = [[client_record("ext-1", name="Stale Name", updated="2024-01-05T00:00:00Z")]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert [d.action for d in result.details] == ["skipped"]
    assert result.status == SyncLogStatus.SUCCESS
    local = store.get(existing.id)
    assert local.name == "Local Name"
    assert local.external_updated_at == utc(2024, 1, 10)


@pytest.mark.asyncio
async def test_newer_remote_version_updates_in_place(orchestrator, fake_adapter, store):
    existing = await store.upsert_local_entity(Client(
        name="Old",
        phone="+33 1",
        platform="fake",
        external_id="ext-1",
        external_updated_at=utc(2024, 1, 10),
        sync_status="synced",
        extensions={"tier": "gold"},
    ))
    fake_adapter.pages = [[client_record("ext-1", name="New", updated="2024-02-01T00:00:00Z")]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert [d.action for d in result.details] == ["updated"]
    assert len(store) == 1
    local = store.get(existing.id)
    assert local.name == "New"
    assert local.phone == "+33 1"
    assert local.extensions == {"tier": "gold"}
    assert local.external_updated_at == utc(2024, 2, 1)


@pytest.mark.asyncio
async def test_pull_follows_cursor_and_honours_max_pages():
    pages = [[client_record("a")], [client_record("b")], [client_record("c")]]
    orchestrator, adapter, store, _, _ = build(pages=pages)
    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)
    assert result.processed == 3
    assert adapter.fetch_calls == 3

    orchestrator, adapter, store, _, _ = build(pages=pages)
    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL, options={"max_pages": 2})
    assert result.processed == 2
    assert adapter.fetch_calls == 2


@pytest.mark.asyncio
async def test_pull_pauses_between_batches():
    records = [client_record(f"ext-{i}") for i in range(5)]
    orchestrator, _, _, _, sleep = build(make_config(batch_size=2, batch_delay_ms=250), pages=[records])

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.processed == 5
    assert sleep.delays == [0.25, 0.25]


@pytest.mark.asyncio
async def test_transient_fetch_failure_is_retried(orchestrator, fake_adapter, sleep):
    fake_adapter.pages = [[client_record("ext-1")]]
    fake_adapter.fetch_failures = [TransientNetworkError("HTTP 503", status_code=503)]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.status == SyncLogStatus.SUCCESS
    assert fake_adapter.fetch_calls == 2
    assert sleep.delays == [0.01]


@pytest.mark.asyncio
async def test_exhausted_fetch_retries_fail_the_attempt(orchestrator, fake_adapter, audit_log):
    fake_adapter.fetch_failures = [TransientNetworkError("HTTP 503", status_code=503) for _ in range(3)]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.status == SyncLogStatus.FAILED
    assert fake_adapter.fetch_calls == 3
    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.status == SyncLogStatus.FAILED
    assert entry.error_message == "HTTP 503"


@pytest.mark.asyncio
async def test_missing_configuration_fails_before_network():
    orchestrator, adapter, _, audit_log, _ = build(make_config(base_url=""))

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.status == SyncLogStatus.FAILED
    assert "base_url" in result.error_message
    assert adapter.fetch_calls == 0
    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.status == SyncLogStatus.FAILED


@pytest.mark.asyncio
async def test_unexpected_fault_still_finalizes_log(orchestrator, fake_adapter, audit_log):
    fake_adapter.fetch_failures = [RuntimeError("boom")]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PULL)

    assert result.status == SyncLogStatus.FAILED
    assert "boom" in result.error_message
    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.is_final


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_push_sends_dirty_entities(orchestrator, fake_adapter, store):
    invoice = await store.upsert_local_entity(Invoice(
        invoice_number="F-1", amount=Decimal("99.995"), due_date=datetime(2024, 3, 1).date(), dirty=True,
    ))

    result = await orchestrator.sync_entity(EntityType.INVOICE, SyncOperation.PUSH)

    assert result.status == SyncLogStatus.SUCCESS
    assert [d.action for d in result.details] == ["pushed"]
    external_id, payload = fake_adapter.pushed[0]
    assert external_id is None
    assert payload["amount"] == "100.00"
    assert payload["dueDate"] == "2024-03-01"

    local = store.get(invoice.id)
    assert local.external_id == "remote-1"
    assert local.platform == "fake"
    assert local.sync_status == "synced"
    assert not local.dirty
    assert await store.list_pending_push("fake", EntityType.INVOICE) == []


@pytest.mark.asyncio
async def test_push_updates_existing_remote_record(orchestrator, fake_adapter, store):
    await store.upsert_local_entity(Client(
        name="Acme", platform="fake", external_id="ext-9", sync_status="synced", dirty=True,
    ))
    await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PUSH)
    assert fake_adapter.pushed[0][0] == "ext-9"


@pytest.mark.asyncio
async def test_push_terminal_failure_is_recorded(orchestrator, fake_adapter, store, sleep):
    ok = await store.upsert_local_entity(Invoice(invoice_number="F-1", amount=Decimal("10"), dirty=True))
    bad = await store.upsert_local_entity(Invoice(invoice_number="F-2", amount=Decimal("20"), dirty=True))
    fake_adapter.push_failures["F-2"] = TerminalRemoteError("HTTP 422: bad currency", status_code=422)

    result = await orchestrator.sync_entity(EntityType.INVOICE, SyncOperation.PUSH)

    assert result.status == SyncLogStatus.PARTIAL
    assert (result.succeeded, result.failed) == (1, 1)
    assert sleep.delays == []
    assert store.get(ok.id).sync_status == "synced"
    failed = store.get(bad.id)
    assert failed.sync_status == "failed"
    assert failed.sync_error == "HTTP 422: bad currency"
    assert failed.dirty


@pytest.mark.asyncio
async def test_push_transient_failure_retries_then_records(orchestrator, fake_adapter, store, sleep):
    await store.upsert_local_entity(Invoice(invoice_number="F-3", amount=Decimal("10"), dirty=True))
    fake_adapter.push_failures["F-3"] = TransientNetworkError("HTTP 503", status_code=503)

    result = await orchestrator.sync_entity(EntityType.INVOICE, SyncOperation.PUSH)

    assert result.status == SyncLogStatus.FAILED
    assert sleep.delays == [0.01, 0.02]


@pytest.mark.asyncio
async def test_push_invalid_entity_is_not_sent(orchestrator, fake_adapter, store):
    await store.upsert_local_entity(Invoice(invoice_number="F-4", dirty=True))

    result = await orchestrator.sync_entity(EntityType.INVOICE, SyncOperation.PUSH)

    assert result.failed == 1
    assert fake_adapter.pushed == []


@pytest.mark.asyncio
async def test_push_auth_failure_aborts_attempt(orchestrator, fake_adapter, store, audit_log):
    await store.upsert_local_entity(Client(name="Acme", dirty=True))
    fake_adapter.push_failures["Acme"] = AuthError("HTTP 401", status_code=401)

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PUSH)

    assert result.status == SyncLogStatus.FAILED
    assert result.error_message == "HTTP 401"
    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.status == SyncLogStatus.FAILED
    assert entry.direction == "outbound"


@pytest.mark.asyncio
async def test_push_auth_failure_still_records_sibling_pushes(orchestrator, fake_adapter, store, audit_log):
    rejected = await store.upsert_local_entity(Client(name="Acme", dirty=True))
    beta = await store.upsert_local_entity(Client(name="Beta", dirty=True))
    gamma = await store.upsert_local_entity(Client(name="Gamma", dirty=True))
    fake_adapter.push_failures["Acme"] = AuthError("HTTP 401", status_code=401)

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.PUSH)

    assert result.status == SyncLogStatus.FAILED
    assert result.error_message == "HTTP 401"
    assert sorted(payload["name"] for _, payload in fake_adapter.pushed) == ["Beta", "Gamma"]
    assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
    assert sorted(d.local_id for d in result.details) == sorted([beta.id, gamma.id])

    entry = await audit_log.get_log_entry(result.log_id)
    assert (entry.processed, entry.succeeded) == (2, 2)
    assert store.get(beta.id).sync_status == "synced"
    assert store.get(gamma.id).sync_status == "synced"
    assert store.get(rejected.id).dirty


# ---------------------------------------------------------------------------
# Bidirectional
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bidirectional_runs_pull_then_push_under_parent_log(orchestrator, fake_adapter, store, audit_log):
    local_only = await store.upsert_local_entity(Client(name="Local Only", dirty=True))
    fake_adapter.pages = [[client_record("ext-1", name="Remote Only")]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.BIDIRECTIONAL)

    assert result.status == SyncLogStatus.SUCCESS
    assert (result.processed, result.succeeded) == (2, 2)
    assert [c.operation for c in result.children] == ["pull", "push"]
    # The freshly pulled record is already in sync and is not pushed back
    assert [payload["name"] for _, payload in fake_adapter.pushed] == ["Local Only"]
    assert store.get(local_only.id).external_id == "remote-1"

    parent = await audit_log.get_log_entry(result.log_id)
    assert parent.operation == SyncOperation.BIDIRECTIONAL
    assert parent.direction is None
    assert parent.processed == 2
    for child in result.children:
        entry = await audit_log.get_log_entry(child.log_id)
        assert entry.parent_log_id == result.log_id
        assert entry.is_final


@pytest.mark.asyncio
async def test_bidirectional_tie_keeps_remote_copy(orchestrator, fake_adapter, store):
    edited_at = utc(2024, 3, 1, 12)
    local = await store.upsert_local_entity(Client(
        name="Local Edit",
        platform="fake",
        external_id="ext-1",
        external_updated_at=utc(2024, 2, 1),
        updated_at=edited_at,
        dirty=True,
        sync_status="synced",
    ))
    fake_adapter.pages = [[client_record("ext-1", name="Remote Edit", updated="2024-03-01T12:00:00Z")]]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.BIDIRECTIONAL)

    assert result.status == SyncLogStatus.SUCCESS
    assert [d.action for d in result.details] == ["conflict"]
    stored = store.get(local.id)
    assert stored.name == "Remote Edit"
    assert not stored.dirty
    conflict = stored.extensions["conflict_data"]
    assert conflict["local_values"] == {"name": "Local Edit"}
    assert conflict["local_updated_at"] == edited_at.isoformat()
    assert conflict["remote_updated_at"] == edited_at.isoformat()
    assert fake_adapter.pushed == []


@pytest.mark.asyncio
async def test_bidirectional_stops_when_pull_fails(orchestrator, fake_adapter, store, audit_log):
    await store.upsert_local_entity(Client(name="Pending", dirty=True))
    fake_adapter.fetch_failures = [TerminalRemoteError("HTTP 400", status_code=400)]

    result = await orchestrator.sync_entity(EntityType.CLIENT, SyncOperation.BIDIRECTIONAL)

    assert result.status == SyncLogStatus.FAILED
    assert result.error_message == "pull phase failed: HTTP 400"
    assert len(result.children) == 1
    assert fake_adapter.pushed == []
    assert len(audit_log) == 2


# ---------------------------------------------------------------------------
# Single-record ingest and background runs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ingest_record_uses_pull_rules(orchestrator, store, audit_log):
    result = await orchestrator.ingest_record(EntityType.CLIENT, client_record("ext-7", name="Hooked"))

    assert result.status == SyncLogStatus.SUCCESS
    assert [d.action for d in result.details] == ["created"]
    entry = await audit_log.get_log_entry(result.log_id)
    assert entry.trigger == SyncTrigger.WEBHOOK
    assert (await store.find_entity_by_external_id("fake", "ext-7", EntityType.CLIENT)).name == "Hooked"


@pytest.mark.asyncio
async def test_runner_returns_log_id_before_sync_completes(orchestrator, fake_adapter, audit_log):
    fake_adapter.pages = [[client_record("ext-1")]]
    runner = SyncRunner(orchestrator)

    log_id = await runner.start(EntityType.CLIENT, SyncOperation.PULL, trigger=SyncTrigger.SCHEDULED)

    entry = await runner.status(log_id)
    assert entry.status == SyncLogStatus.RUNNING
    assert entry.trigger == SyncTrigger.SCHEDULED
    assert runner.is_running(log_id)

    result = await runner.result(log_id)
    assert result.log_id == log_id
    assert (await audit_log.get_log_entry(log_id)).status == SyncLogStatus.SUCCESS
    assert not runner.is_running(log_id)
    with pytest.raises(KeyError):
        await runner.result(log_id)


@pytest.mark.asyncio
async def test_runner_cancel_stops_at_batch_boundary(orchestrator, fake_adapter, audit_log):
    fake_adapter.pages = [[client_record("a")], [client_record("b")], [client_record("c")]]
    runner = SyncRunner(orchestrator)

    log_id = await runner.start(EntityType.CLIENT, SyncOperation.PULL)
    assert runner.cancel(log_id) is True
    result = await runner.result(log_id)

    assert result.cancelled
    assert result.processed == 1
    assert fake_adapter.fetch_calls == 1
    entry = await audit_log.get_log_entry(log_id)
    assert entry.error_message == "Sync cancelled"
    assert entry.is_final
    assert runner.cancel(log_id) is False


@pytest.mark.asyncio
async def test_runner_shutdown_waits_for_tasks(orchestrator, fake_adapter):
    fake_adapter.pages = [[client_record("a")], [client_record("b")]]
    runner = SyncRunner(orchestrator)
    log_id = await runner.start(EntityType.CLIENT, SyncOperation.PULL)

    await runner.shutdown()
    await asyncio.sleep(0)

    assert not runner.is_running(log_id)
    entry = await orchestrator.audit_log.get_log_entry(log_id)
    assert entry.is_final


async def drain(runner, attempts=100):
    for _ in range(attempts):
        if runner.active_runs == 0:
            return
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_runner_releases_finished_runs_without_result_calls(orchestrator):
    runner = SyncRunner(orchestrator, keep_results=10)

    log_ids = [await runner.start(EntityType.CLIENT, SyncOperation.PULL) for _ in range(50)]
    await drain(runner)

    assert runner.active_runs == 0
    assert not any(runner.is_running(log_id) for log_id in log_ids)
    assert (await runner.result(log_ids[-1])).status == SyncLogStatus.SUCCESS
    with pytest.raises(KeyError):
        await runner.result(log_ids[0])


class FinalizeFailsAuditLog(InMemoryAuditLog):
    async def finalize_log_entry(self, log_id, *args, **kwargs):
        raise RuntimeError("audit store unavailable")


@pytest.mark.asyncio
async def test_runner_collects_crashed_task(fake_adapter, store):
    orchestrator = SyncOrchestrator(
        fake_adapter, DataMapper("fake"), store, FinalizeFailsAuditLog(), sleep=RecordingSleep()
    )
    runner = SyncRunner(orchestrator)

    log_id = await runner.start(EntityType.CLIENT, SyncOperation.PULL)
    await drain(runner)

    assert runner.active_runs == 0
    with pytest.raises(RuntimeError, match="audit store unavailable"):
        await runner.result(log_id)
