"""
InvoiceSync Sync Orchestrator — one logical sync attempt per call.

Drives an adapter + mapper + store for one entity type:
- Pull: cursor-paged fetch (retry-wrapped) -> inbound map/validate ->
  last-writer-wins upsert keyed by (platform, external_id)
- Push: dirty or unsynced local entities -> outbound map -> retry-wrapped upsert
- Bidirectional: pull then push, one child log per phase under a parent log

Record-level failures land in SyncResult.details. Attempt-level failures
(config, auth after refresh, exhausted fetch retries) end the attempt with a
failed log entry. Every log entry this module opens is finalized, including
on unexpected faults.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator
import asyncio
import logging
import time

from opentelemetry import trace
from pydantic import ValidationError as ModelValidationError

from sync_core.audit import AuditLog, SyncLogStatus, SyncOperation, SyncTrigger, status_from_counts
from sync_core.errors import AuthError, ConfigurationError, IntegrationError
from sync_core.integrations.adapter_base import ConnectionAdapter
from sync_core.integrations.canonical import CanonicalEntity, Direction, EntityType, LocalSyncState, to_canonical
from sync_core.integrations.mapper import DataMapper
from sync_core.resilience.quarantine import QuarantineQueue
from sync_core.resilience.retry import retry_async, try_with_retry
from sync_core.storage import EntityStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class RecordDetail:
    """Outcome for one record inside an attempt."""
    action: str  # created | updated | conflict | skipped | pushed | failed
    success: bool
    external_id: str | None = None
    local_id: str | None = None
    error: str | None = None
    phase: str = SyncOperation.PULL.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "external_id": self.external_id,
            "local_id": self.local_id,
            "error": self.error,
            "phase": self.phase,
        }


@dataclass
class SyncResult:
    log_id: str
    entity_type: str
    operation: str
    status: SyncLogStatus = SyncLogStatus.RUNNING
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    details: list[RecordDetail] = field(default_factory=list)
    error_message: str | None = None
    cancelled: bool = False
    duration_ms: int = 0
    children: list["SyncResult"] = field(default_factory=list)

    def record(self, detail: RecordDetail) -> None:
        self.details.append(detail)
        self.processed += 1
        if detail.success:
            self.succeeded += 1
        else:
            self.failed += 1

    def absorb(self, child: "SyncResult") -> None:
        self.children.append(child)
        self.details.extend(child.details)
        self.processed += child.processed
        self.succeeded += child.succeeded
        self.failed += child.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "entity_type": self.entity_type,
            "operation": self.operation,
            "status": SyncLogStatus(self.status).value,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error_message": self.error_message,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
            "details": [d.to_dict() for d in self.details],
            "children": [c.log_id for c in self.children],
        }


def _chunked(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def remote_wins(local: CanonicalEntity, remote_updated_at: datetime | None) -> bool:
    """
    Last-writer-wins for an existing local entity.

    The remote copy must be strictly newer than the last remote version we
    stored. If the local copy has unsynced edits, the remote copy must also be
    at least as new as the local edit (exact tie goes to remote).
    """
    remote_ts = _utc(remote_updated_at)
    if remote_ts is None:
        return False
    known = _utc(local.external_updated_at)
    local_ts = _utc(local.updated_at)

    if known is not None and remote_ts <= known:
        return False
    if local.dirty:
        return local_ts is None or remote_ts >= local_ts
    if known is None and local_ts is not None:
        return remote_ts > local_ts
    return True


class SyncOrchestrator:
    """Runs sync attempts for one integration."""

    def __init__(
        self,
        adapter: ConnectionAdapter,
        mapper: DataMapper,
        store: EntityStore,
        audit_log: AuditLog,
        quarantine: QuarantineQueue | None = None,
        sleep=asyncio.sleep,
    ):
        self.adapter = adapter
        self.mapper = mapper
        self.store = store
        self.audit_log = audit_log
        self.quarantine = quarantine
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max(1, adapter.config.max_concurrency))

    @property
    def config(self):
        return self.adapter.config

    @property
    def platform(self) -> str:
        return self.adapter.platform

    # --- Public API ---

    async def open_log(
        self,
        entity_type: EntityType | str,
        operation: SyncOperation | str,
        direction: Direction | str | None = None,
        trigger: SyncTrigger | str = SyncTrigger.MANUAL,
        parent_log_id: str | None = None,
    ) -> str:
        """Create the running log entry for an attempt that is about to start."""
        operation = SyncOperation(operation)
        return await self.audit_log.create_log_entry({
            "integration_id": self.config.integration_id,
            "platform": self.platform,
            "entity_type": EntityType(entity_type).value,
            "operation": operation,
            "direction": self._direction(operation, direction),
            "trigger": SyncTrigger(trigger),
            "status": SyncLogStatus.RUNNING,
            "parent_log_id": parent_log_id,
        })

    async def sync_entity(
        self,
        entity_type: EntityType | str,
        operation: SyncOperation | str,
        direction: Direction | str | None = None,
        options: dict[str, Any] | None = None,
        *,
        trigger: SyncTrigger | str = SyncTrigger.MANUAL,
        log_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """
        Run one sync attempt. Never raises for remote or record failures;
        the outcome is in the returned SyncResult and the finalized log.

        options: filter (dict), cursor (str), max_pages (int).
        """
        entity_type = EntityType(entity_type)
        operation = SyncOperation(operation)
        if log_id is None:
            log_id = await self.open_log(entity_type, operation, direction, trigger)
        return await self._execute(
            entity_type, operation, log_id, options or {}, SyncTrigger(trigger), cancel
        )

    async def ingest_record(
        self,
        entity_type: EntityType | str,
        record: dict[str, Any],
        trigger: SyncTrigger | str = SyncTrigger.WEBHOOK,
    ) -> SyncResult:
        """Single-record pull: same mapping, validation and conflict rules as a full pull."""
        entity_type = EntityType(entity_type)
        log_id = await self.open_log(entity_type, SyncOperation.PULL, Direction.INBOUND, trigger)
        return await self._execute(
            entity_type, SyncOperation.PULL, log_id, {}, SyncTrigger(trigger), None, records=[record]
        )

    # --- Attempt ---

    async def _execute(
        self,
        entity_type: EntityType,
        operation: SyncOperation,
        log_id: str,
        options: dict[str, Any],
        trigger: SyncTrigger,
        cancel: asyncio.Event | None,
        records: list[dict[str, Any]] | None = None,
    ) -> SyncResult:
        result = SyncResult(log_id=log_id, entity_type=entity_type.value, operation=operation.value)
        started = time.monotonic()
        logger.info(
            "[%s] %s %s sync started (log %s, trigger %s)",
            self.platform, entity_type.value, operation.value, log_id, trigger.value,
        )
        try:
            with tracer.start_as_current_span(f"sync.{operation.value}") as span:
                span.set_attribute("sync.platform", self.platform)
                span.set_attribute("sync.entity_type", entity_type.value)
                span.set_attribute("sync.log_id", log_id)
                self._preflight(entity_type)

                if records is not None:
                    await self._apply_inbound(entity_type, records, result, log_id)
                elif operation == SyncOperation.PULL:
                    await self._pull(entity_type, result, log_id, options, cancel)
                elif operation == SyncOperation.PUSH:
                    await self._push(entity_type, result, cancel)
                else:
                    await self._bidirectional(entity_type, result, log_id, options, trigger, cancel)

                span.set_attribute("sync.processed", result.processed)
                span.set_attribute("sync.failed", result.failed)
        except IntegrationError as exc:
            result.error_message = exc.message
            logger.error("[%s] %s sync aborted: %s", self.platform, operation.value, exc.message)
        except Exception as exc:
            result.error_message = f"Unexpected error: {exc}"
            logger.exception("[%s] %s sync crashed", self.platform, operation.value)
        finally:
            if result.error_message is None and cancel is not None and cancel.is_set():
                result.cancelled = True
                result.error_message = "Sync cancelled"

            if result.error_message and not result.cancelled:
                result.status = SyncLogStatus.FAILED
            else:
                result.status = status_from_counts(result.processed, result.succeeded, result.failed)
            result.duration_ms = int((time.monotonic() - started) * 1000)

            await self.audit_log.finalize_log_entry(
                log_id,
                status=result.status,
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                error_message=result.error_message,
                duration_ms=result.duration_ms,
            )

        logger.info(
            "[%s] %s %s sync finished: %s (%d processed, %d failed, %dms)",
            self.platform, entity_type.value, operation.value, result.status.value,
            result.processed, result.failed, result.duration_ms,
        )
        return result

    def _preflight(self, entity_type: EntityType) -> None:
        if not self.adapter.supports(entity_type):
            raise ConfigurationError(
                f"{self.platform} does not sync {entity_type.value} entities", platform=self.platform
            )
        self.config.validate()

    # --- Pull ---

    async def _pull(
        self,
        entity_type: EntityType,
        result: SyncResult,
        log_id: str,
        options: dict[str, Any],
        cancel: asyncio.Event | None,
    ) -> None:
        cursor = options.get("cursor")
        filters = options.get("filter")
        max_pages = options.get("max_pages")
        pages = 0

        while True:
            page = await retry_async(
                lambda: self.adapter.fetch_entities(
                    entity_type, filter=filters, cursor=cursor, limit=self.config.batch_size
                ),
                self.config.retry_policy,
                sleep=self._sleep,
            )
            pages += 1

            for index, chunk in enumerate(_chunked(page.records, self.config.batch_size)):
                if index:
                    if self._cancelled(cancel):
                        return
                    await self._sleep(self.config.batch_delay_seconds)
                await self._apply_inbound(entity_type, chunk, result, log_id)

            cursor = page.next_cursor
            if not cursor or (max_pages and pages >= max_pages) or self._cancelled(cancel):
                return
            await self._sleep(self.config.batch_delay_seconds)

    async def _apply_inbound(
        self,
        entity_type: EntityType,
        records: list[dict[str, Any]],
        result: SyncResult,
        log_id: str,
    ) -> None:
        batch = self.mapper.map_batch(records, entity_type, Direction.INBOUND)

        for failure in batch.failures:
            result.record(RecordDetail(
                action="failed",
                success=False,
                external_id=failure.external_id,
                error="; ".join(failure.errors),
            ))
            if self.quarantine is not None:
                self.quarantine.enqueue(
                    integration_id=self.config.integration_id,
                    platform=self.platform,
                    entity_type=entity_type.value,
                    payload=failure.raw,
                    errors=failure.errors,
                    external_id=failure.external_id,
                    log_id=log_id,
                )

        await self._bounded(
            result, (self._upsert_inbound(entity_type, item.data) for item in batch.mapped)
        )

    async def _upsert_inbound(self, entity_type: EntityType, mapped: dict[str, Any]) -> RecordDetail:
        data = dict(mapped)
        external_id = data.get("external_id")
        if not external_id:
            return RecordDetail(action="failed", success=False, error="Record has no external id")

        remote_updated_at = data.pop("updated_at", None)
        data.pop("created_at", None)

        local = await self.store.find_entity_by_external_id(self.platform, external_id, entity_type)
        if local is not None and not remote_wins(local, remote_updated_at):
            return RecordDetail(
                action="skipped", success=True, external_id=external_id, local_id=local.id
            )

        merged: dict[str, Any] = local.model_dump() if local is not None else {}
        extensions = {**merged.get("extensions", {}), **data.pop("extensions", {})}
        conflict = local is not None and local.dirty
        if conflict:
            # Unsynced local edits lose to the remote copy; keep what they were
            overwritten = {
                key: local_value
                for key, local_value in local.model_dump(mode="json").items()
                if key in data and merged.get(key) != data[key]
            }
            extensions["conflict_data"] = {
                "local_values": overwritten,
                "local_updated_at": local.updated_at.isoformat() if local.updated_at else None,
                "remote_updated_at": _utc(remote_updated_at).isoformat(),
            }
            logger.warning(
                "[%s] %s %s: remote copy overwrote unsynced local edits (%s)",
                self.platform, entity_type.value, external_id, ", ".join(sorted(overwritten)) or "no field changes",
            )
        merged.update(data)
        merged.update({
            "extensions": extensions,
            "platform": self.platform,
            "external_updated_at": remote_updated_at,
            "sync_status": LocalSyncState.SYNCED,
            "sync_error": None,
            "dirty": False,
            "updated_at": None,
        })

        try:
            entity = to_canonical(entity_type, merged)
        except ModelValidationError as exc:
            return RecordDetail(
                action="failed", success=False, external_id=external_id,
                local_id=local.id if local else None, error=str(exc),
            )

        stored = await self.store.upsert_local_entity(entity)
        if conflict:
            action = "conflict"
        else:
            action = "updated" if local is not None else "created"
        return RecordDetail(
            action=action,
            success=True,
            external_id=external_id,
            local_id=stored.id,
        )

    # --- Push ---

    async def _push(
        self,
        entity_type: EntityType,
        result: SyncResult,
        cancel: asyncio.Event | None,
    ) -> None:
        pending = await self.store.list_pending_push(self.platform, entity_type)
        for index, chunk in enumerate(_chunked(pending, self.config.batch_size)):
            if index:
                if self._cancelled(cancel):
                    return
                await self._sleep(self.config.batch_delay_seconds)
            await self._bounded(result, (self._push_one(entity_type, entity) for entity in chunk))

    async def _push_one(self, entity_type: EntityType, entity: CanonicalEntity) -> RecordDetail:
        local = entity.model_dump()
        errors = self.mapper.validate(local, entity_type)
        if errors:
            message = "; ".join(errors)
            await self.store.mark_sync_failed(entity.id, message)
            return RecordDetail(
                action="failed", success=False, local_id=entity.id,
                external_id=entity.external_id, error=message, phase=SyncOperation.PUSH.value,
            )

        payload = self.mapper.map(local, entity_type, Direction.OUTBOUND)
        external_id = entity.external_id if entity.platform == self.platform else None
        outcome = await try_with_retry(
            lambda: self.adapter.upsert_entity(entity_type, payload, external_id=external_id),
            self.config.retry_policy,
            sleep=self._sleep,
        )

        if outcome.ok:
            await self.store.mark_synced(entity.id, self.platform, outcome.value)
            return RecordDetail(
                action="pushed", success=True, local_id=entity.id,
                external_id=str(outcome.value), phase=SyncOperation.PUSH.value,
            )

        error = outcome.error
        if isinstance(error, (AuthError, ConfigurationError)):
            raise error
        message = error.message if isinstance(error, IntegrationError) else str(error)
        logger.warning("[%s] push of %s %s failed: %s", self.platform, entity_type.value, entity.id, message)
        await self.store.mark_sync_failed(entity.id, message)
        return RecordDetail(
            action="failed", success=False, local_id=entity.id,
            external_id=external_id, error=message, phase=SyncOperation.PUSH.value,
        )

    # --- Bidirectional ---

    async def _bidirectional(
        self,
        entity_type: EntityType,
        result: SyncResult,
        parent_log_id: str,
        options: dict[str, Any],
        trigger: SyncTrigger,
        cancel: asyncio.Event | None,
    ) -> None:
        for phase in (SyncOperation.PULL, SyncOperation.PUSH):
            if self._cancelled(cancel):
                return
            child_id = await self.open_log(
                entity_type, phase, trigger=trigger, parent_log_id=parent_log_id
            )
            child = await self._execute(entity_type, phase, child_id, options, trigger, cancel)
            result.absorb(child)
            if child.error_message and not child.cancelled:
                result.error_message = f"{phase.value} phase failed: {child.error_message}"
                return

    # --- Helpers ---

    async def _bounded(self, result: SyncResult, coros) -> None:
        """
        Run per-record coroutines under the concurrency limit and record
        every detail that completed. An attempt-level error from one record
        is raised only after all of its siblings have finished.
        """
        async def run(coro):
            async with self._semaphore:
                return await coro

        outcomes = await asyncio.gather(*(run(c) for c in coros), return_exceptions=True)
        first_error: BaseException | None = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                first_error = first_error or outcome
            else:
                result.record(outcome)
        if first_error is not None:
            raise first_error

    @staticmethod
    def _cancelled(cancel: asyncio.Event | None) -> bool:
        return cancel is not None and cancel.is_set()

    @staticmethod
    def _direction(operation: SyncOperation, direction: Direction | str | None) -> str | None:
        if direction is not None:
            return Direction(direction).value
        if operation == SyncOperation.PULL:
            return Direction.INBOUND.value
        if operation == SyncOperation.PUSH:
            return Direction.OUTBOUND.value
        return None
