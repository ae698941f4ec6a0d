"""
InvoiceSync Audit Log — one entry per sync attempt.

Lifecycle: create_log_entry() before any work (status running), then
finalize_log_entry() exactly once with the outcome. A finalized entry is
immutable; finalizing it again raises.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
import uuid


class SyncLogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


FINAL_STATUSES = frozenset({SyncLogStatus.SUCCESS, SyncLogStatus.PARTIAL, SyncLogStatus.FAILED})


class SyncOperation(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class LogAlreadyFinalized(RuntimeError):
    """finalize_log_entry() called on an entry that already has an outcome."""


def status_from_counts(processed: int, succeeded: int, failed: int) -> SyncLogStatus:
    """success iff nothing failed; failed iff nothing succeeded; partial otherwise."""
    if failed == 0:
        return SyncLogStatus.SUCCESS
    if succeeded == 0:
        return SyncLogStatus.FAILED
    return SyncLogStatus.PARTIAL


@dataclass(frozen=True)
class SyncLogEntry:
    id: str
    integration_id: str
    platform: str
    entity_type: str
    operation: SyncOperation
    direction: str | None = None
    trigger: SyncTrigger = SyncTrigger.MANUAL
    status: SyncLogStatus = SyncLogStatus.RUNNING
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    parent_log_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "platform": self.platform,
            "entity_type": self.entity_type,
            "operation": SyncOperation(self.operation).value,
            "direction": self.direction,
            "trigger": SyncTrigger(self.trigger).value,
            "status": SyncLogStatus(self.status).value,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "parent_log_id": self.parent_log_id,
            "metadata": self.metadata,
        }


class AuditLog(Protocol):
    """Persistence boundary for sync attempt logs."""

    async def create_log_entry(self, fields: dict[str, Any]) -> str: ...

    async def finalize_log_entry(
        self,
        log_id: str,
        status: SyncLogStatus,
        processed: int,
        succeeded: int,
        failed: int,
        error_message: str | None = None,
        duration_ms: int | None = None,
    ) -> SyncLogEntry: ...

    async def get_log_entry(self, log_id: str) -> Optional[SyncLogEntry]: ...

    async def list_log_entries(
        self, integration_id: str | None = None, limit: int = 50
    ) -> list[SyncLogEntry]: ...


class InMemoryAuditLog:
    """Dict-backed AuditLog for tests and single-process deployments."""

    def __init__(self):
        self._entries: dict[str, SyncLogEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def create_log_entry(self, fields: dict[str, Any]) -> str:
        log_id = fields.get("id") or str(uuid.uuid4())
        entry = SyncLogEntry(
            id=log_id,
            integration_id=fields["integration_id"],
            platform=fields.get("platform", ""),
            entity_type=str(fields["entity_type"]),
            operation=SyncOperation(fields["operation"]),
            direction=fields.get("direction"),
            trigger=SyncTrigger(fields.get("trigger", SyncTrigger.MANUAL)),
            status=SyncLogStatus(fields.get("status", SyncLogStatus.RUNNING)),
            parent_log_id=fields.get("parent_log_id"),
            metadata=dict(fields.get("metadata") or {}),
        )
        self._entries[log_id] = entry
        return log_id

    async def finalize_log_entry(
        self,
        log_id: str,
        status: SyncLogStatus,
        processed: int,
        succeeded: int,
        failed: int,
        error_message: str | None = None,
        duration_ms: int | None = None,
    ) -> SyncLogEntry:
        entry = self._entries.get(log_id)
        if entry is None:
            raise KeyError(f"Unknown sync log: {log_id}")
        if entry.is_final:
            raise LogAlreadyFinalized(f"Sync log {log_id} is already {entry.status.value}")

        now = datetime.now(timezone.utc)
        final = replace(
            entry,
            status=SyncLogStatus(status),
            processed=processed,
            succeeded=succeeded,
            failed=failed,
            error_message=error_message,
            completed_at=now,
            duration_ms=(
                duration_ms if duration_ms is not None
                else int((now - entry.started_at).total_seconds() * 1000)
            ),
        )
        self._entries[log_id] = final
        return final

    async def get_log_entry(self, log_id: str) -> Optional[SyncLogEntry]:
        return self._entries.get(log_id)

    async def list_log_entries(
        self, integration_id: str | None = None, limit: int = 50
    ) -> list[SyncLogEntry]:
        entries = list(self._entries.values())
        if integration_id:
            entries = [e for e in entries if e.integration_id == integration_id]
        return sorted(entries, key=lambda e: e.started_at, reverse=True)[:limit]
