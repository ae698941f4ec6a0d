"""
InvoiceSync Quarantine — Invalid Records Are Never Dropped.

Records that fail mapping or validation during a sync are parked here with
their raw payload and the rules they violated, instead of aborting the
batch. Supports:
- Per-integration, per-entity-type isolation
- Resolution tracking (fixed upstream / discarded)
- Statistics for the health report
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


class QuarantineStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


@dataclass
class QuarantinedRecord:
    """A remote record that could not be mapped or validated."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    integration_id: str = ""
    platform: str = ""
    entity_type: str = ""
    external_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    log_id: str | None = None
    status: QuarantineStatus = QuarantineStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "platform": self.platform,
            "entity_type": self.entity_type,
            "external_id": self.external_id,
            "errors": list(self.errors),
            "log_id": self.log_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class QuarantineStats:
    integration_id: str
    total: int = 0
    pending: int = 0
    resolved: int = 0
    discarded: int = 0
    by_entity_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "total": self.total,
            "pending": self.pending,
            "resolved": self.resolved,
            "discarded": self.discarded,
            "by_entity_type": dict(self.by_entity_type),
        }


class QuarantineQueue:
    """In-memory quarantine. Replace backing store for production."""

    def __init__(self):
        self._records: dict[str, QuarantinedRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def enqueue(
        self,
        integration_id: str,
        platform: str,
        entity_type: str,
        payload: dict[str, Any],
        errors: list[str],
        external_id: str | None = None,
        log_id: str | None = None,
    ) -> QuarantinedRecord:
        record = QuarantinedRecord(
            integration_id=integration_id,
            platform=platform,
            entity_type=entity_type,
            external_id=external_id,
            payload=dict(payload),
            errors=list(errors),
            log_id=log_id,
        )
        self._records[record.id] = record
        return record

    def get(self, record_id: str) -> QuarantinedRecord | None:
        return self._records.get(record_id)

    def list_pending(
        self,
        integration_id: str | None = None,
        entity_type: str | None = None,
        limit: int = 50,
    ) -> list[QuarantinedRecord]:
        results = [r for r in self._records.values() if r.status == QuarantineStatus.PENDING]
        if integration_id:
            results = [r for r in results if r.integration_id == integration_id]
        if entity_type:
            results = [r for r in results if r.entity_type == entity_type]
        results.sort(key=lambda r: r.created_at)
        return results[:limit]

    def mark_resolved(self, record_id: str, resolved_by: str = "") -> bool:
        record = self._records.get(record_id)
        if not record:
            return False
        record.status = QuarantineStatus.RESOLVED
        record.resolved_by = resolved_by
        record.updated_at = datetime.now(timezone.utc)
        return True

    def mark_discarded(self, record_id: str, reason: str = "") -> bool:
        record = self._records.get(record_id)
        if not record:
            return False
        record.status = QuarantineStatus.DISCARDED
        if reason:
            record.errors.append(f"Discarded: {reason}")
        record.updated_at = datetime.now(timezone.utc)
        return True

    def get_stats(self, integration_id: str = "") -> QuarantineStats:
        records = list(self._records.values())
        if integration_id:
            records = [r for r in records if r.integration_id == integration_id]

        stats = QuarantineStats(integration_id=integration_id or "all")
        stats.total = len(records)
        stats.pending = sum(1 for r in records if r.status == QuarantineStatus.PENDING)
        stats.resolved = sum(1 for r in records if r.status == QuarantineStatus.RESOLVED)
        stats.discarded = sum(1 for r in records if r.status == QuarantineStatus.DISCARDED)
        for r in records:
            stats.by_entity_type[r.entity_type] = stats.by_entity_type.get(r.entity_type, 0) + 1
        return stats

    def purge_resolved(self, integration_id: str | None = None) -> int:
        to_remove = [
            rid for rid, r in self._records.items()
            if r.status != QuarantineStatus.PENDING
            and (integration_id is None or r.integration_id == integration_id)
        ]
        for rid in to_remove:
            del self._records[rid]
        return len(to_remove)
