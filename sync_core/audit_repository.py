"""SQL-backed AuditLog over SQLAlchemy async sessions."""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sync_core.audit import (
    LogAlreadyFinalized,
    SyncLogEntry,
    SyncLogStatus,
    SyncOperation,
    SyncTrigger,
    FINAL_STATUSES,
)
from sync_core.database import get_session_context
from sync_core.models.sync_log import SyncLogRecord


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_entry(row: SyncLogRecord) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(row.id),
        integration_id=row.integration_id,
        platform=row.platform,
        entity_type=row.entity_type,
        operation=SyncOperation(row.operation),
        direction=row.direction,
        trigger=SyncTrigger(row.trigger),
        status=SyncLogStatus(row.status),
        processed=row.processed,
        succeeded=row.succeeded,
        failed=row.failed,
        started_at=_utc(row.started_at),
        completed_at=_utc(row.completed_at),
        duration_ms=row.duration_ms,
        error_message=row.error_message,
        parent_log_id=str(row.parent_log_id) if row.parent_log_id else None,
        metadata=dict(row.metadata_ or {}),
    )


class SqlAuditLog:
    """AuditLog persisted in the sync_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_log_entry(self, fields: dict[str, Any]) -> str:
        parent = fields.get("parent_log_id")
        row = SyncLogRecord(
            id=uuid.UUID(fields["id"]) if fields.get("id") else uuid.uuid4(),
            integration_id=fields["integration_id"],
            platform=fields.get("platform", ""),
            entity_type=str(fields["entity_type"]),
            operation=SyncOperation(fields["operation"]).value,
            direction=fields.get("direction"),
            trigger=SyncTrigger(fields.get("trigger", SyncTrigger.MANUAL)).value,
            status=SyncLogStatus(fields.get("status", SyncLogStatus.RUNNING)).value,
            started_at=datetime.now(timezone.utc),
            parent_log_id=uuid.UUID(parent) if parent else None,
            metadata_=dict(fields.get("metadata") or {}),
        )
        async with get_session_context(self.session_factory) as session:
            session.add(row)
        return str(row.id)

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
        async with get_session_context(self.session_factory) as session:
            row = await session.get(SyncLogRecord, uuid.UUID(log_id), with_for_update=True)
            if row is None:
                raise KeyError(f"Unknown sync log: {log_id}")
            if SyncLogStatus(row.status) in FINAL_STATUSES:
                raise LogAlreadyFinalized(f"Sync log {log_id} is already {row.status}")

            now = datetime.now(timezone.utc)
            row.status = SyncLogStatus(status).value
            row.processed = processed
            row.succeeded = succeeded
            row.failed = failed
            row.error_message = error_message
            row.completed_at = now
            row.duration_ms = (
                duration_ms if duration_ms is not None
                else int((now - _utc(row.started_at)).total_seconds() * 1000)
            )
            await session.flush()
            return _to_entry(row)

    async def get_log_entry(self, log_id: str) -> Optional[SyncLogEntry]:
        try:
            key = uuid.UUID(log_id)
        except ValueError:
            return None
        async with get_session_context(self.session_factory) as session:
            row = await session.get(SyncLogRecord, key)
            return _to_entry(row) if row else None

    async def list_log_entries(
        self, integration_id: str | None = None, limit: int = 50
    ) -> list[SyncLogEntry]:
        stmt = select(SyncLogRecord).order_by(SyncLogRecord.started_at.desc()).limit(limit)
        if integration_id:
            stmt = stmt.where(SyncLogRecord.integration_id == integration_id)
        async with get_session_context(self.session_factory) as session:
            result = await session.execute(stmt)
            return [_to_entry(row) for row in result.scalars().all()]
