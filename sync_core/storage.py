"""
InvoiceSync storage boundary.

The orchestrator never touches a database directly; it goes through an
EntityStore. InMemoryEntityStore is the dual-mode shim used by tests and
by deployments that have not wired a relational store yet.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional, Protocol
import asyncio
import uuid

from sync_core.integrations.canonical import CanonicalEntity, EntityType, LocalSyncState


class EntityStore(Protocol):
    async def find_entity_by_external_id(
        self, platform: str, external_id: str, entity_type: EntityType
    ) -> Optional[CanonicalEntity]: ...

    async def upsert_local_entity(self, entity: CanonicalEntity) -> CanonicalEntity: ...

    async def list_pending_push(
        self, platform: str, entity_type: EntityType
    ) -> list[CanonicalEntity]: ...

    async def mark_synced(
        self,
        entity_id: str,
        platform: str,
        external_id: str,
        external_updated_at: datetime | None = None,
    ) -> CanonicalEntity: ...

    async def mark_sync_failed(self, entity_id: str, error: str) -> CanonicalEntity: ...


class InMemoryEntityStore:
    """Dict-backed EntityStore. One (platform, entity_type, external_id) binding per entity."""

    def __init__(self):
        self._entities: dict[str, CanonicalEntity] = {}
        self._bindings: dict[tuple[str, str, str], str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, entity_id: str) -> Optional[CanonicalEntity]:
        return self._entities.get(entity_id)

    def all(self, entity_type: EntityType | None = None) -> list[CanonicalEntity]:
        return [
            e for e in self._entities.values()
            if entity_type is None or e.entity_type == EntityType(entity_type).value
        ]

    async def find_entity_by_external_id(
        self, platform: str, external_id: str, entity_type: EntityType
    ) -> Optional[CanonicalEntity]:
        entity_id = self._bindings.get((platform, EntityType(entity_type).value, str(external_id)))
        return self._entities.get(entity_id) if entity_id else None

    async def upsert_local_entity(self, entity: CanonicalEntity) -> CanonicalEntity:
        async with self._lock:
            key = self._binding_key(entity)
            if key and key in self._bindings and entity.id != self._bindings[key]:
                # Another local entity already owns this external id: update that one
                entity = entity.model_copy(update={"id": self._bindings[key]})

            now = datetime.now(timezone.utc)
            previous = self._entities.get(entity.id) if entity.id else None
            update = {
                "id": entity.id or str(uuid.uuid4()),
                "created_at": entity.created_at or (previous.created_at if previous else now),
                "updated_at": entity.updated_at or now,
            }
            stored = entity.model_copy(update=update)

            if previous is not None:
                old_key = self._binding_key(previous)
                if old_key and old_key != key:
                    self._bindings.pop(old_key, None)
            self._entities[stored.id] = stored
            if key:
                self._bindings[key] = stored.id
            return stored

    async def list_pending_push(
        self, platform: str, entity_type: EntityType
    ) -> list[CanonicalEntity]:
        entity_type = EntityType(entity_type).value
        return [
            e for e in self._entities.values()
            if e.entity_type == entity_type
            and e.platform in (None, platform)
            and (e.dirty or e.sync_status != LocalSyncState.SYNCED.value)
        ]

    async def mark_synced(
        self,
        entity_id: str,
        platform: str,
        external_id: str,
        external_updated_at: datetime | None = None,
    ) -> CanonicalEntity:
        entity = self._require(entity_id)
        updated = entity.model_copy(update={
            "platform": platform,
            "external_id": str(external_id),
            "external_updated_at": external_updated_at or entity.external_updated_at,
            "sync_status": LocalSyncState.SYNCED.value,
            "sync_error": None,
            "dirty": False,
        })
        async with self._lock:
            old_key = self._binding_key(entity)
            if old_key:
                self._bindings.pop(old_key, None)
            self._entities[entity_id] = updated
            self._bindings[self._binding_key(updated)] = entity_id
        return updated

    async def mark_sync_failed(self, entity_id: str, error: str) -> CanonicalEntity:
        entity = self._require(entity_id)
        updated = entity.model_copy(update={
            "sync_status": LocalSyncState.FAILED.value,
            "sync_error": error,
        })
        self._entities[entity_id] = updated
        return updated

    def _require(self, entity_id: str) -> CanonicalEntity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise KeyError(f"Unknown entity: {entity_id}")
        return entity

    @staticmethod
    def _binding_key(entity: CanonicalEntity) -> tuple[str, str, str] | None:
        if not entity.platform or not entity.external_id:
            return None
        return (entity.platform, EntityType(entity.entity_type).value, str(entity.external_id))
