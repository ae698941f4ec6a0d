"""
InvoiceSync canonical entities.

Platform-agnostic local representation of the objects we sync. Every
variant carries the sync bookkeeping fields (platform binding, remote
timestamp, dirty flag) plus an open `extensions` map for platform extras.
"""
from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    CLIENT = "client"
    INVOICE = "invoice"
    PROJECT = "project"
    TASK = "task"


class Direction(str, Enum):
    INBOUND = "inbound"    # platform -> local
    OUTBOUND = "outbound"  # local -> platform


class LocalSyncState(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class CanonicalEntity(BaseModel):
    """Fields shared by every synced entity."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str | None = None
    entity_type: EntityType
    platform: str | None = None
    external_id: str | None = None
    external_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    sync_status: LocalSyncState = LocalSyncState.PENDING
    sync_error: str | None = None
    dirty: bool = False
    extensions: dict[str, Any] = Field(default_factory=dict)


class Client(CanonicalEntity):
    entity_type: EntityType = EntityType.CLIENT
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    website: str | None = None
    address: str | None = None
    notes: str | None = None


class Invoice(CanonicalEntity):
    entity_type: EntityType = EntityType.INVOICE
    invoice_number: str | None = None
    client_name: str | None = None
    amount: Decimal | None = None
    currency: str = "EUR"
    status: str = "draft"
    issue_date: date | None = None
    due_date: date | None = None
    description: str | None = None


class Project(CanonicalEntity):
    entity_type: EntityType = EntityType.PROJECT
    name: str | None = None
    description: str | None = None
    status: str = "active"
    start_date: date | None = None
    end_date: date | None = None
    client_id: str | None = None


class Task(CanonicalEntity):
    entity_type: EntityType = EntityType.TASK
    title: str | None = None
    description: str | None = None
    status: str = "todo"
    priority: str = "medium"
    due_date: date | None = None
    assignee: str | None = None
    project_id: str | None = None


ENTITY_MODELS: dict[EntityType, type[CanonicalEntity]] = {
    EntityType.CLIENT: Client,
    EntityType.INVOICE: Invoice,
    EntityType.PROJECT: Project,
    EntityType.TASK: Task,
}


def to_canonical(entity_type: EntityType | str, data: dict[str, Any]) -> CanonicalEntity:
    """Build the typed entity for `entity_type` from a mapped dict."""
    model = ENTITY_MODELS[EntityType(entity_type)]
    payload = {k: v for k, v in data.items() if k != "entity_type"}
    return model.model_validate(payload)
