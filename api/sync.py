"""Sync trigger, log polling and health endpoints.

A sync request returns 202 with the log id as soon as the attempt is
scheduled; clients poll /sync-logs/{log_id} until the status is final.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from api.dependencies import PlatformRuntime, get_hub, require_platform
from sync_core.audit import SyncOperation, SyncTrigger
from sync_core.integrations.canonical import Direction, EntityType
from sync_core.integrations.health import check_integration_health

router = APIRouter()


class SyncRequest(BaseModel):
    entity_type: EntityType
    operation: SyncOperation = SyncOperation.PULL
    direction: Optional[Direction] = None
    trigger: SyncTrigger = SyncTrigger.MANUAL
    options: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Integrations
# ============================================================================

@router.get("/integrations")
async def list_integrations(request: Request):
    hub = get_hub(request)
    return {
        "connected": [hub.get(p).adapter.config.to_dict() for p in hub.platforms],
        "supported": hub.registry.supported_platforms(),
    }


@router.post("/integrations/{platform}/sync", status_code=202)
async def start_sync(
    body: SyncRequest,
    runtime: PlatformRuntime = Depends(require_platform),
):
    log_id = await runtime.runner.start(
        body.entity_type,
        body.operation,
        body.direction,
        body.options,
        trigger=body.trigger,
    )
    return {"log_id": log_id, "status": "running"}


@router.get("/integrations/{platform}/health")
async def integration_health(
    request: Request,
    runtime: PlatformRuntime = Depends(require_platform),
):
    logs = await get_hub(request).audit_log.list_log_entries(
        integration_id=runtime.adapter.integration_id, limit=200
    )
    report = await check_integration_health(runtime.adapter, logs)
    return report.to_dict()


@router.get("/integrations/{platform}/quarantine")
async def list_quarantined(
    request: Request,
    runtime: PlatformRuntime = Depends(require_platform),
    entity_type: Optional[EntityType] = None,
    limit: int = Query(50, ge=1, le=500),
):
    queue = get_hub(request).quarantine
    records = queue.list_pending(
        integration_id=runtime.adapter.integration_id,
        entity_type=entity_type.value if entity_type else None,
        limit=limit,
    )
    return {"records": [r.to_dict() for r in records], "stats": queue.get_stats(runtime.adapter.integration_id).to_dict()}


# ============================================================================
# Sync logs
# ============================================================================

@router.get("/sync-logs")
async def list_sync_logs(
    request: Request,
    integration_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
):
    entries = await get_hub(request).audit_log.list_log_entries(integration_id=integration_id, limit=limit)
    return {"logs": [e.to_dict() for e in entries]}


@router.get("/sync-logs/{log_id}")
async def get_sync_log(log_id: str, request: Request):
    entry = await get_hub(request).audit_log.get_log_entry(log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Sync log not found: {log_id}")
    return entry.to_dict()


@router.post("/sync-logs/{log_id}/cancel")
async def cancel_sync(log_id: str, request: Request):
    hub = get_hub(request)
    for platform in hub.platforms:
        if hub.get(platform).runner.cancel(log_id):
            return {"log_id": log_id, "cancelled": True}
    raise HTTPException(status_code=409, detail=f"Sync {log_id} is not running")
