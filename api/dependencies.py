"""Runtime wiring shared by the API routers.

IntegrationHub owns the long-lived collaborators (HTTP client, audit log,
entity store, quarantine) and one PlatformRuntime per connected platform.
Routers reach it through get_hub().
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import HTTPException, Request

from sync_core.audit import AuditLog, InMemoryAuditLog
from sync_core.config import IntegrationConfig
from sync_core.errors import ConfigurationError
from sync_core.integrations.adapter_base import ConnectionAdapter
from sync_core.integrations.registry import AdapterRegistry
from sync_core.integrations.webhooks import WebhookReceiver
from sync_core.resilience.quarantine import QuarantineQueue
from sync_core.storage import EntityStore, InMemoryEntityStore
from sync_core.sync.orchestrator import SyncOrchestrator
from sync_core.sync.runner import SyncRunner

logger = logging.getLogger(__name__)


@dataclass
class PlatformRuntime:
    adapter: ConnectionAdapter
    orchestrator: SyncOrchestrator
    runner: SyncRunner
    receiver: WebhookReceiver


class IntegrationHub:
    """Per-process registry of connected platforms."""

    def __init__(
        self,
        registry: AdapterRegistry,
        http_client: httpx.AsyncClient,
        audit_log: Optional[AuditLog] = None,
        store: Optional[EntityStore] = None,
        quarantine: Optional[QuarantineQueue] = None,
    ):
        self.registry = registry
        self.http = http_client
        self.audit_log = audit_log or InMemoryAuditLog()
        self.store = store or InMemoryEntityStore()
        self.quarantine = quarantine or QuarantineQueue()
        self._platforms: dict[str, PlatformRuntime] = {}

    def connect(self, config: IntegrationConfig) -> PlatformRuntime:
        """Create the adapter, orchestrator, runner and webhook receiver for one platform."""
        adapter = self.registry.create(config, self.http)
        orchestrator = SyncOrchestrator(
            adapter,
            self.registry.mapper_for(config.platform),
            self.store,
            self.audit_log,
            quarantine=self.quarantine,
        )
        runtime = PlatformRuntime(
            adapter=adapter,
            orchestrator=orchestrator,
            runner=SyncRunner(orchestrator),
            receiver=WebhookReceiver(adapter, orchestrator),
        )
        self._platforms[config.platform] = runtime
        return runtime

    def connect_from_env(self, platforms: list[str], defaults: dict[str, dict]) -> None:
        """Connect every listed platform whose environment config is complete."""
        for platform in platforms:
            config = IntegrationConfig.from_env(platform, defaults=defaults.get(platform))
            try:
                self.connect(config)
            except ConfigurationError as exc:
                logger.warning("Skipping %s: %s", platform, exc.message)

    def get(self, platform: str) -> Optional[PlatformRuntime]:
        return self._platforms.get(platform)

    @property
    def platforms(self) -> list[str]:
        return sorted(self._platforms)

    async def close(self) -> None:
        for runtime in self._platforms.values():
            await runtime.runner.shutdown()


def enabled_platforms() -> list[str]:
    """Platforms listed in INTEGRATIONS (comma-separated)."""
    raw = os.getenv("INTEGRATIONS", "")
    return [p.strip().lower() for p in raw.split(",") if p.strip()]


def get_hub(request: Request) -> IntegrationHub:
    return request.app.state.hub


def require_platform(platform: str, request: Request) -> PlatformRuntime:
    runtime = get_hub(request).get(platform)
    if runtime is None:
        raise HTTPException(status_code=404, detail=f"Integration not connected: {platform}")
    return runtime
