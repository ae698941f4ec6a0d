"""
Integration health checks.

Scores one integration 0-100 from a live connection probe and its recent
sync history:
    connected          40
    response time      20  (<1s 20, <5s 15, <10s 10)
    sync success rate  25  (>=95% 25, >=80% 20, >=60% 15, >=40% 10)
    last success age   15  (<1h 15, <6h 12, <24h 8, <72h 4)
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable
import logging
import time

from sync_core.audit import SyncLogEntry, SyncLogStatus
from sync_core.errors import IntegrationError
from sync_core.integrations.adapter_base import ConnectionAdapter

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class SyncStats:
    syncs_last_24h: int = 0
    syncs_last_7d: int = 0
    failed_last_24h: int = 0
    last_successful_sync: datetime | None = None

    @property
    def success_rate(self) -> float:
        if self.syncs_last_24h == 0:
            return 100.0
        return (self.syncs_last_24h - self.failed_last_24h) / self.syncs_last_24h * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncs_last_24h": self.syncs_last_24h,
            "syncs_last_7d": self.syncs_last_7d,
            "failed_last_24h": self.failed_last_24h,
            "success_rate": round(self.success_rate, 2),
            "last_successful_sync": (
                self.last_successful_sync.isoformat() if self.last_successful_sync else None
            ),
        }


@dataclass
class HealthReport:
    platform: str
    integration_id: str
    status: HealthStatus
    message: str
    score: int = 0
    connected: bool = False
    response_time_ms: float = 0.0
    sync_stats: SyncStats = field(default_factory=SyncStats)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    adapter: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "integration_id": self.integration_id,
            "status": self.status.value,
            "message": self.message,
            "score": self.score,
            "connected": self.connected,
            "response_time_ms": round(self.response_time_ms, 1),
            "sync_stats": self.sync_stats.to_dict(),
            "checked_at": self.checked_at.isoformat(),
            "adapter": self.adapter,
        }


def sync_statistics(logs: Iterable[SyncLogEntry], now: datetime | None = None) -> SyncStats:
    """Aggregate top-level (non-child) log entries."""
    now = now or datetime.now(timezone.utc)
    day_ago, week_ago = now - timedelta(hours=24), now - timedelta(days=7)
    stats = SyncStats()
    for entry in logs:
        if entry.parent_log_id:
            continue
        if entry.started_at >= week_ago:
            stats.syncs_last_7d += 1
        if entry.started_at >= day_ago:
            stats.syncs_last_24h += 1
            if entry.status == SyncLogStatus.FAILED:
                stats.failed_last_24h += 1
        if entry.status == SyncLogStatus.SUCCESS and entry.completed_at:
            if stats.last_successful_sync is None or entry.completed_at > stats.last_successful_sync:
                stats.last_successful_sync = entry.completed_at
    return stats


def calculate_health_score(
    connected: bool,
    response_time_ms: float,
    stats: SyncStats | None,
    now: datetime | None = None,
) -> int:
    score = 40 if connected else 0

    if response_time_ms < 1_000:
        score += 20
    elif response_time_ms < 5_000:
        score += 15
    elif response_time_ms < 10_000:
        score += 10

    if stats is not None:
        rate = stats.success_rate
        if rate >= 95:
            score += 25
        elif rate >= 80:
            score += 20
        elif rate >= 60:
            score += 15
        elif rate >= 40:
            score += 10

        if stats.last_successful_sync:
            now = now or datetime.now(timezone.utc)
            hours = (now - stats.last_successful_sync).total_seconds() / 3600
            if hours < 1:
                score += 15
            elif hours < 6:
                score += 12
            elif hours < 24:
                score += 8
            elif hours < 72:
                score += 4

    return min(100, max(0, score))


async def check_integration_health(
    adapter: ConnectionAdapter,
    recent_logs: Iterable[SyncLogEntry] = (),
) -> HealthReport:
    """Probe the connection and score the integration. Never raises for remote errors."""
    stats = sync_statistics(recent_logs)
    started = time.monotonic()
    error: str | None = None
    try:
        connected = await adapter.validate_connection()
        if not connected:
            error = "Authentication failed"
    except IntegrationError as exc:
        connected, error = False, exc.message
    response_time = (time.monotonic() - started) * 1000

    score = calculate_health_score(connected, response_time, stats)
    if not connected:
        status, message = HealthStatus.ERROR, error or "Connection failed"
    elif score < 50:
        status, message = HealthStatus.WARNING, "Integration performance is degraded"
    elif response_time > 10_000:
        status, message = HealthStatus.WARNING, "High response time detected"
    else:
        status, message = HealthStatus.HEALTHY, "Integration is functioning normally"

    if status != HealthStatus.HEALTHY:
        logger.warning("[%s] Health %s: %s", adapter.platform, status.value, message)

    return HealthReport(
        platform=adapter.platform,
        integration_id=adapter.integration_id,
        status=status,
        message=message,
        score=score,
        connected=connected,
        response_time_ms=response_time,
        sync_stats=stats,
        adapter=adapter.get_health().to_dict(),
    )
