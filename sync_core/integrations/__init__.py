"""
InvoiceSync Integrations — Platform Adapter Framework.

Provides platform-agnostic integration infrastructure:
- ConnectionAdapter: per-platform contract with auth, 401 refresh-and-replay, health
- OAuthManager: OAuth2 lifecycle (authorize, exchange, single-flight refresh, revoke)
- DataMapper: platform <-> canonical field mapping with coercion and validation
- AdapterRegistry: platform id -> adapter class, fail-fast config checks
- WebhookReceiver: signed inbound events routed through the sync path
"""
from sync_core.integrations.adapter_base import (
    AdapterRequest,
    AdapterResponse,
    ConnectionAdapter,
    FetchPage,
    IntegrationHealth,
    MutationIntent,
)
from sync_core.integrations.canonical import (
    CanonicalEntity,
    Client,
    Direction,
    EntityType,
    Invoice,
    LocalSyncState,
    Project,
    Task,
    to_canonical,
)
from sync_core.integrations.health import (
    HealthReport,
    HealthStatus,
    calculate_health_score,
    check_integration_health,
)
from sync_core.integrations.mapper import (
    BatchMapResult,
    DataMapper,
    EntityMapping,
    MappingRule,
    TRANSFORMS,
)
from sync_core.integrations.oauth_manager import (
    OAuthManager,
    OAuthProvider,
    TokenSet,
)
from sync_core.integrations.registry import AdapterRegistry
from sync_core.integrations.webhooks import (
    WebhookReceiver,
    WebhookResult,
    sign_payload,
    verify_signature,
)

__all__ = [
    # Adapter
    "AdapterRequest",
    "AdapterResponse",
    "ConnectionAdapter",
    "FetchPage",
    "IntegrationHealth",
    "MutationIntent",
    # Canonical
    "CanonicalEntity",
    "Client",
    "Direction",
    "EntityType",
    "Invoice",
    "LocalSyncState",
    "Project",
    "Task",
    "to_canonical",
    # Health
    "HealthReport",
    "HealthStatus",
    "calculate_health_score",
    "check_integration_health",
    # Mapper
    "BatchMapResult",
    "DataMapper",
    "EntityMapping",
    "MappingRule",
    "TRANSFORMS",
    # OAuth
    "OAuthManager",
    "OAuthProvider",
    "TokenSet",
    # Registry
    "AdapterRegistry",
    # Webhooks
    "WebhookReceiver",
    "WebhookResult",
    "sign_payload",
    "verify_signature",
]
