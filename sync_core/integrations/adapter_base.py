"""
InvoiceSync Connection Adapter contract.

Every platform integration (CRM, project management) subclasses
ConnectionAdapter. Provides:
- Auth headers for API-key and OAuth2 platforms
- Transparent OAuth refresh on 401 with exactly one replay of the call
- HTTP status -> error classification (see sync_core.errors)
- Health tracking (latency, errors, auth failures)
- Standardized request/response envelope

Adapters only talk to the network. Persisting what they return is the
orchestrator's job. The httpx.AsyncClient is owned by the caller and passed
in at construction.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
import logging
import time

import httpx

from sync_core.config import AuthType, Credentials, IntegrationConfig, PlatformType
from sync_core.errors import AuthError, error_for_status
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.mapper import EntityMapping
from sync_core.resilience.retry import as_transient

if TYPE_CHECKING:
    from sync_core.integrations.oauth_manager import OAuthManager, OAuthProvider, TokenSet

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class AdapterRequest:
    """Standardized outbound request."""
    method: str  # GET, POST, PUT, PATCH, DELETE
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class AdapterResponse:
    """Standardized inbound response."""
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0
    platform: str = ""
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class FetchPage:
    """One page of remote records plus the cursor for the next page."""
    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass
class MutationIntent:
    """A change announced by a webhook, to be applied through the pull path."""
    entity_type: EntityType
    action: str = "upsert"  # upsert | delete
    external_id: str | None = None
    record: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Health tracking
# ---------------------------------------------------------------------------

@dataclass
class IntegrationHealth:
    """Request metrics for one adapter instance."""
    platform: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    auth_failures: int = 0
    token_refreshes: int = 0
    avg_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def record(self, latency_ms: float, success: bool, error: str | None = None) -> None:
        self.total_requests += 1
        self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / self.total_requests
        now = datetime.now(timezone.utc)
        if success:
            self.successful_requests += 1
            self.last_success = now
        else:
            self.failed_requests += 1
            self.last_failure = now
            self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "auth_failures": self.auth_failures,
            "token_refreshes": self.token_refreshes,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# ConnectionAdapter
# ---------------------------------------------------------------------------

class ConnectionAdapter(ABC):
    """
    Base class for all platform adapters.

    Subclasses set:
        platform: str                 — registry key
        platform_type: PlatformType   — crm | project_management
        auth_type: AuthType           — api_key | oauth2
        auth_check_path: str          — cheap authenticated GET
        oauth_provider                — OAuth2 platforms only
    """

    platform: str = ""
    platform_type: PlatformType = PlatformType.CRM
    auth_type: AuthType = AuthType.API_KEY
    auth_check_path: str = "/"
    supported_entities: tuple[EntityType, ...] = ()
    required_config: tuple[str, ...] = ()
    mapping_overrides: dict[EntityType, EntityMapping] = {}
    webhook_signature_header: str = "X-Signature"
    oauth_provider: OAuthProvider | None = None

    def __init__(
        self,
        config: IntegrationConfig,
        http_client: httpx.AsyncClient,
        oauth: OAuthManager | None = None,
    ):
        self.config = config
        self.http = http_client
        self.oauth = oauth
        if self.auth_type == AuthType.OAUTH2 and self.oauth is None:
            from sync_core.integrations.oauth_manager import OAuthManager

            self.oauth = OAuthManager(http_client)
        if self.oauth is not None and self.oauth_provider is not None:
            self.oauth.register_provider(self.oauth_provider)
        self._health = IntegrationHealth(platform=self.platform)

    # --- Identity ---

    @property
    def integration_id(self) -> str:
        return self.config.integration_id

    @property
    def base_url(self) -> str:
        return self.config.base_url

    def supports(self, entity_type: EntityType | str) -> bool:
        return EntityType(entity_type) in self.supported_entities

    # --- Auth ---

    def get_auth_headers(self) -> dict[str, str]:
        """Headers attached to every request. Override for non-bearer schemes."""
        creds = self.config.credentials
        if self.auth_type == AuthType.OAUTH2 and creds.access_token:
            return {"Authorization": f"Bearer {creds.access_token}"}
        if self.auth_type == AuthType.API_KEY and creds.api_key:
            return {"Authorization": f"Bearer {creds.api_key}"}
        return {}

    def get_auth_params(self) -> dict[str, str]:
        """Query parameters attached to every request (key-in-URL platforms)."""
        return {}

    async def authenticate(self) -> Credentials:
        """Prove the stored credentials work. Raises AuthError otherwise."""
        if self.auth_type == AuthType.OAUTH2:
            await self.oauth.ensure_valid(self.config)
        await self.request(AdapterRequest("GET", self.auth_check_path))
        return self.config.credentials

    async def validate_connection(self) -> bool:
        """False for rejected credentials; transport failures still raise."""
        try:
            await self.authenticate()
        except AuthError as exc:
            logger.warning("[%s] Connection validation failed: %s", self.platform, exc.message)
            return False
        return True

    # --- OAuth2 ---

    def authorization_url(self, state: str) -> str:
        self._require_oauth()
        return self.oauth.authorization_url(self.config, state)

    async def exchange_code(self, code: str, state: str) -> TokenSet:
        self._require_oauth()
        return await self.oauth.exchange_code(self.config, code, state)

    async def refresh(self) -> TokenSet:
        self._require_oauth()
        return await self.oauth.refresh(self.config)

    def _require_oauth(self) -> None:
        if self.auth_type != AuthType.OAUTH2 or self.oauth is None:
            raise AuthError(f"{self.platform} does not use OAuth2", platform=self.platform)

    # --- Data (implemented per platform) ---

    @abstractmethod
    async def fetch_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> FetchPage:
        """Fetch one page of remote records."""

    @abstractmethod
    async def upsert_entity(
        self,
        entity_type: EntityType,
        mapped_record: dict[str, Any],
        external_id: str | None = None,
    ) -> str:
        """Create or update a remote record; returns its external id."""

    async def fetch_entity(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None:
        """Fetch a single record by id. Used when a webhook carries only an id."""
        raise NotImplementedError(f"{self.platform} cannot fetch single {entity_type}")

    def receive_webhook(self, payload: Any) -> list[MutationIntent]:
        """Parse a verified webhook payload into mutation intents."""
        logger.info("[%s] Webhook received but not handled", self.platform)
        return []

    # --- Health ---

    def get_health(self) -> IntegrationHealth:
        return self._health

    # --- Core request ---

    async def request(self, req: AdapterRequest) -> AdapterResponse:
        """
        Execute one call: Auth -> Send -> (401 -> refresh -> replay once) -> Classify.

        Raises AuthError, TransientNetworkError or TerminalRemoteError for
        non-2xx outcomes. Retrying transient failures is the caller's job.
        """
        if self.auth_type == AuthType.OAUTH2:
            await self.oauth.ensure_valid(self.config)

        token_used = self.config.credentials.access_token
        resp, latency = await self._send(req)
        refreshed = False

        if resp.status_code == 401 and self.auth_type == AuthType.OAUTH2:
            logger.info("[%s] 401 on %s %s, refreshing token", self.platform, req.method, req.path)
            self._health.token_refreshes += 1
            await self.oauth.refresh(self.config, stale_token=token_used)
            resp, latency = await self._send(req)
            refreshed = True

        error = error_for_status(resp.status_code, resp.text, platform=self.platform)
        self._health.record(latency, error is None, error.message if error else None)
        if error is not None:
            if isinstance(error, AuthError):
                self._health.auth_failures += 1
            logger.warning(
                "[%s] %s %s -> %s", self.platform, req.method, req.path, resp.status_code
            )
            raise error

        return AdapterResponse(
            status_code=resp.status_code,
            data=self._decode(resp),
            headers=dict(resp.headers),
            latency_ms=latency,
            platform=self.platform,
            refreshed=refreshed,
        )

    async def _send(self, req: AdapterRequest) -> tuple[httpx.Response, float]:
        url = f"{self.base_url.rstrip('/')}/{req.path.lstrip('/')}"
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "InvoiceSync-Integration/1.0",
            **self.get_auth_headers(),
            **req.headers,
        }
        params = {**self.get_auth_params(), **req.params}

        start = time.monotonic()
        try:
            resp = await self.http.request(
                method=req.method,
                url=url,
                params=params or None,
                json=req.body,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TransportError as exc:
            latency = (time.monotonic() - start) * 1000
            self._health.record(latency, False, str(exc))
            raise as_transient(exc, self.platform) from exc
        return resp, (time.monotonic() - start) * 1000

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        if resp.headers.get("content-type", "").startswith("application/json"):
            return resp.json()
        return resp.text
