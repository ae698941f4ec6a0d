"""
InvoiceSync OAuth2 Lifecycle Manager.

Centralized management for OAuth2 flows:
- Provider registration (authorize URL, token URL, scopes)
- Authorization URL with caller-supplied anti-forgery state
- Authorization code exchange (state must round-trip unchanged)
- Token refresh, single-flighted per integration
- Token revocation

Tokens live on IntegrationConfig.credentials; this manager rewrites them in
place after exchange and refresh.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode
import logging

import httpx

from sync_core.config import IntegrationConfig
from sync_core.errors import AuthError, ConfigurationError, TransientNetworkError, error_for_status
from sync_core.resilience.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# Refresh this long before actual expiry
EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class TokenSet:
    """Access/refresh token pair returned by a token endpoint."""
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scopes: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= (self.expires_at - EXPIRY_SKEW)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_type": self.token_type,
            "scopes": self.scopes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_expired": self.is_expired,
        }


@dataclass
class OAuthProvider:
    """OAuth2 endpoints for one platform. Client id/secret come from the integration."""
    name: str
    authorize_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)
    revoke_url: str | None = None
    default_expires_in: int = 3600
    # Token-response fields copied into IntegrationConfig.options (e.g. instance_url)
    extra_fields: tuple[str, ...] = ()


class OAuthManager:
    """Manages OAuth2 flows across providers and integrations."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http = http_client
        self._providers: dict[str, OAuthProvider] = {}
        self._states: dict[str, str] = {}  # state -> integration_id
        self._flights = SingleFlight()

    def register_provider(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider

    def _provider(self, config: IntegrationConfig) -> OAuthProvider:
        provider = self._providers.get(config.platform)
        if not provider:
            raise ConfigurationError(f"Unknown OAuth provider: {config.platform}", platform=config.platform)
        return provider

    # --- Authorization ---

    def authorization_url(self, config: IntegrationConfig, state: str) -> str:
        """Build the consent URL. `state` is opaque and must come back unchanged."""
        if not state:
            raise ConfigurationError("OAuth state is required", platform=config.platform)
        provider = self._provider(config)
        creds = config.credentials
        if not creds.client_id or not creds.redirect_uri:
            raise ConfigurationError(
                f"Missing required configuration for {config.platform}: client_id, redirect_uri",
                platform=config.platform,
            )

        self._states[state] = config.integration_id
        params = {
            "response_type": "code",
            "client_id": creds.client_id,
            "redirect_uri": creds.redirect_uri,
            "scope": " ".join(provider.scopes),
            "state": state,
        }
        return f"{provider.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, config: IntegrationConfig, code: str, state: str) -> TokenSet:
        """Exchange an authorization code. Unknown or foreign state -> AuthError."""
        owner = self._states.pop(state, None) if state else None
        if owner != config.integration_id:
            raise AuthError("OAuth state mismatch", platform=config.platform)

        provider = self._provider(config)
        creds = config.credentials
        data = await self._token_request(config, provider, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": creds.redirect_uri or "",
            "client_id": creds.client_id or "",
            "client_secret": creds.client_secret or "",
        })
        token = self._store(config, provider, data)
        logger.info("[%s] OAuth code exchanged for integration %s", config.platform, config.integration_id)
        return token

    # --- Refresh ---

    async def ensure_valid(self, config: IntegrationConfig) -> None:
        """Refresh ahead of a call if the stored token is missing or expired."""
        creds = config.credentials
        expired = creds.expires_at is not None and datetime.now(timezone.utc) >= creds.expires_at - EXPIRY_SKEW
        if (not creds.access_token or expired) and creds.refresh_token:
            await self.refresh(config, stale_token=creds.access_token)

    async def refresh(self, config: IntegrationConfig, stale_token: str | None = None) -> TokenSet:
        """
        Refresh the integration's token.

        Concurrent callers share one in-flight request. A caller holding a
        `stale_token` that was already replaced gets the current token back
        without another round-trip.
        """
        creds = config.credentials
        if stale_token is not None and creds.access_token and creds.access_token != stale_token:
            return self._current(config)
        return await self._flights.do(config.integration_id, lambda: self._refresh(config))

    async def _refresh(self, config: IntegrationConfig) -> TokenSet:
        provider = self._provider(config)
        creds = config.credentials
        if not creds.refresh_token:
            raise AuthError("No refresh token available", platform=config.platform)

        data = await self._token_request(config, provider, {
            "grant_type": "refresh_token",
            "refresh_token": creds.refresh_token,
            "client_id": creds.client_id or "",
            "client_secret": creds.client_secret or "",
        })
        token = self._store(config, provider, data)
        logger.info("[%s] OAuth token refreshed for integration %s", config.platform, config.integration_id)
        return token

    # --- Revocation ---

    async def revoke(self, config: IntegrationConfig) -> bool:
        """Revoke remotely (best effort) and clear stored tokens."""
        provider = self._provider(config)
        creds = config.credentials
        if not creds.access_token and not creds.refresh_token:
            return False

        if provider.revoke_url:
            try:
                await self.http.post(
                    provider.revoke_url,
                    data={"token": creds.refresh_token or creds.access_token},
                    timeout=config.timeout_seconds,
                )
            except httpx.TransportError as exc:
                logger.warning("[%s] Token revocation request failed: %s", config.platform, exc)

        creds.access_token = None
        creds.refresh_token = None
        creds.expires_at = None
        return True

    # --- Internals ---

    async def _token_request(
        self, config: IntegrationConfig, provider: OAuthProvider, form: dict[str, str]
    ) -> dict[str, Any]:
        try:
            resp = await self.http.post(provider.token_url, data=form, timeout=config.timeout_seconds)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Token endpoint unreachable: {exc}", platform=config.platform) from exc

        error = error_for_status(resp.status_code, resp.text, platform=config.platform)
        if error is not None:
            if resp.status_code in (400, 401, 403):
                # invalid_grant and friends: the refresh token itself is dead
                raise AuthError(f"Token request rejected: {error.message}", platform=config.platform)
            raise error
        return resp.json()

    def _store(self, config: IntegrationConfig, provider: OAuthProvider, data: dict[str, Any]) -> TokenSet:
        if "access_token" not in data:
            raise AuthError("Token response without access_token", platform=config.platform)

        expires_in = int(data.get("expires_in") or provider.default_expires_in)
        scope = data.get("scope", "")
        token = TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or config.credentials.refresh_token,
            token_type=data.get("token_type", "Bearer"),
            scopes=scope.split() if isinstance(scope, str) else list(scope),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

        creds = config.credentials
        creds.access_token = token.access_token
        creds.refresh_token = token.refresh_token
        creds.expires_at = token.expires_at
        for name in provider.extra_fields:
            if data.get(name):
                config.options[name] = data[name]
        return token

    @staticmethod
    def _current(config: IntegrationConfig) -> TokenSet:
        creds = config.credentials
        return TokenSet(
            access_token=creds.access_token or "",
            refresh_token=creds.refresh_token,
            expires_at=creds.expires_at,
        )
