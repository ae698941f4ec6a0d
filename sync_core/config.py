"""Integration configuration.

One IntegrationConfig per connected platform. Credentials are the only
mutable part: the OAuth manager rewrites the token fields on refresh.
Everything else is treated as read-only by sync runs.

Usage::

    config = IntegrationConfig.from_env("hubspot")
    config.validate()
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sync_core.errors import ConfigurationError
from sync_core.resilience.retry import RetryPolicy


class AuthType(str, Enum):
    API_KEY = "api_key"
    OAUTH2 = "oauth2"


class PlatformType(str, Enum):
    CRM = "crm"
    PROJECT_MANAGEMENT = "project_management"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass
class Credentials:
    """API key or OAuth token set for one integration."""

    auth_type: AuthType = AuthType.API_KEY
    api_key: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None

    def missing_fields(self) -> list[str]:
        if self.auth_type == AuthType.API_KEY:
            return [] if self.api_key else ["api_key"]
        missing = [
            name for name in ("client_id", "client_secret")
            if not getattr(self, name)
        ]
        if not self.access_token and not self.refresh_token:
            missing.append("access_token")
        return missing


# ---------------------------------------------------------------------------
# Integration config
# ---------------------------------------------------------------------------

@dataclass
class IntegrationConfig:
    """Settings for one platform connection."""

    platform: str
    base_url: str
    credentials: Credentials = field(default_factory=Credentials)
    integration_id: str = ""
    platform_type: PlatformType = PlatformType.CRM
    timeout_ms: int = 30_000
    retry_attempts: int = 3
    retry_delay_ms: int = 1_000
    retry_multiplier: float = 2.0
    sync_interval_minutes: int = 15
    sync_enabled: bool = True
    webhook_secret: str | None = None

    # Batching
    batch_size: int = 100
    batch_delay_ms: int = 500
    max_concurrency: int = 4

    # Platform extras (Trello member token, HubSpot portal id, ...)
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.integration_id:
            self.integration_id = self.platform

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.retry_attempts),
            base_delay=self.retry_delay_ms / 1000,
            multiplier=self.retry_multiplier,
        )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def batch_delay_seconds(self) -> float:
        return self.batch_delay_ms / 1000

    def validate(self) -> None:
        """Raise ConfigurationError listing every missing required field."""
        missing = [name for name in ("platform", "base_url") if not getattr(self, name)]
        missing.extend(self.credentials.missing_fields())
        if self.batch_size < 1:
            missing.append("batch_size")
        if missing:
            raise ConfigurationError(
                f"Missing required configuration for {self.platform or '<unknown>'}: "
                f"{', '.join(missing)}",
                platform=self.platform,
            )

    def to_dict(self) -> dict[str, Any]:
        """Public view. Secrets are never included."""
        return {
            "integration_id": self.integration_id,
            "platform": self.platform,
            "platform_type": self.platform_type.value,
            "auth_type": self.credentials.auth_type.value,
            "base_url": self.base_url,
            "timeout_ms": self.timeout_ms,
            "retry_attempts": self.retry_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "sync_interval_minutes": self.sync_interval_minutes,
            "sync_enabled": self.sync_enabled,
            "token_expires_at": (
                self.credentials.expires_at.isoformat() if self.credentials.expires_at else None
            ),
        }

    @classmethod
    def from_env(
        cls,
        platform: str,
        prefix: str = "INTEGRATION_",
        defaults: dict[str, Any] | None = None,
    ) -> "IntegrationConfig":
        """Create config from environment variables.

        Example: INTEGRATION_HUBSPOT_API_KEY=pat-xxx
                 INTEGRATION_HUBSPOT_BASE_URL=https://api.hubapi.com
        """
        defaults = defaults or {}
        env_prefix = f"{prefix}{platform.upper()}_"

        def env(name: str, default: Any = None) -> Any:
            return os.getenv(f"{env_prefix}{name}", default)

        auth_type = AuthType(env("AUTH_TYPE", defaults.get("auth_type", AuthType.API_KEY.value)))
        credentials = Credentials(
            auth_type=auth_type,
            api_key=env("API_KEY"),
            access_token=env("ACCESS_TOKEN"),
            refresh_token=env("REFRESH_TOKEN"),
            client_id=env("CLIENT_ID"),
            client_secret=env("CLIENT_SECRET"),
            redirect_uri=env("REDIRECT_URI"),
        )

        options = dict(defaults.get("options", {}))
        for key in defaults.get("option_keys", ()):
            value = env(key.upper())
            if value:
                options[key] = value

        return cls(
            platform=platform,
            base_url=env("BASE_URL", defaults.get("base_url", "")),
            credentials=credentials,
            integration_id=env("INTEGRATION_ID", platform),
            platform_type=PlatformType(
                env("PLATFORM_TYPE", defaults.get("platform_type", PlatformType.CRM.value))
            ),
            timeout_ms=int(env("TIMEOUT_MS", 30_000)),
            retry_attempts=int(env("RETRY_ATTEMPTS", 3)),
            retry_delay_ms=int(env("RETRY_DELAY_MS", 1_000)),
            sync_interval_minutes=int(env("SYNC_INTERVAL_MINUTES", 15)),
            sync_enabled=str(env("SYNC_ENABLED", "true")).lower() == "true",
            webhook_secret=env("WEBHOOK_SECRET"),
            batch_size=int(env("BATCH_SIZE", 100)),
            batch_delay_ms=int(env("BATCH_DELAY_MS", 500)),
            max_concurrency=int(env("MAX_CONCURRENCY", 4)),
            options=options,
        )
