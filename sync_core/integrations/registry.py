"""
InvoiceSync Adapter Registry — platform id -> adapter class.

- Register adapter classes at import/boot time
- Create configured instances with fail-fast config validation
- List supported platforms (optionally filtered by platform type)
"""
from __future__ import annotations
from typing import Optional
import logging

import httpx

from sync_core.config import IntegrationConfig, PlatformType
from sync_core.errors import ConfigurationError
from sync_core.integrations.adapter_base import ConnectionAdapter
from sync_core.integrations.mapper import DataMapper
from sync_core.integrations.oauth_manager import OAuthManager

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Central registry for platform adapters."""

    def __init__(self):
        self._adapters: dict[str, type[ConnectionAdapter]] = {}

    def register(self, adapter_cls: type[ConnectionAdapter]) -> type[ConnectionAdapter]:
        """Register an adapter class under its `platform` id. Usable as a decorator."""
        if not adapter_cls.platform:
            raise ConfigurationError(f"{adapter_cls.__name__} has no platform id")
        self._adapters[adapter_cls.platform] = adapter_cls
        return adapter_cls

    def deregister(self, platform: str):
        self._adapters.pop(platform, None)

    def get(self, platform: str) -> Optional[type[ConnectionAdapter]]:
        return self._adapters.get(platform)

    def is_supported(self, platform: str) -> bool:
        return platform in self._adapters

    def supported_platforms(self, platform_type: PlatformType | None = None) -> list[str]:
        return sorted(
            name for name, cls in self._adapters.items()
            if platform_type is None or cls.platform_type == platform_type
        )

    def validate_config(self, config: IntegrationConfig) -> None:
        """Raise ConfigurationError before any network call if config is incomplete."""
        adapter_cls = self._adapters.get(config.platform)
        if adapter_cls is None:
            raise ConfigurationError(
                f"Unsupported platform: {config.platform}. "
                f"Supported: {', '.join(self.supported_platforms())}",
                platform=config.platform,
            )
        if config.credentials.auth_type != adapter_cls.auth_type:
            raise ConfigurationError(
                f"{config.platform} requires {adapter_cls.auth_type.value} credentials",
                platform=config.platform,
            )

        missing = [] if config.base_url else ["base_url"]
        missing.extend(config.credentials.missing_fields())
        missing.extend(key for key in adapter_cls.required_config if not config.options.get(key))
        if config.batch_size < 1:
            missing.append("batch_size")
        if missing:
            raise ConfigurationError(
                f"Missing required configuration for {config.platform}: {', '.join(missing)}",
                platform=config.platform,
            )

    def create(
        self,
        config: IntegrationConfig,
        http_client: httpx.AsyncClient,
        oauth: OAuthManager | None = None,
    ) -> ConnectionAdapter:
        """Validate config and instantiate the platform's adapter."""
        self.validate_config(config)
        adapter = self._adapters[config.platform](config, http_client, oauth=oauth)
        logger.info("Created %s adapter for integration %s", config.platform, config.integration_id)
        return adapter

    def mapper_for(self, platform: str) -> DataMapper:
        """DataMapper with the platform's mapping overrides applied."""
        adapter_cls = self._adapters.get(platform)
        overrides = adapter_cls.mapping_overrides if adapter_cls else None
        return DataMapper(platform, overrides)

    @property
    def adapter_count(self) -> int:
        return len(self._adapters)
