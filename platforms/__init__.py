"""Platform integrations.

Each platform package holds an adapter (network I/O) and its field
mappings. build_registry() wires them into an AdapterRegistry;
PLATFORM_DEFAULTS feeds IntegrationConfig.from_env().
"""
from sync_core.config import AuthType, PlatformType
from sync_core.integrations.registry import AdapterRegistry

from platforms.hubspot.adapter import HubSpotAdapter
from platforms.salesforce.adapter import SalesforceAdapter
from platforms.trello.adapter import TrelloAdapter

ADAPTERS = (HubSpotAdapter, SalesforceAdapter, TrelloAdapter)

PLATFORM_DEFAULTS = {
    "hubspot": {
        "base_url": "https://api.hubapi.com",
        "auth_type": AuthType.API_KEY.value,
        "platform_type": PlatformType.CRM.value,
        "option_keys": ("portal_id",),
    },
    "salesforce": {
        "base_url": "https://login.salesforce.com",
        "auth_type": AuthType.OAUTH2.value,
        "platform_type": PlatformType.CRM.value,
        "option_keys": ("instance_url",),
    },
    "trello": {
        "base_url": "https://api.trello.com/1",
        "auth_type": AuthType.API_KEY.value,
        "platform_type": PlatformType.PROJECT_MANAGEMENT.value,
        "option_keys": ("token", "board_id", "list_id"),
    },
}


def build_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    for adapter_cls in ADAPTERS:
        registry.register(adapter_cls)
    return registry
