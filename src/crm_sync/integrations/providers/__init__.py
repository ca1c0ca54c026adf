"""External CRM/ATS provider adapters."""

from __future__ import annotations

from src.crm_sync.integrations.providers.base import ProviderClient
from src.crm_sync.integrations.providers.bullhorn import BullhornClient
from src.crm_sync.integrations.providers.hubspot import HubSpotClient
from src.crm_sync.integrations.providers.registry import ProviderRegistry, build_default_registry

__all__ = [
    "BullhornClient",
    "HubSpotClient",
    "ProviderClient",
    "ProviderRegistry",
    "build_default_registry",
]
