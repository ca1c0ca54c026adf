"""Provider registry -- one adapter instance per Provider, built once at startup."""

from __future__ import annotations

import httpx

from src.crm_sync.config import Settings
from src.crm_sync.integrations.providers.base import ProviderClient
from src.crm_sync.integrations.providers.bullhorn import BullhornClient
from src.crm_sync.integrations.providers.hubspot import HubSpotClient
from src.crm_sync.integrations.schemas import Provider


class ProviderRegistry:
    """Lookup of provider adapters by Provider enum."""

    def __init__(self, clients: list[ProviderClient] | None = None) -> None:
        self._clients: dict[Provider, ProviderClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: ProviderClient) -> None:
        self._clients[client.provider] = client

    def get(self, provider: Provider) -> ProviderClient:
        """Return the adapter for ``provider``.

        Raises:
            ValueError: If no adapter is registered.
        """
        try:
            return self._clients[provider]
        except KeyError:
            raise ValueError(f"No adapter registered for provider '{provider.value}'")

    def __contains__(self, provider: object) -> bool:
        return provider in self._clients

    def __len__(self) -> int:
        return len(self._clients)


def build_default_registry(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Registry with every built-in adapter."""
    return ProviderRegistry(
        [
            HubSpotClient(settings, transport=transport),
            BullhornClient(settings, transport=transport),
        ]
    )
