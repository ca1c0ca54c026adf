"""OAuth authorization-code flow for connecting a tenant to a provider."""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_sync.config import Settings
from src.crm_sync.core.security import create_oauth_state, decode_oauth_state
from src.crm_sync.integrations.schemas import AccessToken, ConnectionRecord, Provider

logger = structlog.get_logger(__name__)


class OAuthService:
    """Builds consent URLs and completes callbacks.

    Args:
        providers: ProviderRegistry.
        connection_service: ConnectionService that stores the credential and connection.
        settings: Application settings (redirect URI base).
    """

    def __init__(self, providers: Any, connection_service: Any, settings: Settings) -> None:
        self._providers = providers
        self._connection_service = connection_service
        self._settings = settings

    def authorize_url(self, tenant_id: str, provider: Provider) -> str:
        client = self._providers.get(provider)
        state = create_oauth_state(tenant_id, provider.value)
        return client.authorize_url(state, self._settings.redirect_uri(provider.value))

    async def complete(self, provider: Provider, code: str, state: str) -> ConnectionRecord:
        """Exchange the code and (re)connect the tenant named in ``state``.

        Raises:
            ValueError: If the state is invalid or expired.
            AuthSyncError: If the provider rejects the code.
        """
        tenant_id = decode_oauth_state(state, provider.value)
        client = self._providers.get(provider)

        grant = await client.exchange_code(code, self._settings.redirect_uri(provider.value))
        account = await client.fetch_account(
            AccessToken(token=grant.access_token, expires_at=grant.expires_at, extra=grant.extra)
        )
        connection = await self._connection_service.connect(tenant_id, provider, grant, account)
        logger.info(
            "oauth.completed",
            tenant_id=tenant_id,
            provider=provider.value,
            remote_account=account,
        )
        return connection
