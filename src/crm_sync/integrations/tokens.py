"""Token refresher -- the only path by which a worker obtains an access token.

Refresh is serialized per (tenant, provider). Inside one process an
asyncio.Lock per key orders concurrent callers; across processes a Redis
lock does the same. Whoever gets the lock second re-reads the credential
and, finding a newer version, returns it instead of spending the refresh
token a second time.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from src.crm_sync.core.monitoring import token_refreshes_total
from src.crm_sync.integrations.errors import AuthSyncError, TransientSyncError
from src.crm_sync.integrations.schemas import AccessToken, CredentialRecord, Provider

logger = structlog.get_logger(__name__)


def _to_access_token(credential: CredentialRecord) -> AccessToken:
    return AccessToken(
        token=credential.access_token,
        expires_at=credential.expires_at,
        extra=credential.extra,
        version=credential.version,
    )


class KeyedLock:
    """Mutual exclusion per key, in-process and (optionally) across processes.

    Args:
        redis: Redis client for the cross-process lock. None keeps it in-process.
        timeout: Seconds the Redis lock is held before it expires, and the
            longest a caller waits to acquire it.
    """

    def __init__(self, redis: aioredis.Redis | None = None, timeout: float = 30.0) -> None:
        self._redis = redis
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _local(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        async with self._local(key):
            if self._redis is None:
                yield
                return

            lock = self._redis.lock(
                f"sync:refresh:{key}",
                timeout=self._timeout,
                blocking_timeout=self._timeout,
            )
            acquired = await lock.acquire()
            if not acquired:
                raise TransientSyncError(f"Timed out waiting for refresh lock {key}")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # Expired while held; another process may already own it
                    logger.warning("token_refresher.lock_expired", key=key)


class TokenRefresher:
    """Hands out valid access tokens, refreshing them under a per-connection lock.

    Args:
        credentials: CredentialRepository.
        providers: ProviderRegistry used for the refresh exchange.
        connection_service: ConnectionService notified when a refresh token is revoked.
        lock: KeyedLock serializing refreshes.
        margin_seconds: Refresh when less than this much validity remains.
    """

    def __init__(
        self,
        credentials: Any,
        providers: Any,
        connection_service: Any,
        lock: KeyedLock | None = None,
        margin_seconds: float = 300.0,
    ) -> None:
        self._credentials = credentials
        self._providers = providers
        self._connection_service = connection_service
        self._lock = lock or KeyedLock()
        self._margin = timedelta(seconds=margin_seconds)

    def _needs_refresh(self, credential: CredentialRecord, now: datetime) -> bool:
        return credential.expires_at - now < self._margin

    async def _load(self, tenant_id: str, provider: Provider) -> CredentialRecord:
        credential = await self._credentials.get(tenant_id, provider)
        if credential is None:
            raise AuthSyncError(f"No {provider.value} credential for tenant {tenant_id}")
        return credential

    async def get_valid_token(self, tenant_id: str, provider: Provider) -> AccessToken:
        """Return an access token valid for at least the refresh margin.

        Raises:
            AuthSyncError: If there is no credential or the provider rejected
                the refresh token (the connection is then deactivated).
            TransientSyncError: If the refresh could not be completed now.
        """
        credential = await self._load(tenant_id, provider)
        if not self._needs_refresh(credential, datetime.now(timezone.utc)):
            return _to_access_token(credential)
        return await self._refresh(tenant_id, provider, credential.version, force=False)

    async def force_refresh(self, tenant_id: str, provider: Provider) -> AccessToken:
        """Refresh ahead of expiry regardless of the margin (scheduler use)."""
        credential = await self._load(tenant_id, provider)
        return await self._refresh(tenant_id, provider, credential.version, force=True)

    async def _refresh(
        self,
        tenant_id: str,
        provider: Provider,
        seen_version: int,
        force: bool,
    ) -> AccessToken:
        async with self._lock.hold(f"{tenant_id}:{provider.value}"):
            credential = await self._load(tenant_id, provider)
            if credential.version != seen_version:
                token_refreshes_total.labels(provider=provider.value, result="reused").inc()
                return _to_access_token(credential)
            if not force and not self._needs_refresh(credential, datetime.now(timezone.utc)):
                return _to_access_token(credential)

            client = self._providers.get(provider)
            try:
                grant = await client.refresh(credential)
            except AuthSyncError as exc:
                token_refreshes_total.labels(provider=provider.value, result="revoked").inc()
                logger.warning(
                    "token_refresher.revoked",
                    tenant_id=tenant_id,
                    provider=provider.value,
                    error=str(exc),
                )
                await self._connection_service.handle_auth_failure(tenant_id, provider, str(exc))
                raise
            except TransientSyncError:
                token_refreshes_total.labels(provider=provider.value, result="failed").inc()
                raise

            updated = await self._credentials.compare_and_swap(
                tenant_id, provider, credential.version, grant
            )
            if updated is None:
                # Reconnect replaced the credential while we were refreshing
                token_refreshes_total.labels(provider=provider.value, result="lost_swap").inc()
                latest = await self._load(tenant_id, provider)
                return _to_access_token(latest)

            token_refreshes_total.labels(provider=provider.value, result="refreshed").inc()
            logger.info(
                "token_refresher.refreshed",
                tenant_id=tenant_id,
                provider=provider.value,
                version=updated.version,
                expires_at=updated.expires_at.isoformat(),
            )
            return _to_access_token(updated)
