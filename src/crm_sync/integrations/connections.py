"""Integration connection lifecycle.

A connection is created when OAuth completes, deactivated on disconnect or
when the provider rejects its refresh token, and never deleted. Its
webhook_token is generated once and survives reconnects so the URL
registered with the provider keeps working.

Deactivation abandons queued work: every job for the (tenant, provider) is
drained from the queue and dead-lettered (reason ``skipped`` on disconnect,
``auth`` on a revoked credential). Workers re-check the connection before
their external call, so in-flight jobs stop too.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.core.security import generate_routing_token
from src.crm_sync.integrations.models import ConnectionModel
from src.crm_sync.integrations.schemas import (
    ConnectionOverview,
    ConnectionRecord,
    ConnectionStatus,
    DeadLetterReason,
    Provider,
    TokenGrant,
)

logger = structlog.get_logger(__name__)

AUTH_REVOKED = "auth_revoked"
USER_DISCONNECTED = "user_disconnected"


def _model_to_connection(model: ConnectionModel) -> ConnectionRecord:
    return ConnectionRecord(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=Provider(model.provider),
        status=ConnectionStatus(model.status),
        remote_account=model.remote_account or {},
        webhook_token=model.webhook_token,
        connected_at=model.connected_at,
        disconnected_at=model.disconnected_at,
        disconnect_reason=model.disconnect_reason,
        last_sync_at=model.last_sync_at,
        webhook_last_received_at=model.webhook_last_received_at,
    )


class ConnectionRepository:
    """Async access to integration_connections.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str, provider: Provider) -> ConnectionRecord | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConnectionModel).where(
                    ConnectionModel.tenant_id == uuid.UUID(tenant_id),
                    ConnectionModel.provider == provider.value,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_connection(model) if model else None

    async def get_by_webhook_token(self, webhook_token: str) -> ConnectionRecord | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConnectionModel).where(ConnectionModel.webhook_token == webhook_token)
            )
            model = result.scalar_one_or_none()
            return _model_to_connection(model) if model else None

    async def list_for_tenant(self, tenant_id: str) -> list[ConnectionRecord]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConnectionModel)
                .where(ConnectionModel.tenant_id == uuid.UUID(tenant_id))
                .order_by(ConnectionModel.provider)
            )
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def list_connected(self, tenant_id: str) -> list[ConnectionRecord]:
        connections = await self.list_for_tenant(tenant_id)
        return [c for c in connections if c.is_connected]

    async def upsert_connected(
        self,
        tenant_id: str,
        provider: Provider,
        remote_account: dict[str, Any],
    ) -> ConnectionRecord:
        """Create the connection, or reactivate it keeping its webhook token."""
        now = datetime.now(timezone.utc)
        stmt = pg_insert(ConnectionModel).values(
            id=uuid.uuid4(),
            tenant_id=uuid.UUID(tenant_id),
            provider=provider.value,
            status=ConnectionStatus.CONNECTED.value,
            remote_account=remote_account,
            webhook_token=generate_routing_token(),
            connected_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_connection_tenant_provider",
            set_={
                "status": ConnectionStatus.CONNECTED.value,
                "remote_account": stmt.excluded.remote_account,
                "connected_at": now,
                "disconnected_at": None,
                "disconnect_reason": None,
                "updated_at": now,
            },
        ).returning(ConnectionModel)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            return _model_to_connection(model)

    async def mark_disconnected(
        self, tenant_id: str, provider: Provider, reason: str
    ) -> ConnectionRecord | None:
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            result = await session.execute(
                update(ConnectionModel)
                .where(
                    ConnectionModel.tenant_id == uuid.UUID(tenant_id),
                    ConnectionModel.provider == provider.value,
                )
                .values(
                    status=ConnectionStatus.DISCONNECTED.value,
                    disconnected_at=now,
                    disconnect_reason=reason,
                )
                .returning(ConnectionModel)
            )
            model = result.scalar_one_or_none()
            await session.commit()
            return _model_to_connection(model) if model else None

    async def touch_webhook_received(self, connection_id: str, at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ConnectionModel)
                .where(ConnectionModel.id == uuid.UUID(connection_id))
                .values(webhook_last_received_at=at)
            )
            await session.commit()

    async def touch_last_sync(self, tenant_id: str, provider: Provider, at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ConnectionModel)
                .where(
                    ConnectionModel.tenant_id == uuid.UUID(tenant_id),
                    ConnectionModel.provider == provider.value,
                )
                .values(last_sync_at=at)
            )
            await session.commit()


class ConnectionService:
    """Connect / disconnect / auth-failure transitions.

    Args:
        connections: ConnectionRepository.
        credentials: CredentialRepository.
        queue: SyncQueueRepository (drained on deactivation).
        dead_letters: DeadLetterRepository (receives drained jobs).
    """

    def __init__(self, connections: Any, credentials: Any, queue: Any, dead_letters: Any) -> None:
        self._connections = connections
        self._credentials = credentials
        self._queue = queue
        self._dead_letters = dead_letters

    async def is_connected(self, tenant_id: str, provider: Provider) -> bool:
        connection = await self._connections.get(tenant_id, provider)
        return connection is not None and connection.is_connected

    async def connect(
        self,
        tenant_id: str,
        provider: Provider,
        grant: TokenGrant,
        remote_account: dict[str, Any],
    ) -> ConnectionRecord:
        """Store a fresh credential and (re)activate the connection."""
        await self._credentials.replace(tenant_id, provider, grant)
        connection = await self._connections.upsert_connected(tenant_id, provider, remote_account)
        logger.info(
            "connection.connected",
            tenant_id=tenant_id,
            provider=provider.value,
            connection_id=connection.id,
        )
        return connection

    async def _deactivate(
        self,
        tenant_id: str,
        provider: Provider,
        reason: str,
        dead_letter_reason: DeadLetterReason,
        error: str,
    ) -> ConnectionRecord | None:
        connection = await self._connections.mark_disconnected(tenant_id, provider, reason)
        await self._credentials.revoke(tenant_id, provider)
        jobs = await self._queue.drain(tenant_id, provider)
        abandoned = await self._dead_letters.record_many(jobs, dead_letter_reason, error)
        logger.warning(
            "connection.deactivated",
            tenant_id=tenant_id,
            provider=provider.value,
            reason=reason,
            abandoned_jobs=abandoned,
        )
        return connection

    async def disconnect(
        self, tenant_id: str, provider: Provider, reason: str = USER_DISCONNECTED
    ) -> ConnectionRecord | None:
        """User-initiated disconnect. Queued jobs are abandoned as skipped."""
        return await self._deactivate(
            tenant_id,
            provider,
            reason,
            DeadLetterReason.SKIPPED,
            "connection disconnected",
        )

    async def handle_auth_failure(self, tenant_id: str, provider: Provider, error: str) -> None:
        """Provider rejected the credential: disconnect and dead-letter everything queued."""
        await self._deactivate(tenant_id, provider, AUTH_REVOKED, DeadLetterReason.AUTH, error)

    async def overview(self, tenant_id: str) -> list[ConnectionOverview]:
        """Connection status and outstanding dead-letter count per provider."""
        connections = await self._connections.list_for_tenant(tenant_id)
        counts = await self._dead_letters.counts_by_provider(tenant_id)
        return [
            ConnectionOverview(
                provider=c.provider,
                status=c.display_status,
                connected_at=c.connected_at,
                disconnected_at=c.disconnected_at,
                disconnect_reason=c.disconnect_reason,
                last_sync_at=c.last_sync_at,
                webhook_last_received_at=c.webhook_last_received_at,
                dead_letter_count=counts.get(c.provider, 0),
            )
            for c in connections
        ]
