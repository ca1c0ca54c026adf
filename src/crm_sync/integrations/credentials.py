"""Credential store -- versioned OAuth tokens per (tenant, provider).

Three write paths, each bumping ``version``:
- replace(): reconnect writes a brand new token set
- compare_and_swap(): refresh persists a rotated pair only if nobody else
  has written since the refresher read ``expected_version``
- revoke(): disconnect blanks the tokens but keeps the row, so a later
  reconnect continues the version sequence instead of restarting at 1

Readers always see a complete token set because each write is a single row
update.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.integrations.models import CredentialModel
from src.crm_sync.integrations.schemas import CredentialRecord, Provider, TokenGrant

logger = structlog.get_logger(__name__)


def _model_to_credential(model: CredentialModel) -> CredentialRecord:
    return CredentialRecord(
        tenant_id=str(model.tenant_id),
        provider=Provider(model.provider),
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        expires_at=model.expires_at,
        extra=model.extra or {},
        version=model.version,
        updated_at=model.updated_at,
    )


class CredentialRepository:
    """Async access to integration_credentials.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str, provider: Provider) -> CredentialRecord | None:
        """Live credential for a connection; revoked rows read as absent."""
        async for session in self._session_factory():
            result = await session.execute(
                select(CredentialModel).where(
                    CredentialModel.tenant_id == uuid.UUID(tenant_id),
                    CredentialModel.provider == provider.value,
                    CredentialModel.revoked_at.is_(None),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_credential(model) if model else None

    async def replace(
        self, tenant_id: str, provider: Provider, grant: TokenGrant
    ) -> CredentialRecord:
        """Write a fresh token set on (re)connect, bumping the version."""
        stmt = pg_insert(CredentialModel).values(
            id=uuid.uuid4(),
            tenant_id=uuid.UUID(tenant_id),
            provider=provider.value,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            extra=grant.extra,
            version=1,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_credential_tenant_provider",
            set_={
                "access_token": stmt.excluded.access_token,
                "refresh_token": stmt.excluded.refresh_token,
                "expires_at": stmt.excluded.expires_at,
                "extra": stmt.excluded.extra,
                "version": CredentialModel.__table__.c.version + 1,
                "revoked_at": None,
                "updated_at": func.now(),
            },
        ).returning(CredentialModel)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            logger.info(
                "credentials.replaced",
                tenant_id=tenant_id,
                provider=provider.value,
                version=model.version,
            )
            return _model_to_credential(model)

    async def compare_and_swap(
        self,
        tenant_id: str,
        provider: Provider,
        expected_version: int,
        grant: TokenGrant,
    ) -> CredentialRecord | None:
        """Persist a refreshed token pair if the stored version is unchanged.

        Returns the new record, or None when another writer got there first.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(CredentialModel)
                .where(
                    CredentialModel.tenant_id == uuid.UUID(tenant_id),
                    CredentialModel.provider == provider.value,
                    CredentialModel.version == expected_version,
                    CredentialModel.revoked_at.is_(None),
                )
                .values(
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token,
                    expires_at=grant.expires_at,
                    extra=grant.extra,
                    version=expected_version + 1,
                )
                .returning(CredentialModel)
            )
            model = result.scalar_one_or_none()
            await session.commit()
            return _model_to_credential(model) if model else None

    async def revoke(self, tenant_id: str, provider: Provider) -> bool:
        """Blank the tokens of a disconnected connection and bump the version.

        A refresh that read the credential before the disconnect then fails
        its compare-and-swap even after a reconnect.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(CredentialModel)
                .where(
                    CredentialModel.tenant_id == uuid.UUID(tenant_id),
                    CredentialModel.provider == provider.value,
                    CredentialModel.revoked_at.is_(None),
                )
                .values(
                    access_token="",
                    refresh_token="",
                    extra={},
                    version=CredentialModel.version + 1,
                    revoked_at=datetime.now(timezone.utc),
                )
                .returning(CredentialModel.version)
            )
            version = result.scalar_one_or_none()
            await session.commit()
            if version is not None:
                logger.info(
                    "credentials.revoked",
                    tenant_id=tenant_id,
                    provider=provider.value,
                    version=version,
                )
            return version is not None

    async def list_expiring(self, before: datetime) -> list[CredentialRecord]:
        """Live credentials whose access token expires before ``before``."""
        async for session in self._session_factory():
            result = await session.execute(
                select(CredentialModel).where(
                    CredentialModel.expires_at < before,
                    CredentialModel.revoked_at.is_(None),
                )
            )
            return [_model_to_credential(m) for m in result.scalars().all()]
