"""Identity mapping store -- local id <-> remote id per (tenant, provider, entity type).

The mapping is also the loop-prevention anchor. Every successful sync
records its direction and time; a change travelling the other way inside
the echo window is treated as the reflection of that sync, not as a new
edit (see is_echo()).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.integrations.errors import ValidationSyncError
from src.crm_sync.integrations.models import ObjectMappingModel
from src.crm_sync.integrations.schemas import (
    EntityType,
    MappingRecord,
    Provider,
    SyncDirection,
)

logger = structlog.get_logger(__name__)


def is_echo(
    mapping: MappingRecord | None,
    direction: SyncDirection,
    now: datetime,
    window_seconds: float,
) -> bool:
    """True when a change going ``direction`` reflects a sync that just went the other way."""
    if mapping is None or mapping.last_synced_at is None:
        return False
    if mapping.last_sync_direction != direction.opposite:
        return False
    return now - mapping.last_synced_at <= timedelta(seconds=window_seconds)


def _model_to_mapping(model: ObjectMappingModel) -> MappingRecord:
    """Convert ObjectMappingModel to MappingRecord schema."""
    return MappingRecord(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=Provider(model.provider),
        entity_type=EntityType(model.entity_type),
        local_id=model.local_id,
        remote_id=model.remote_id,
        last_synced_at=model.last_synced_at,
        last_seen_remote_modified_at=model.last_seen_remote_modified_at,
        last_sync_direction=(
            SyncDirection(model.last_sync_direction) if model.last_sync_direction else None
        ),
        last_sync_error=model.last_sync_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class MappingRepository:
    """Async access to object_mappings.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def resolve(
        self,
        tenant_id: str,
        provider: Provider,
        entity_type: EntityType,
        *,
        local_id: str | None = None,
        remote_id: str | None = None,
    ) -> MappingRecord | None:
        """Find a mapping by exactly one of local_id / remote_id."""
        if (local_id is None) == (remote_id is None):
            raise ValueError("resolve() needs exactly one of local_id or remote_id")

        stmt = select(ObjectMappingModel).where(
            ObjectMappingModel.tenant_id == uuid.UUID(tenant_id),
            ObjectMappingModel.provider == provider.value,
            ObjectMappingModel.entity_type == entity_type.value,
        )
        if local_id is not None:
            stmt = stmt.where(ObjectMappingModel.local_id == local_id)
        else:
            stmt = stmt.where(ObjectMappingModel.remote_id == remote_id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None

    async def upsert(
        self,
        tenant_id: str,
        provider: Provider,
        entity_type: EntityType,
        local_id: str,
        remote_id: str,
        direction: SyncDirection,
        remote_modified_at: datetime | None = None,
        synced_at: datetime | None = None,
    ) -> MappingRecord:
        """Create or refresh the mapping for a local record after a successful sync.

        Raises:
            ValidationSyncError: If the remote id is already mapped to a
                different local record.
        """
        synced_at = synced_at or datetime.now(timezone.utc)
        table = ObjectMappingModel.__table__
        stmt = pg_insert(ObjectMappingModel).values(
            id=uuid.uuid4(),
            tenant_id=uuid.UUID(tenant_id),
            provider=provider.value,
            entity_type=entity_type.value,
            local_id=local_id,
            remote_id=remote_id,
            last_synced_at=synced_at,
            last_seen_remote_modified_at=remote_modified_at,
            last_sync_direction=direction.value,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_mapping_local",
            set_={
                "remote_id": stmt.excluded.remote_id,
                "last_synced_at": stmt.excluded.last_synced_at,
                "last_sync_direction": stmt.excluded.last_sync_direction,
                "last_seen_remote_modified_at": func.coalesce(
                    stmt.excluded.last_seen_remote_modified_at,
                    table.c.last_seen_remote_modified_at,
                ),
                "last_sync_error": None,
                "updated_at": func.now(),
            },
        ).returning(ObjectMappingModel)

        async for session in self._session_factory():
            try:
                result = await session.execute(stmt)
                model = result.scalar_one()
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationSyncError(
                    f"{provider.value} {entity_type.value} {remote_id} is already mapped "
                    f"to another local record",
                ) from exc
            logger.debug(
                "mapping.upserted",
                tenant_id=tenant_id,
                provider=provider.value,
                entity_type=entity_type.value,
                local_id=local_id,
                remote_id=remote_id,
                direction=direction.value,
            )
            return _model_to_mapping(model)

    async def mark_direction(
        self,
        mapping_id: str,
        direction: SyncDirection,
        at: datetime,
    ) -> None:
        """Stamp a mapping as just synced in ``direction`` before the write happens."""
        async for session in self._session_factory():
            await session.execute(
                update(ObjectMappingModel)
                .where(ObjectMappingModel.id == uuid.UUID(mapping_id))
                .values(last_sync_direction=direction.value, last_synced_at=at)
            )
            await session.commit()

    async def note_remote_seen(self, mapping_id: str, remote_modified_at: datetime | None) -> None:
        """Advance last_seen_remote_modified_at without treating the event as a change."""
        if remote_modified_at is None:
            return
        table = ObjectMappingModel.__table__
        async for session in self._session_factory():
            await session.execute(
                update(ObjectMappingModel)
                .where(ObjectMappingModel.id == uuid.UUID(mapping_id))
                .values(
                    last_seen_remote_modified_at=func.greatest(
                        func.coalesce(table.c.last_seen_remote_modified_at, remote_modified_at),
                        remote_modified_at,
                    )
                )
            )
            await session.commit()

    async def record_error(
        self,
        tenant_id: str,
        provider: Provider,
        entity_type: EntityType,
        error: str,
        *,
        local_id: str | None = None,
        remote_id: str | None = None,
    ) -> bool:
        """Store the last sync error on an existing mapping. Returns False if unmapped."""
        stmt = update(ObjectMappingModel).where(
            ObjectMappingModel.tenant_id == uuid.UUID(tenant_id),
            ObjectMappingModel.provider == provider.value,
            ObjectMappingModel.entity_type == entity_type.value,
        )
        if local_id is not None:
            stmt = stmt.where(ObjectMappingModel.local_id == local_id)
        elif remote_id is not None:
            stmt = stmt.where(ObjectMappingModel.remote_id == remote_id)
        else:
            return False

        async for session in self._session_factory():
            result = await session.execute(
                stmt.values(last_sync_error=error[:2000]).returning(ObjectMappingModel.id)
            )
            found = result.first() is not None
            await session.commit()
            return found

    async def list_for_local(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> list[MappingRecord]:
        """All provider mappings of one local record, most recently synced first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ObjectMappingModel)
                .where(
                    ObjectMappingModel.tenant_id == uuid.UUID(tenant_id),
                    ObjectMappingModel.entity_type == entity_type.value,
                    ObjectMappingModel.local_id == local_id,
                )
                .order_by(ObjectMappingModel.last_synced_at.desc().nulls_last())
            )
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def get_mapping(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> MappingRecord | None:
        """Badge lookup: the most recently synced mapping of a local record."""
        mappings = await self.list_for_local(tenant_id, entity_type, local_id)
        return mappings[0] if mappings else None
