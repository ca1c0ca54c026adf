"""Dead-letter store and manual retry.

Every job that stops being retried (attempts exhausted, validation error,
revoked auth, connection disconnected) is written here with its original
payload so an operator can see why and re-enqueue it.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.core.monitoring import sync_dead_letters_total
from src.crm_sync.integrations.models import DeadLetterModel
from src.crm_sync.integrations.schemas import (
    DeadLetterReason,
    DeadLetterRecord,
    JobType,
    Provider,
    SyncJob,
)

logger = structlog.get_logger(__name__)


def _model_to_dead_letter(model: DeadLetterModel) -> DeadLetterRecord:
    return DeadLetterRecord(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=Provider(model.provider),
        job_id=str(model.job_id),
        job_type=JobType(model.job_type),
        payload=model.payload or {},
        dedupe_key=model.dedupe_key,
        priority=model.priority,
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        reason=DeadLetterReason(model.reason),
        error=model.error,
        provider_error_body=model.provider_error_body,
        dead_lettered_at=model.dead_lettered_at,
        retried_at=model.retried_at,
    )


def _job_to_model(
    job: SyncJob,
    reason: DeadLetterReason,
    error: str | None,
    provider_error_body: Any = None,
) -> DeadLetterModel:
    return DeadLetterModel(
        id=uuid.uuid4(),
        tenant_id=uuid.UUID(job.tenant_id),
        provider=job.provider.value,
        job_id=uuid.UUID(job.id),
        job_type=job.job_type.value,
        priority=job.priority,
        payload=job.payload,
        dedupe_key=job.dedupe_key,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        reason=reason.value,
        error=error,
        provider_error_body=provider_error_body,
        dead_lettered_at=datetime.now(timezone.utc),
    )


class DeadLetterRepository:
    """Async access to sync_dead_letters.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        job: SyncJob,
        reason: DeadLetterReason,
        error: str | None,
        provider_error_body: Any = None,
    ) -> DeadLetterRecord:
        """Write one dead-letter row for a job."""
        async for session in self._session_factory():
            model = _job_to_model(job, reason, error, provider_error_body)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            sync_dead_letters_total.labels(provider=job.provider.value, reason=reason.value).inc()
            logger.warning(
                "dead_letter.recorded",
                tenant_id=job.tenant_id,
                provider=job.provider.value,
                job_id=job.id,
                job_type=job.job_type.value,
                reason=reason.value,
                error=error,
            )
            return _model_to_dead_letter(model)

    async def record_many(
        self,
        jobs: list[SyncJob],
        reason: DeadLetterReason,
        error: str | None,
    ) -> int:
        """Dead-letter a batch of jobs in one transaction."""
        if not jobs:
            return 0
        async for session in self._session_factory():
            session.add_all([_job_to_model(job, reason, error) for job in jobs])
            await session.commit()
            for job in jobs:
                sync_dead_letters_total.labels(provider=job.provider.value, reason=reason.value).inc()
            logger.warning(
                "dead_letter.recorded_batch",
                count=len(jobs),
                reason=reason.value,
                error=error,
            )
            return len(jobs)

    async def get(self, tenant_id: str, dead_letter_id: str) -> DeadLetterRecord | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DeadLetterModel).where(
                    DeadLetterModel.tenant_id == uuid.UUID(tenant_id),
                    DeadLetterModel.id == uuid.UUID(dead_letter_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_dead_letter(model) if model else None

    async def list_for_tenant(
        self,
        tenant_id: str,
        provider: Provider | None = None,
        include_retried: bool = False,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        """Newest first."""
        stmt = select(DeadLetterModel).where(DeadLetterModel.tenant_id == uuid.UUID(tenant_id))
        if provider is not None:
            stmt = stmt.where(DeadLetterModel.provider == provider.value)
        if not include_retried:
            stmt = stmt.where(DeadLetterModel.retried_at.is_(None))
        stmt = stmt.order_by(DeadLetterModel.dead_lettered_at.desc()).limit(limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_dead_letter(m) for m in result.scalars().all()]

    async def counts_by_provider(self, tenant_id: str) -> dict[Provider, int]:
        """Outstanding (not yet retried) dead letters per provider."""
        async for session in self._session_factory():
            result = await session.execute(
                select(DeadLetterModel.provider, func.count())
                .where(
                    DeadLetterModel.tenant_id == uuid.UUID(tenant_id),
                    DeadLetterModel.retried_at.is_(None),
                )
                .group_by(DeadLetterModel.provider)
            )
            return {Provider(provider): int(count) for provider, count in result.all()}

    async def mark_retried(self, dead_letter_id: str, at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(DeadLetterModel)
                .where(DeadLetterModel.id == uuid.UUID(dead_letter_id))
                .values(retried_at=at)
            )
            await session.commit()


class DeadLetterService:
    """Operator actions on dead letters.

    Args:
        dead_letters: DeadLetterRepository (or a test double).
        queue: SyncQueueRepository used to re-enqueue.
        connections: ConnectionRepository used to refuse retries on disconnected providers.
    """

    def __init__(self, dead_letters: Any, queue: Any, connections: Any) -> None:
        self._dead_letters = dead_letters
        self._queue = queue
        self._connections = connections

    async def retry(self, tenant_id: str, dead_letter_id: str) -> str:
        """Re-enqueue a dead-lettered job through the normal enqueue contract.

        Returns:
            The id of the enqueued (or merged) job.

        Raises:
            LookupError: If the dead letter does not exist for this tenant.
            ValueError: If it was already retried or the connection is not connected.
        """
        try:
            uuid.UUID(dead_letter_id)
        except ValueError:
            raise LookupError(f"Dead letter not found: {dead_letter_id}")
        record = await self._dead_letters.get(tenant_id, dead_letter_id)
        if record is None:
            raise LookupError(f"Dead letter not found: {dead_letter_id}")
        if record.retried_at is not None:
            raise ValueError("Dead letter was already retried")

        connection = await self._connections.get(tenant_id, record.provider)
        if connection is None or not connection.is_connected:
            raise ValueError(f"{record.provider.value} is not connected")

        job_id = await self._queue.enqueue(
            tenant_id,
            record.provider,
            record.job_type,
            priority=record.priority,
            payload=record.payload,
            dedupe_key=record.dedupe_key,
            max_attempts=record.max_attempts,
        )
        await self._dead_letters.mark_retried(dead_letter_id, datetime.now(timezone.utc))
        logger.info(
            "dead_letter.retried",
            tenant_id=tenant_id,
            dead_letter_id=dead_letter_id,
            job_id=job_id,
        )
        return job_id
