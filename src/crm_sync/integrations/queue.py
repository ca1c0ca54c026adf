"""Durable sync queue on Postgres.

Enqueue contract:
- With a dedupe key, an unclaimed job for the same (tenant, dedupe_key) is
  merged in place: payload and not_before refreshed, attempts reset to 0,
  priority raised to the max of both, revision bumped, id unchanged.
- Ready = not_before <= now AND attempts < max_attempts.
- Order = priority DESC, not_before ASC, created_at ASC.

Claim is a destructive read (DELETE ... RETURNING over a FOR UPDATE SKIP
LOCKED subselect). At-least-once completion comes from the lease copy a
worker re-inserts before its external call; complete()/reschedule() act on
that copy only while its revision is unchanged, so a change merged into the
lease is never lost.

The statement builders are module-level so the webhook intake can enqueue
inside its own transaction and tests can compile them against PostgreSQL.
"""

from __future__ import annotations

import random
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import Delete, Insert, case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.core.monitoring import sync_jobs_enqueued_total
from src.crm_sync.integrations.models import SyncJobModel
from src.crm_sync.integrations.schemas import JobType, Provider, SyncJob

logger = structlog.get_logger(__name__)

_jobs = SyncJobModel.__table__

DEFAULT_MAX_ATTEMPTS = 10
MAX_JITTER_RATIO = 0.1


# ── Backoff ─────────────────────────────────────────────────────────────────


def compute_backoff(
    attempts: int,
    *,
    base_seconds: float = 30.0,
    cap_seconds: float = 3600.0,
    retry_after: float | None = None,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before the next attempt.

    ``min(cap, base * 2**attempts)`` plus up to 10% jitter. A provider
    Retry-After longer than that wins.
    """
    delay = min(cap_seconds, base_seconds * (2 ** max(attempts, 0)))
    delay += delay * MAX_JITTER_RATIO * jitter()
    if retry_after is not None and retry_after > delay:
        return float(retry_after)
    return delay


# ── Statement Builders ──────────────────────────────────────────────────────


def build_enqueue_statement(
    *,
    tenant_id: str,
    provider: Provider,
    job_type: JobType,
    priority: int,
    payload: dict[str, Any],
    not_before: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    dedupe_key: str | None = None,
) -> Insert:
    """INSERT a job, merging into an existing row with the same dedupe key."""
    stmt = pg_insert(_jobs).values(
        id=uuid.uuid4(),
        tenant_id=uuid.UUID(tenant_id),
        provider=provider.value,
        job_type=job_type.value,
        priority=priority,
        not_before=not_before,
        attempts=0,
        max_attempts=max_attempts,
        payload=payload,
        dedupe_key=dedupe_key,
        revision=0,
    )
    if dedupe_key is not None:
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[_jobs.c.tenant_id, _jobs.c.dedupe_key],
            index_where=_jobs.c.dedupe_key.isnot(None),
            set_={
                "job_type": excluded.job_type,
                "payload": excluded.payload,
                # A leased row stays invisible until its worker finishes
                "not_before": case(
                    (
                        _jobs.c.leased_until.isnot(None),
                        func.greatest(_jobs.c.not_before, excluded.not_before),
                    ),
                    else_=excluded.not_before,
                ),
                "attempts": 0,
                "max_attempts": excluded.max_attempts,
                "priority": func.greatest(_jobs.c.priority, excluded.priority),
                "revision": _jobs.c.revision + 1,
                "last_error": None,
            },
        )
    return stmt.returning(_jobs.c.id)


def build_claim_statement(
    limit: int,
    now: datetime,
    tenant_id: str | None = None,
) -> Delete:
    """DELETE up to ``limit`` ready jobs, skipping rows locked by other claims."""
    ready = (
        select(_jobs.c.id)
        .where(
            _jobs.c.not_before <= now,
            _jobs.c.attempts < _jobs.c.max_attempts,
        )
        .order_by(
            _jobs.c.priority.desc(),
            _jobs.c.not_before.asc(),
            _jobs.c.created_at.asc(),
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if tenant_id is not None:
        ready = ready.where(_jobs.c.tenant_id == uuid.UUID(tenant_id))
    return delete(_jobs).where(_jobs.c.id.in_(ready)).returning(*_jobs.c)


def build_lease_statement(job: SyncJob, leased_until: datetime) -> Insert:
    """Re-insert a claimed job as an invisible lease copy.

    Does nothing when a newer job with the same dedupe key was enqueued
    after the claim; RETURNING then yields no row.
    """
    return (
        pg_insert(_jobs)
        .values(
            id=uuid.UUID(job.id),
            tenant_id=uuid.UUID(job.tenant_id),
            provider=job.provider.value,
            job_type=job.job_type.value,
            priority=job.priority,
            not_before=leased_until,
            attempts=job.attempts + 1,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            payload=job.payload,
            dedupe_key=job.dedupe_key,
            revision=job.revision,
            leased_until=leased_until,
            created_at=job.created_at,
        )
        .on_conflict_do_nothing()
        .returning(_jobs.c.revision)
    )


async def enqueue_job(session: AsyncSession, **kwargs: Any) -> str:
    """Execute the enqueue statement inside a caller-owned transaction."""
    result = await session.execute(build_enqueue_statement(**kwargs))
    job_id = str(result.scalar_one())
    sync_jobs_enqueued_total.labels(
        provider=kwargs["provider"].value,
        job_type=kwargs["job_type"].value,
    ).inc()
    return job_id


def _row_to_job(row: Any) -> SyncJob:
    """Convert a RETURNING mapping row into a SyncJob."""
    return SyncJob(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        provider=Provider(row["provider"]),
        job_type=JobType(row["job_type"]),
        priority=row["priority"],
        not_before=row["not_before"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        payload=row["payload"] or {},
        dedupe_key=row["dedupe_key"],
        revision=row["revision"],
        created_at=row["created_at"],
    )


def sort_ready(jobs: list[SyncJob]) -> list[SyncJob]:
    """Apply queue order to jobs returned by a claim (RETURNING is unordered)."""
    return sorted(jobs, key=lambda j: (-j.priority, j.not_before, j.created_at))


# ── Repository ──────────────────────────────────────────────────────────────


class SyncQueueRepository:
    """Async access to the sync_jobs table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        default_max_attempts: max_attempts used when enqueue() is not given one.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory
        self._default_max_attempts = default_max_attempts

    async def enqueue(
        self,
        tenant_id: str,
        provider: Provider,
        job_type: JobType,
        priority: int = 0,
        payload: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        not_before: datetime | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Enqueue (or merge) a job and return its id."""
        async for session in self._session_factory():
            job_id = await enqueue_job(
                session,
                tenant_id=tenant_id,
                provider=provider,
                job_type=job_type,
                priority=priority,
                payload=payload or {},
                not_before=not_before or datetime.now(timezone.utc),
                max_attempts=max_attempts or self._default_max_attempts,
                dedupe_key=dedupe_key,
            )
            await session.commit()
            logger.debug(
                "sync_queue.enqueued",
                tenant_id=tenant_id,
                provider=provider.value,
                job_type=job_type.value,
                job_id=job_id,
                dedupe_key=dedupe_key,
            )
            return job_id

    async def claim(
        self,
        limit: int,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> list[SyncJob]:
        """Atomically remove and return up to ``limit`` ready jobs."""
        stmt = build_claim_statement(limit, now or datetime.now(timezone.utc), tenant_id)
        async for session in self._session_factory():
            result = await session.execute(stmt)
            jobs = [_row_to_job(row) for row in result.mappings().all()]
            await session.commit()
            return sort_ready(jobs)

    async def lease(self, job: SyncJob, lease_seconds: float, now: datetime | None = None) -> int | None:
        """Re-insert a lease copy of a claimed job.

        Returns the lease revision, or None when a newer job for the same
        dedupe key already covers the work.
        """
        leased_until = (now or datetime.now(timezone.utc)) + timedelta(seconds=lease_seconds)
        async for session in self._session_factory():
            result = await session.execute(build_lease_statement(job, leased_until))
            revision = result.scalar_one_or_none()
            await session.commit()
            return revision

    async def complete(self, job_id: str, revision: int, now: datetime | None = None) -> bool:
        """Delete the lease copy of a finished job.

        Returns False when a newer change was merged into the lease; that
        row is released for immediate pickup instead of being deleted.
        """
        job_uuid = uuid.UUID(job_id)
        async for session in self._session_factory():
            result = await session.execute(
                delete(_jobs)
                .where(_jobs.c.id == job_uuid, _jobs.c.revision == revision)
                .returning(_jobs.c.id)
            )
            deleted = result.first() is not None
            if not deleted:
                await session.execute(
                    update(_jobs)
                    .where(_jobs.c.id == job_uuid)
                    .values(leased_until=None, not_before=now or datetime.now(timezone.utc))
                )
            await session.commit()
            return deleted

    async def reschedule(
        self,
        job_id: str,
        revision: int,
        not_before: datetime,
        attempts: int,
        last_error: str | None,
    ) -> bool:
        """Turn a lease copy back into a pending job for a later retry.

        If a newer change was merged into the lease its reset attempt count
        is kept; only the retry time and error are applied.
        """
        job_uuid = uuid.UUID(job_id)
        async for session in self._session_factory():
            result = await session.execute(
                update(_jobs)
                .where(_jobs.c.id == job_uuid, _jobs.c.revision == revision)
                .values(
                    not_before=not_before,
                    attempts=attempts,
                    last_error=last_error,
                    leased_until=None,
                )
                .returning(_jobs.c.id)
            )
            matched = result.first() is not None
            if not matched:
                await session.execute(
                    update(_jobs)
                    .where(_jobs.c.id == job_uuid)
                    .values(not_before=not_before, last_error=last_error, leased_until=None)
                )
            await session.commit()
            return matched

    async def drain(self, tenant_id: str, provider: Provider) -> list[SyncJob]:
        """Remove and return every queued job (leases included) for a connection."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(_jobs)
                .where(
                    _jobs.c.tenant_id == uuid.UUID(tenant_id),
                    _jobs.c.provider == provider.value,
                )
                .returning(*_jobs.c)
            )
            jobs = [_row_to_job(row) for row in result.mappings().all()]
            await session.commit()
            return jobs

    async def sweep_exhausted(self, now: datetime | None = None) -> list[SyncJob]:
        """Remove lease copies whose worker died on the final attempt."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(_jobs)
                .where(
                    _jobs.c.attempts >= _jobs.c.max_attempts,
                    _jobs.c.not_before <= (now or datetime.now(timezone.utc)),
                )
                .returning(*_jobs.c)
            )
            jobs = [_row_to_job(row) for row in result.mappings().all()]
            await session.commit()
            return jobs

    async def count_pending(self, tenant_id: str, provider: Provider | None = None) -> int:
        """Number of queued jobs for a tenant (optionally one provider)."""
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(_jobs).where(
                _jobs.c.tenant_id == uuid.UUID(tenant_id)
            )
            if provider is not None:
                stmt = stmt.where(_jobs.c.provider == provider.value)
            result = await session.execute(stmt)
            return int(result.scalar_one())
