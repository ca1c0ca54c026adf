"""Dequeue coordinator -- the only entry point workers use to take jobs."""

from __future__ import annotations

from typing import Protocol

import structlog

from src.crm_sync.core.monitoring import sync_jobs_claimed_total
from src.crm_sync.integrations.schemas import SyncJob

logger = structlog.get_logger(__name__)

MIN_CLAIM = 1
MAX_CLAIM = 50


class ClaimableQueue(Protocol):
    async def claim(self, limit: int, tenant_id: str | None = None) -> list[SyncJob]: ...


class DequeueCoordinator:
    """Claims batches of ready jobs for worker processes.

    Concurrent callers never receive the same job: the underlying claim
    locks candidate rows with SKIP LOCKED and deletes them in the same
    statement, so a row held by one claim is invisible to the others
    instead of blocking them.
    """

    def __init__(self, queue: ClaimableQueue) -> None:
        self._queue = queue

    async def claim(self, limit: int, tenant_id: str | None = None) -> list[SyncJob]:
        """Claim up to ``limit`` (1..50) jobs, optionally for one tenant.

        Raises:
            ValueError: If limit is outside 1..50.
        """
        if not MIN_CLAIM <= limit <= MAX_CLAIM:
            raise ValueError(f"claim limit must be between {MIN_CLAIM} and {MAX_CLAIM}, got {limit}")

        jobs = await self._queue.claim(limit, tenant_id=tenant_id)
        for job in jobs:
            sync_jobs_claimed_total.labels(provider=job.provider.value).inc()

        if jobs:
            logger.info(
                "dequeue.claimed",
                count=len(jobs),
                limit=limit,
                tenant_id=tenant_id,
            )
        return jobs
