"""Background maintenance for the sync engine.

Three interval jobs:
- purge webhook delivery records older than SYNC_WEBHOOK_RETENTION_DAYS
- refresh credentials that expire within twice the refresh margin, so
  workers rarely refresh on the hot path
- sweep lease copies left behind by workers that died on their final
  attempt into the dead-letter store

Task bodies live on SyncMaintenance so tests can run them directly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.crm_sync.config import Settings
from src.crm_sync.integrations.errors import SyncError
from src.crm_sync.integrations.schemas import DeadLetterReason
from src.crm_sync.integrations.webhooks import retention_cutoff

logger = structlog.get_logger(__name__)


class SyncMaintenance:
    """Maintenance task bodies.

    Args:
        deliveries: WebhookDeliveryRepository.
        credentials: CredentialRepository.
        tokens: TokenRefresher.
        queue: SyncQueueRepository.
        dead_letters: DeadLetterRepository.
        settings: Application settings.
    """

    def __init__(
        self,
        deliveries: Any,
        credentials: Any,
        tokens: Any,
        queue: Any,
        dead_letters: Any,
        settings: Settings,
    ) -> None:
        self._deliveries = deliveries
        self._credentials = credentials
        self._tokens = tokens
        self._queue = queue
        self._dead_letters = dead_letters
        self._settings = settings

    async def purge_deliveries(self, now: datetime | None = None) -> int:
        cutoff = retention_cutoff(self._settings.SYNC_WEBHOOK_RETENTION_DAYS, now)
        removed = await self._deliveries.purge_older_than(cutoff)
        logger.info("scheduler.deliveries_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def refresh_expiring(self, now: datetime | None = None) -> int:
        """Proactively refresh credentials close to expiry. Returns the number refreshed."""
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(seconds=2 * self._settings.SYNC_TOKEN_REFRESH_MARGIN_SECONDS)
        refreshed = 0
        for credential in await self._credentials.list_expiring(horizon):
            try:
                await self._tokens.force_refresh(credential.tenant_id, credential.provider)
                refreshed += 1
            except SyncError as exc:
                logger.warning(
                    "scheduler.refresh_failed",
                    tenant_id=credential.tenant_id,
                    provider=credential.provider.value,
                    error=str(exc),
                )
        if refreshed:
            logger.info("scheduler.credentials_refreshed", count=refreshed)
        return refreshed

    async def sweep_exhausted(self, now: datetime | None = None) -> int:
        jobs = await self._queue.sweep_exhausted(now)
        if not jobs:
            return 0
        await self._dead_letters.record_many(
            jobs, DeadLetterReason.EXHAUSTED, "worker lost the job on its final attempt"
        )
        logger.warning("scheduler.exhausted_leases_swept", count=len(jobs))
        return len(jobs)


class SyncScheduler:
    """AsyncIOScheduler running SyncMaintenance on fixed intervals."""

    def __init__(self, maintenance: SyncMaintenance) -> None:
        self._maintenance = maintenance
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._maintenance.purge_deliveries,
            trigger=IntervalTrigger(hours=6),
            id="sync_purge_deliveries",
            name="Purge old webhook delivery records",
            misfire_grace_time=3600,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._maintenance.refresh_expiring,
            trigger=IntervalTrigger(minutes=5),
            id="sync_refresh_expiring",
            name="Refresh credentials close to expiry",
            misfire_grace_time=300,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._maintenance.sweep_exhausted,
            trigger=IntervalTrigger(minutes=1),
            id="sync_sweep_exhausted",
            name="Dead-letter leases abandoned on their final attempt",
            misfire_grace_time=60,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "sync_scheduler.started",
            jobs=["purge_deliveries", "refresh_expiring", "sweep_exhausted"],
        )

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
