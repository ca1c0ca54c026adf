"""Worker process loop -- claim, fan out, repeat.

Each iteration claims one batch through the Dequeue Coordinator, groups it
by connection (tenant, provider) and runs the groups concurrently, at most
SYNC_WORKER_PARALLELISM at a time. Jobs inside a group run one after the
other so a single provider account never sees parallel calls from this
process.

Between batches the loop sleeps for SYNC_POLL_INTERVAL_SECONDS unless a
"new job" message arrives on the Redis channel first.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.crm_sync.config import Settings
from src.crm_sync.core.monitoring import track_sync_job
from src.crm_sync.core.redis import JOB_SIGNAL_CHANNEL
from src.crm_sync.integrations.schemas import JobOutcome, SyncJob, WorkerState

logger = structlog.get_logger(__name__)


def group_by_connection(jobs: list[SyncJob]) -> list[list[SyncJob]]:
    """Split a claimed batch into per-(tenant, provider) lanes, keeping queue order."""
    lanes: OrderedDict[tuple[str, str], list[SyncJob]] = OrderedDict()
    for job in jobs:
        lanes.setdefault((job.tenant_id, job.provider.value), []).append(job)
    return list(lanes.values())


class SyncWorkerRunner:
    """Drives a SyncWorker from the queue.

    Args:
        coordinator: DequeueCoordinator.
        worker: SyncWorker.
        settings: Batch size, parallelism and poll interval.
        redis: Optional Redis client for the new-job signal.
        tenant_id: Restrict claims to one tenant (operator tooling).
    """

    def __init__(
        self,
        coordinator: Any,
        worker: Any,
        settings: Settings,
        redis: aioredis.Redis | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._worker = worker
        self._settings = settings
        self._redis = redis
        self._tenant_id = tenant_id
        self._batch_size = settings.SYNC_CLAIM_BATCH_SIZE
        self._semaphore = asyncio.Semaphore(max(1, settings.SYNC_WORKER_PARALLELISM))
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value: int) -> None:
        self._batch_size = value

    async def run_once(self) -> list[JobOutcome]:
        """Claim and process one batch. Returns the outcome of every job."""
        jobs = await self._coordinator.claim(self._batch_size, tenant_id=self._tenant_id)
        if not jobs:
            return []

        lanes = group_by_connection(jobs)
        results = await asyncio.gather(*(self._run_lane(lane) for lane in lanes))
        outcomes = [outcome for lane_outcomes in results for outcome in lane_outcomes]

        logger.info(
            "sync_runner.batch_done",
            claimed=len(jobs),
            lanes=len(lanes),
            done=sum(1 for o in outcomes if o.state == WorkerState.DONE),
            retrying=sum(1 for o in outcomes if o.state == WorkerState.RETRYING),
            dead_lettered=sum(1 for o in outcomes if o.state == WorkerState.DEAD_LETTERED),
        )
        return outcomes

    async def _run_lane(self, lane: list[SyncJob]) -> list[JobOutcome]:
        outcomes: list[JobOutcome] = []
        async with self._semaphore:
            for job in lane:
                outcome = await self._run_job(job)
                if outcome is not None:
                    outcomes.append(outcome)
        return outcomes

    async def _run_job(self, job: SyncJob) -> JobOutcome | None:
        try:
            async with track_sync_job(job.provider.value, job.job_type.value) as tracker:
                outcome = await self._worker.process(job)
                tracker["state"] = outcome.state.value
                return outcome
        except Exception:
            # The lease copy (if written) makes the job visible again when it expires
            logger.exception(
                "sync_runner.job_crashed",
                job_id=job.id,
                tenant_id=job.tenant_id,
                provider=job.provider.value,
            )
            return None

    async def run(self) -> None:
        """Loop until stop() is called."""
        listener = asyncio.create_task(self._listen()) if self._redis is not None else None
        logger.info(
            "sync_runner.started",
            batch_size=self._batch_size,
            parallelism=self._settings.SYNC_WORKER_PARALLELISM,
            tenant_id=self._tenant_id,
        )
        try:
            while not self._stopping.is_set():
                try:
                    outcomes = await self.run_once()
                except Exception:
                    logger.exception("sync_runner.claim_failed")
                    outcomes = []
                if len(outcomes) >= self._batch_size:
                    continue
                await self._wait_for_work()
        finally:
            if listener is not None:
                listener.cancel()
                await asyncio.gather(listener, return_exceptions=True)
            logger.info("sync_runner.stopped")

    def stop(self) -> None:
        self._stopping.set()
        self._wake.set()

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._settings.SYNC_POLL_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _listen(self) -> None:
        """Set the wake event whenever a job signal is published."""
        while not self._stopping.is_set():
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(JOB_SIGNAL_CHANNEL)
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        self._wake.set()
            except RedisError as exc:
                logger.warning("sync_runner.signal_lost", error=str(exc))
                await asyncio.sleep(self._settings.SYNC_POLL_INTERVAL_SECONDS)
            finally:
                await pubsub.aclose()
