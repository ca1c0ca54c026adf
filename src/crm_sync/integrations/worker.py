"""Sync worker -- executes one claimed job through the sync state machine.

    claimed -> resolving -> calling -> updating_mapping -> done
                   |           |              |
                   +-----------+--------------+--> retrying | dead_lettered | skipped

A claimed job has already been deleted from the queue. Before doing any
work the worker re-inserts a lease copy (attempts + 1, invisible until the
lease expires), so a crash anywhere after that point lets the job run
again. Every path out of process() either completes the lease, reschedules
it, or writes a dead letter.

Error policy:
- TransientSyncError and unclassified exceptions: reschedule with backoff,
  dead-letter as ``exhausted`` once attempts reach max_attempts.
- ValidationSyncError (incl. UnsupportedEntityError): dead-letter as
  ``non_retryable`` with the provider body attached.
- AuthSyncError: deactivate the connection; its queued jobs, this lease
  included, are dead-lettered as ``auth``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crm_sync.config import Settings
from src.crm_sync.integrations.errors import (
    AuthSyncError,
    SyncError,
    TransientSyncError,
    ValidationSyncError,
)
from src.crm_sync.integrations.handlers import JobHandler, get_handler
from src.crm_sync.integrations.local import applying_inbound
from src.crm_sync.integrations.mappings import is_echo
from src.crm_sync.integrations.queue import compute_backoff
from src.crm_sync.integrations.schemas import (
    DeadLetterReason,
    EntityType,
    JobOutcome,
    SyncDirection,
    SyncJob,
    WorkerState,
)

logger = structlog.get_logger(__name__)


@dataclass
class _Lease:
    job: SyncJob
    revision: int
    attempts: int


class SyncWorker:
    """Runs the state machine for one job at a time.

    Args:
        queue: SyncQueueRepository (lease / complete / reschedule).
        mappings: MappingRepository.
        connections: ConnectionRepository (status re-check, last_sync_at).
        connection_service: ConnectionService (auth failure handling).
        tokens: TokenRefresher.
        providers: ProviderRegistry.
        local: LocalRecordSource for the host CRM.
        deliveries: WebhookDeliveryRepository (marks inbound deliveries processed).
        dead_letters: DeadLetterRepository.
        settings: Application settings (lease, backoff, echo window).
    """

    def __init__(
        self,
        *,
        queue: Any,
        mappings: Any,
        connections: Any,
        connection_service: Any,
        tokens: Any,
        providers: Any,
        local: Any,
        deliveries: Any,
        dead_letters: Any,
        settings: Settings,
    ) -> None:
        self._queue = queue
        self._mappings = mappings
        self._connections = connections
        self._connection_service = connection_service
        self._tokens = tokens
        self._providers = providers
        self._local = local
        self._deliveries = deliveries
        self._dead_letters = dead_letters
        self._settings = settings

    async def process(self, job: SyncJob) -> JobOutcome:
        """Execute one claimed job to a terminal or retry state."""
        log = logger.bind(
            job_id=job.id,
            tenant_id=job.tenant_id,
            provider=job.provider.value,
            job_type=job.job_type.value,
            attempt=job.attempts + 1,
        )

        try:
            handler = get_handler(job.job_type)
            direction = job.direction
            entity_type = job.entity_type
            if not handler.supports(direction) or handler.entity_type != entity_type:
                raise ValueError(
                    f"{job.job_type.value} cannot move {entity_type.value} {direction.value}"
                )
            id_key = "local_id" if direction == SyncDirection.OUTBOUND else "remote_id"
            if not job.payload.get(id_key):
                raise ValueError(f"payload has no {id_key}")
        except (KeyError, ValueError) as exc:
            # Claimed rows are already gone; only the dead letter remains
            await self._dead_letters.record(job, DeadLetterReason.NON_RETRYABLE, f"Invalid job: {exc}")
            log.error("sync_worker.invalid_job", error=str(exc))
            return self._outcome(job, WorkerState.DEAD_LETTERED, error=str(exc))

        revision = await self._queue.lease(job, self._settings.SYNC_LEASE_SECONDS)
        if revision is None:
            log.info("sync_worker.superseded")
            return self._outcome(job, WorkerState.DONE)
        lease = _Lease(job=job, revision=revision, attempts=job.attempts + 1)

        connection = await self._connections.get(job.tenant_id, job.provider)
        if connection is None or not connection.is_connected:
            return await self._skip(lease, "connection disconnected", log)

        try:
            if direction == SyncDirection.OUTBOUND:
                outcome = await self._run_outbound(job, handler, log)
            else:
                outcome = await self._run_inbound(job, handler, log)
        except AuthSyncError as exc:
            return await self._on_auth_error(lease, exc, log)
        except ValidationSyncError as exc:
            return await self._on_validation_error(lease, exc, log)
        except Exception as exc:
            return await self._on_transient_error(lease, exc, log)

        if outcome.state == WorkerState.SKIPPED:
            return await self._skip(lease, outcome.error or "skipped", log)

        await self._queue.complete(job.id, lease.revision)
        now = datetime.now(timezone.utc)
        await self._connections.touch_last_sync(job.tenant_id, job.provider, now)
        log.info(
            "sync_worker.job_done",
            local_id=outcome.local_id,
            remote_id=outcome.remote_id,
        )
        return outcome

    # ── Outbound ────────────────────────────────────────────────────────────

    async def _run_outbound(self, job: SyncJob, handler: JobHandler, log: Any) -> JobOutcome:
        entity_type = handler.entity_type
        local_id = str(job.payload["local_id"])
        client = self._providers.get(job.provider)

        # resolving
        client.ensure_supported(entity_type)
        record = await self._local.get_record(job.tenant_id, entity_type, local_id)
        if record is None:
            return self._outcome(
                job, WorkerState.SKIPPED, local_id=local_id, error="local record no longer exists"
            )

        mapping = await self._mappings.resolve(
            job.tenant_id, job.provider, entity_type, local_id=local_id
        )
        now = datetime.now(timezone.utc)
        if mapping is not None and handler.create_only:
            log.info("sync_worker.already_pushed", remote_id=mapping.remote_id)
            return self._outcome(job, WorkerState.DONE, local_id=local_id, remote_id=mapping.remote_id)
        if is_echo(mapping, SyncDirection.OUTBOUND, now, self._settings.SYNC_ECHO_WINDOW_SECONDS):
            log.info("sync_worker.echo_skipped", direction="outbound", remote_id=mapping.remote_id)
            return self._outcome(job, WorkerState.DONE, local_id=local_id, remote_id=mapping.remote_id)

        token = await self._tokens.get_valid_token(job.tenant_id, job.provider)

        # calling
        if mapping is None:
            result = await client.create_record(token, entity_type, record.fields)
            log.info("sync_worker.remote_created", remote_id=result.remote_id)
        else:
            result = await client.update_record(token, entity_type, mapping.remote_id, record.fields)

        # updating_mapping
        await self._mappings.upsert(
            job.tenant_id,
            job.provider,
            entity_type,
            local_id,
            result.remote_id,
            SyncDirection.OUTBOUND,
            remote_modified_at=result.modified_at,
        )
        return self._outcome(job, WorkerState.DONE, local_id=local_id, remote_id=result.remote_id)

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def _run_inbound(self, job: SyncJob, handler: JobHandler, log: Any) -> JobOutcome:
        entity_type = handler.entity_type
        remote_id = str(job.payload["remote_id"])
        client = self._providers.get(job.provider)

        # resolving
        client.ensure_supported(entity_type)
        mapping = await self._mappings.resolve(
            job.tenant_id, job.provider, entity_type, remote_id=remote_id
        )
        token = await self._tokens.get_valid_token(job.tenant_id, job.provider)

        # calling
        remote = await client.get_record(token, entity_type, remote_id)
        if remote is None:
            return self._outcome(
                job, WorkerState.SKIPPED, remote_id=remote_id, error="remote record no longer exists"
            )

        now = datetime.now(timezone.utc)
        if mapping is None:
            # An outbound create of this record may have landed during the fetch
            mapping = await self._mappings.resolve(
                job.tenant_id, job.provider, entity_type, remote_id=remote_id
            )
            if mapping is not None:
                log.info("sync_worker.mapped_during_fetch", local_id=mapping.local_id)

        if mapping is not None:
            seen = mapping.last_seen_remote_modified_at
            if seen is not None and remote.modified_at is not None and remote.modified_at <= seen:
                log.info("sync_worker.stale_inbound", remote_modified_at=remote.modified_at.isoformat())
                await self._mark_delivery(job, now)
                return self._outcome(job, WorkerState.DONE, local_id=mapping.local_id, remote_id=remote_id)
            if is_echo(mapping, SyncDirection.INBOUND, now, self._settings.SYNC_ECHO_WINDOW_SECONDS):
                log.info("sync_worker.echo_skipped", direction="inbound", local_id=mapping.local_id)
                await self._mappings.note_remote_seen(mapping.id, remote.modified_at)
                await self._mark_delivery(job, now)
                return self._outcome(job, WorkerState.DONE, local_id=mapping.local_id, remote_id=remote_id)

            # Stamp the direction before the local write so the change it
            # triggers is recognised as an echo
            await self._mappings.mark_direction(mapping.id, SyncDirection.INBOUND, now)

        # updating_mapping
        with applying_inbound(job.provider.value):
            local_id = await self._local.apply_inbound(
                job.tenant_id,
                entity_type,
                mapping.local_id if mapping else None,
                remote.fields,
            )
        await self._mappings.upsert(
            job.tenant_id,
            job.provider,
            entity_type,
            local_id,
            remote_id,
            SyncDirection.INBOUND,
            remote_modified_at=remote.modified_at,
        )
        await self._mark_delivery(job, now)
        return self._outcome(job, WorkerState.DONE, local_id=local_id, remote_id=remote_id)

    async def _mark_delivery(self, job: SyncJob, at: datetime) -> None:
        delivery_id = job.payload.get("delivery_id")
        if delivery_id:
            await self._deliveries.mark_processed(job.tenant_id, job.provider, str(delivery_id), at)

    # ── Failure Paths ───────────────────────────────────────────────────────

    async def _skip(self, lease: _Lease, reason: str, log: Any) -> JobOutcome:
        job = lease.job
        # A drain by disconnect may already have removed (and dead-lettered) the lease
        if await self._queue.complete(job.id, lease.revision):
            await self._dead_letters.record(job, DeadLetterReason.SKIPPED, reason)
        log.info("sync_worker.skipped", reason=reason)
        return self._outcome(job, WorkerState.SKIPPED, error=reason)

    async def _on_auth_error(self, lease: _Lease, exc: AuthSyncError, log: Any) -> JobOutcome:
        job = lease.job
        log.warning("sync_worker.auth_failed", error=str(exc))
        await self._record_mapping_error(job, str(exc))
        if await self._connection_service.is_connected(job.tenant_id, job.provider):
            await self._connection_service.handle_auth_failure(job.tenant_id, job.provider, str(exc))
        elif await self._queue.complete(job.id, lease.revision):
            await self._dead_letters.record(job, DeadLetterReason.AUTH, str(exc))
        return self._outcome(job, WorkerState.DEAD_LETTERED, error=str(exc))

    async def _on_validation_error(
        self, lease: _Lease, exc: ValidationSyncError, log: Any
    ) -> JobOutcome:
        job = lease.job
        log.warning("sync_worker.rejected", error=str(exc), status_code=exc.status_code)
        await self._queue.complete(job.id, lease.revision)
        await self._record_mapping_error(job, str(exc))
        await self._dead_letters.record(
            self._with_attempts(lease),
            DeadLetterReason.NON_RETRYABLE,
            str(exc),
            provider_error_body=exc.body,
        )
        return self._outcome(job, WorkerState.DEAD_LETTERED, error=str(exc))

    async def _on_transient_error(self, lease: _Lease, exc: Exception, log: Any) -> JobOutcome:
        job = lease.job
        error = str(exc) if isinstance(exc, SyncError) else f"{type(exc).__name__}: {exc}"
        await self._record_mapping_error(job, error)

        if lease.attempts >= job.max_attempts:
            log.error("sync_worker.exhausted", error=error)
            await self._queue.complete(job.id, lease.revision)
            await self._dead_letters.record(
                self._with_attempts(lease), DeadLetterReason.EXHAUSTED, error
            )
            return self._outcome(job, WorkerState.DEAD_LETTERED, error=error)

        retry_after = exc.retry_after if isinstance(exc, TransientSyncError) else None
        delay = compute_backoff(
            job.attempts,
            base_seconds=self._settings.SYNC_BACKOFF_BASE_SECONDS,
            cap_seconds=self._settings.SYNC_BACKOFF_CAP_SECONDS,
            retry_after=retry_after,
        )
        not_before = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await self._queue.reschedule(job.id, lease.revision, not_before, lease.attempts, error[:2000])
        if isinstance(exc, SyncError):
            log.warning("sync_worker.retrying", error=error, delay_seconds=round(delay, 1))
        else:
            log.exception("sync_worker.unexpected_error", delay_seconds=round(delay, 1))
        return self._outcome(job, WorkerState.RETRYING, error=error, not_before=not_before)

    async def _record_mapping_error(self, job: SyncJob, error: str) -> None:
        try:
            entity_type: EntityType = job.entity_type
        except (KeyError, ValueError):
            return
        if job.direction == SyncDirection.OUTBOUND and job.payload.get("local_id"):
            await self._mappings.record_error(
                job.tenant_id, job.provider, entity_type, error, local_id=str(job.payload["local_id"])
            )
        elif job.payload.get("remote_id"):
            await self._mappings.record_error(
                job.tenant_id, job.provider, entity_type, error, remote_id=str(job.payload["remote_id"])
            )

    @staticmethod
    def _with_attempts(lease: _Lease) -> SyncJob:
        return lease.job.model_copy(update={"attempts": lease.attempts})

    @staticmethod
    def _outcome(
        job: SyncJob,
        state: WorkerState,
        *,
        local_id: str | None = None,
        remote_id: str | None = None,
        error: str | None = None,
        not_before: datetime | None = None,
    ) -> JobOutcome:
        return JobOutcome(
            job_id=job.id,
            job_type=job.job_type,
            state=state,
            local_id=local_id,
            remote_id=remote_id,
            error=error,
            not_before=not_before,
        )
