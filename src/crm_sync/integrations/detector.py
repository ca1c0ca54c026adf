"""Change detector -- turns host CRM writes into outbound sync jobs.

The host CRM's write path calls on_entity_changed() after committing a
create or update. The detector decides whether the change is worth syncing
and enqueues one deduplicated job per connected provider. The payload only
names the record; the worker re-reads its current state when it runs.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crm_sync.config import Settings
from src.crm_sync.integrations.handlers import job_type_for
from src.crm_sync.integrations.local import current_sync_origin
from src.crm_sync.integrations.mappings import is_echo
from src.crm_sync.integrations.schemas import (
    ChangeOperation,
    EntityType,
    Provider,
    SyncDirection,
)

logger = structlog.get_logger(__name__)

WATCHED_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.CONTACT: frozenset(
        {"first_name", "last_name", "email", "phone", "mobile", "company", "job_title", "status"}
    ),
    EntityType.DEAL: frozenset(
        {"name", "amount", "stage", "close_date", "pipeline", "status", "employment_type"}
    ),
    EntityType.TASK: frozenset({"subject", "body", "status", "is_completed", "due_date"}),
    EntityType.NOTE: frozenset({"body", "action"}),
    EntityType.QUOTE: frozenset({"title", "expiration_date", "status", "line_items", "amount"}),
}


def outbound_dedupe_key(provider: Provider, entity_type: EntityType, local_id: str) -> str:
    return f"{provider.value}:outbound:{entity_type.value}:{local_id}"


def touches_watched_fields(
    entity_type: EntityType,
    operation: ChangeOperation,
    changed_fields: Iterable[str] | None,
) -> bool:
    """Creates always sync; updates only when a watched field changed.

    ``changed_fields=None`` means the caller does not know, which counts as
    a relevant change.
    """
    if operation == ChangeOperation.CREATE or changed_fields is None:
        return True
    return bool(WATCHED_FIELDS.get(entity_type, frozenset()) & set(changed_fields))


class ChangeDetector:
    """Enqueues outbound jobs for relevant local changes.

    Args:
        connections: ConnectionRepository (list_connected).
        mappings: MappingRepository (list_for_local, for the echo check).
        queue: SyncQueueRepository.
        providers: ProviderRegistry, used to skip entities a provider cannot hold.
        settings: Application settings (echo window, priority, max attempts).
        signal: Optional JobSignal used to wake workers.
    """

    def __init__(
        self,
        connections: Any,
        mappings: Any,
        queue: Any,
        providers: Any,
        settings: Settings,
        signal: Any = None,
    ) -> None:
        self._connections = connections
        self._mappings = mappings
        self._queue = queue
        self._providers = providers
        self._settings = settings
        self._signal = signal

    async def on_entity_changed(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str,
        operation: ChangeOperation,
        changed_fields: Iterable[str] | None = None,
        origin: str | None = None,
    ) -> list[str]:
        """Enqueue outbound jobs for one local change.

        Returns:
            Ids of the jobs enqueued (or merged into). Empty when the change
            was irrelevant, suppressed, or no provider is connected.
        """
        log = logger.bind(
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            local_id=local_id,
            operation=operation.value,
        )

        if not touches_watched_fields(entity_type, operation, changed_fields):
            log.debug("change_detector.unwatched_fields")
            return []

        origin = origin or current_sync_origin()
        if origin and origin.startswith("inbound"):
            log.debug("change_detector.inbound_origin_suppressed", origin=origin)
            return []

        job_type = job_type_for(entity_type, SyncDirection.OUTBOUND)
        if job_type is None:
            return []

        connections = await self._connections.list_connected(tenant_id)
        if not connections:
            return []

        mappings = {
            m.provider: m
            for m in await self._mappings.list_for_local(tenant_id, entity_type, local_id)
        }
        now = datetime.now(timezone.utc)
        job_ids: list[str] = []

        for connection in connections:
            provider = connection.provider
            if provider not in self._providers:
                continue
            if entity_type not in self._providers.get(provider).supported_entities:
                log.debug("change_detector.unsupported", provider=provider.value)
                continue
            if is_echo(
                mappings.get(provider),
                SyncDirection.OUTBOUND,
                now,
                self._settings.SYNC_ECHO_WINDOW_SECONDS,
            ):
                log.info("change_detector.echo_suppressed", provider=provider.value)
                continue

            job_id = await self._queue.enqueue(
                tenant_id,
                provider,
                job_type,
                priority=self._settings.SYNC_OUTBOUND_PRIORITY,
                payload={
                    "direction": SyncDirection.OUTBOUND.value,
                    "entity_type": entity_type.value,
                    "local_id": local_id,
                    "operation": operation.value,
                },
                dedupe_key=outbound_dedupe_key(provider, entity_type, local_id),
                max_attempts=self._settings.SYNC_DEFAULT_MAX_ATTEMPTS,
            )
            job_ids.append(job_id)
            if self._signal is not None:
                await self._signal.publish(tenant_id, provider.value)

        if job_ids:
            log.info("change_detector.enqueued", job_ids=job_ids)
        return job_ids
