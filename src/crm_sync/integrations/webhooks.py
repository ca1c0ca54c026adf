"""Webhook intake -- authenticated, idempotent ingestion of provider events.

The webhook URL carries an opaque per-connection routing token instead of
the tenant id, so a leaked URL cannot be used to enumerate tenants.

Idempotency rests on the unique (tenant, provider, delivery_id) constraint.
The delivery row and the inbound job are written in the same transaction:
either both exist or neither does, so a redelivery after a crash is either
a clean first delivery or a recognised duplicate.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.config import Settings
from src.crm_sync.core.monitoring import webhook_deliveries_total
from src.crm_sync.integrations.errors import MalformedWebhookError, WebhookRejectedError
from src.crm_sync.integrations.handlers import job_type_for
from src.crm_sync.integrations.models import WebhookDeliveryModel
from src.crm_sync.integrations.queue import enqueue_job
from src.crm_sync.integrations.schemas import (
    EntityType,
    IngestResult,
    IngestStatus,
    JobType,
    Provider,
    SyncDirection,
    WebhookRequest,
)

logger = structlog.get_logger(__name__)


def payload_hash(payload: Any) -> str:
    """sha256 of the canonical JSON form of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def inbound_dedupe_key(provider: Provider, entity_type: EntityType, remote_id: str) -> str:
    return f"{provider.value}:inbound:{entity_type.value}:{remote_id}"


# ── Delivery Store ──────────────────────────────────────────────────────────


class WebhookDeliveryRepository:
    """Async access to webhook_deliveries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def accept(
        self,
        *,
        tenant_id: str,
        provider: Provider,
        delivery_id: str,
        event_type: str,
        occurred_at: datetime | None,
        payload: dict[str, Any],
        job_type: JobType,
        job_payload: dict[str, Any],
        dedupe_key: str,
        priority: int,
        max_attempts: int,
    ) -> str | None:
        """Record a delivery and enqueue its job atomically.

        Returns:
            The enqueued job id, or None if the delivery was already recorded.
        """
        insert_delivery = (
            pg_insert(WebhookDeliveryModel)
            .values(
                id=uuid.uuid4(),
                tenant_id=uuid.UUID(tenant_id),
                provider=provider.value,
                delivery_id=delivery_id,
                event_type=event_type,
                occurred_at=occurred_at,
                payload_hash=payload_hash(payload),
                payload=payload,
            )
            .on_conflict_do_nothing(constraint="uq_webhook_delivery")
            .returning(WebhookDeliveryModel.id)
        )

        async for session in self._session_factory():
            result = await session.execute(insert_delivery)
            if result.first() is None:
                await session.rollback()
                return None
            job_id = await enqueue_job(
                session,
                tenant_id=tenant_id,
                provider=provider,
                job_type=job_type,
                priority=priority,
                payload=job_payload,
                not_before=datetime.now(timezone.utc),
                max_attempts=max_attempts,
                dedupe_key=dedupe_key,
            )
            await session.commit()
            return job_id

    async def mark_processed(
        self, tenant_id: str, provider: Provider, delivery_id: str, at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(WebhookDeliveryModel)
                .where(
                    WebhookDeliveryModel.tenant_id == uuid.UUID(tenant_id),
                    WebhookDeliveryModel.provider == provider.value,
                    WebhookDeliveryModel.delivery_id == delivery_id,
                )
                .values(processed_at=at)
            )
            await session.commit()

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete delivery records received before ``cutoff``."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(WebhookDeliveryModel)
                .where(WebhookDeliveryModel.received_at < cutoff)
                .returning(WebhookDeliveryModel.id)
            )
            removed = len(result.all())
            await session.commit()
            return removed


# ── Intake ──────────────────────────────────────────────────────────────────


class WebhookIntake:
    """Authenticates webhook requests and turns their events into inbound jobs.

    Args:
        deliveries: WebhookDeliveryRepository (or a test double).
        connections: ConnectionRepository used to resolve routing tokens.
        providers: ProviderRegistry for signature checks and body parsing.
        settings: Application settings (priorities, max attempts).
        signal: Optional JobSignal used to wake workers.
    """

    def __init__(
        self,
        deliveries: Any,
        connections: Any,
        providers: Any,
        settings: Settings,
        signal: Any = None,
    ) -> None:
        self._deliveries = deliveries
        self._connections = connections
        self._providers = providers
        self._settings = settings
        self._signal = signal

    async def handle(
        self,
        provider: Provider,
        routing_token: str,
        request: WebhookRequest,
        now: datetime | None = None,
    ) -> list[IngestResult]:
        """Verify one webhook request and ingest every event it carries.

        Raises:
            WebhookRejectedError: Unknown or disconnected routing token, or a
                bad/stale signature.
            MalformedWebhookError: Body could not be parsed.
        """
        now = now or datetime.now(timezone.utc)
        connection = await self._connections.get_by_webhook_token(routing_token)
        if connection is None or connection.provider != provider:
            webhook_deliveries_total.labels(provider=provider.value, status="unauthorized").inc()
            raise WebhookRejectedError("Unknown webhook routing token", status_code=401)
        if not connection.is_connected:
            webhook_deliveries_total.labels(provider=provider.value, status="unauthorized").inc()
            raise WebhookRejectedError(
                f"{provider.value} connection is not active", status_code=401
            )

        client = self._providers.get(provider)
        if not client.verify_webhook(request, now):
            webhook_deliveries_total.labels(provider=provider.value, status="bad_signature").inc()
            logger.warning(
                "webhook.bad_signature",
                tenant_id=connection.tenant_id,
                provider=provider.value,
            )
            raise WebhookRejectedError("Invalid webhook signature", status_code=401)

        try:
            events = client.parse_webhook(request.body)
        except MalformedWebhookError:
            webhook_deliveries_total.labels(provider=provider.value, status="malformed").inc()
            raise

        await self._connections.touch_webhook_received(connection.id, now)

        results = []
        for event in events:
            entity_type = event.entity_type
            if entity_type is not None and entity_type not in client.supported_entities:
                entity_type = None
            results.append(
                await self.ingest(
                    connection.tenant_id,
                    provider,
                    delivery_id=event.delivery_id,
                    event_type=event.event_type,
                    occurred_at=event.occurred_at,
                    payload=event.payload,
                    entity_type=entity_type,
                    remote_id=event.remote_id,
                )
            )

        if self._signal is not None and any(r.status == IngestStatus.ACCEPTED for r in results):
            await self._signal.publish(connection.tenant_id, provider.value)
        return results

    async def ingest(
        self,
        tenant_id: str,
        provider: Provider,
        *,
        delivery_id: str,
        event_type: str,
        occurred_at: datetime | None,
        payload: dict[str, Any],
        entity_type: EntityType | None = None,
        remote_id: str | None = None,
    ) -> IngestResult:
        """Record one event and enqueue its inbound job unless it was seen before."""
        job_type = job_type_for(entity_type, SyncDirection.INBOUND) if entity_type else None
        if job_type is None or not remote_id:
            webhook_deliveries_total.labels(provider=provider.value, status="ignored").inc()
            logger.debug(
                "webhook.ignored",
                tenant_id=tenant_id,
                provider=provider.value,
                delivery_id=delivery_id,
                event_type=event_type,
            )
            return IngestResult(
                status=IngestStatus.REJECTED,
                delivery_id=delivery_id,
                reason="ignored",
            )

        job_id = await self._deliveries.accept(
            tenant_id=tenant_id,
            provider=provider,
            delivery_id=delivery_id,
            event_type=event_type,
            occurred_at=occurred_at,
            payload=payload,
            job_type=job_type,
            job_payload={
                "direction": SyncDirection.INBOUND.value,
                "entity_type": entity_type.value,
                "remote_id": remote_id,
                "delivery_id": delivery_id,
                "event_type": event_type,
                "occurred_at": occurred_at.isoformat() if occurred_at else None,
            },
            dedupe_key=inbound_dedupe_key(provider, entity_type, remote_id),
            priority=self._settings.SYNC_INBOUND_PRIORITY,
            max_attempts=self._settings.SYNC_DEFAULT_MAX_ATTEMPTS,
        )

        if job_id is None:
            webhook_deliveries_total.labels(provider=provider.value, status="duplicate").inc()
            logger.info(
                "webhook.duplicate",
                tenant_id=tenant_id,
                provider=provider.value,
                delivery_id=delivery_id,
            )
            return IngestResult(status=IngestStatus.DUPLICATE, delivery_id=delivery_id)

        webhook_deliveries_total.labels(provider=provider.value, status="accepted").inc()
        logger.info(
            "webhook.accepted",
            tenant_id=tenant_id,
            provider=provider.value,
            delivery_id=delivery_id,
            job_id=job_id,
        )
        return IngestResult(status=IngestStatus.ACCEPTED, delivery_id=delivery_id, job_id=job_id)


def retention_cutoff(days: int, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)
