"""Object graph for the sync engine.

build_services() constructs every repository and service once. The API
process and the worker process both call it; tests call it with doubles
or build the pieces by hand.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.config import Settings
from src.crm_sync.core.database import get_session
from src.crm_sync.core.redis import JobSignal
from src.crm_sync.integrations.connections import ConnectionRepository, ConnectionService
from src.crm_sync.integrations.coordinator import DequeueCoordinator
from src.crm_sync.integrations.credentials import CredentialRepository
from src.crm_sync.integrations.dead_letters import DeadLetterRepository, DeadLetterService
from src.crm_sync.integrations.detector import ChangeDetector
from src.crm_sync.integrations.handlers import validate_handlers
from src.crm_sync.integrations.local import HostCRMClient, LocalRecordSource
from src.crm_sync.integrations.mappings import MappingRepository
from src.crm_sync.integrations.oauth import OAuthService
from src.crm_sync.integrations.providers import ProviderRegistry, build_default_registry
from src.crm_sync.integrations.queue import SyncQueueRepository
from src.crm_sync.integrations.scheduler import SyncMaintenance
from src.crm_sync.integrations.tokens import KeyedLock, TokenRefresher
from src.crm_sync.integrations.webhooks import WebhookDeliveryRepository, WebhookIntake
from src.crm_sync.integrations.worker import SyncWorker


@dataclass
class SyncServices:
    queue: SyncQueueRepository
    coordinator: DequeueCoordinator
    credentials: CredentialRepository
    connections: ConnectionRepository
    mappings: MappingRepository
    deliveries: WebhookDeliveryRepository
    dead_letters: DeadLetterRepository
    providers: ProviderRegistry
    connection_service: ConnectionService
    dead_letter_service: DeadLetterService
    tokens: TokenRefresher
    detector: ChangeDetector
    intake: WebhookIntake
    oauth: OAuthService
    worker: SyncWorker
    maintenance: SyncMaintenance


def build_services(
    settings: Settings,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]] = get_session,
    redis: aioredis.Redis | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    local: LocalRecordSource | None = None,
    providers: ProviderRegistry | None = None,
) -> SyncServices:
    """Wire the engine.

    Args:
        settings: Application settings.
        session_factory: Async generator yielding sessions (get_session by default).
        redis: Redis client for the cross-process refresh lock and job signal.
            None keeps both in-process.
        transport: httpx transport shared by provider adapters and the host CRM client.
        local: Host CRM record source; defaults to HostCRMClient.
        providers: Provider registry; defaults to every built-in adapter.
    """
    validate_handlers()

    queue = SyncQueueRepository(session_factory, settings.SYNC_DEFAULT_MAX_ATTEMPTS)
    credentials = CredentialRepository(session_factory)
    connections = ConnectionRepository(session_factory)
    mappings = MappingRepository(session_factory)
    deliveries = WebhookDeliveryRepository(session_factory)
    dead_letters = DeadLetterRepository(session_factory)
    providers = providers or build_default_registry(settings, transport=transport)
    signal = JobSignal(redis) if redis is not None else None

    connection_service = ConnectionService(connections, credentials, queue, dead_letters)
    tokens = TokenRefresher(
        credentials,
        providers,
        connection_service,
        lock=KeyedLock(redis, timeout=settings.SYNC_REFRESH_LOCK_TIMEOUT_SECONDS),
        margin_seconds=settings.SYNC_TOKEN_REFRESH_MARGIN_SECONDS,
    )

    worker = SyncWorker(
        queue=queue,
        mappings=mappings,
        connections=connections,
        connection_service=connection_service,
        tokens=tokens,
        providers=providers,
        local=local or HostCRMClient(settings, transport=transport),
        deliveries=deliveries,
        dead_letters=dead_letters,
        settings=settings,
    )

    return SyncServices(
        queue=queue,
        coordinator=DequeueCoordinator(queue),
        credentials=credentials,
        connections=connections,
        mappings=mappings,
        deliveries=deliveries,
        dead_letters=dead_letters,
        providers=providers,
        connection_service=connection_service,
        dead_letter_service=DeadLetterService(dead_letters, queue, connections),
        tokens=tokens,
        detector=ChangeDetector(connections, mappings, queue, providers, settings, signal=signal),
        intake=WebhookIntake(deliveries, connections, providers, settings, signal=signal),
        oauth=OAuthService(providers, connection_service, settings),
        worker=worker,
        maintenance=SyncMaintenance(deliveries, credentials, tokens, queue, dead_letters, settings),
    )
