"""Test fixtures for the sync engine.

Provides:
- Settings with deterministic sync tunables (no .env)
- SyncHarness: the real services (worker, detector, intake, token refresher,
  connection service) wired onto the in-memory doubles in tests/doubles.py
- An API client over httpx ASGITransport with the harness installed on
  app.state.services and a service token for the test tenant

No database, Redis or network access is needed.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.crm_sync.config import Settings
from src.crm_sync.core.security import create_service_token
from src.crm_sync.integrations.connections import ConnectionService
from src.crm_sync.integrations.coordinator import DequeueCoordinator
from src.crm_sync.integrations.dead_letters import DeadLetterService
from src.crm_sync.integrations.detector import ChangeDetector
from src.crm_sync.integrations.oauth import OAuthService
from src.crm_sync.integrations.providers.registry import ProviderRegistry
from src.crm_sync.integrations.scheduler import SyncMaintenance
from src.crm_sync.integrations.schemas import ConnectionRecord, EntityType, JobOutcome, Provider
from src.crm_sync.integrations.tokens import TokenRefresher
from src.crm_sync.integrations.webhooks import WebhookIntake
from src.crm_sync.integrations.wiring import SyncServices
from src.crm_sync.integrations.worker import SyncWorker

from tests.doubles import (
    TENANT_ID,
    FakeLocalSource,
    FakeProviderClient,
    InMemoryConnections,
    InMemoryCredentials,
    InMemoryDeadLetters,
    InMemoryDeliveries,
    InMemoryMappings,
    InMemoryQueue,
)


# ── Harness ─────────────────────────────────────────────────────────────────


@dataclass
class SyncHarness:
    settings: Settings
    queue: InMemoryQueue
    mappings: InMemoryMappings
    connections: InMemoryConnections
    credentials: InMemoryCredentials
    dead_letters: InMemoryDeadLetters
    deliveries: InMemoryDeliveries
    local: FakeLocalSource
    hubspot: FakeProviderClient
    bullhorn: FakeProviderClient
    providers: ProviderRegistry
    connection_service: ConnectionService
    tokens: TokenRefresher
    detector: ChangeDetector
    intake: WebhookIntake
    worker: SyncWorker

    def connect(
        self, provider: Provider = Provider.HUBSPOT, tenant_id: str = TENANT_ID, **kwargs: Any
    ) -> ConnectionRecord:
        """Connected connection plus a fresh credential."""
        self.credentials.add(tenant_id, provider)
        return self.connections.add(tenant_id, provider, **kwargs)

    async def run_next(self) -> JobOutcome:
        """Claim one job and run it through the worker."""
        jobs = await self.queue.claim(1)
        assert jobs, "queue has no ready job"
        return await self.worker.process(jobs[0])

    def services(self) -> SyncServices:
        """SyncServices view over the harness for the API layer."""
        dead_letter_service = DeadLetterService(self.dead_letters, self.queue, self.connections)
        return SyncServices(
            queue=self.queue,
            coordinator=DequeueCoordinator(self.queue),
            credentials=self.credentials,
            connections=self.connections,
            mappings=self.mappings,
            deliveries=self.deliveries,
            dead_letters=self.dead_letters,
            providers=self.providers,
            connection_service=self.connection_service,
            dead_letter_service=dead_letter_service,
            tokens=self.tokens,
            detector=self.detector,
            intake=self.intake,
            oauth=OAuthService(self.providers, self.connection_service, self.settings),
            worker=self.worker,
            maintenance=SyncMaintenance(
                self.deliveries,
                self.credentials,
                self.tokens,
                self.queue,
                self.dead_letters,
                self.settings,
            ),
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SYNC_ECHO_WINDOW_SECONDS=30,
        SYNC_DEFAULT_MAX_ATTEMPTS=3,
        SYNC_BACKOFF_BASE_SECONDS=30,
        SYNC_BACKOFF_CAP_SECONDS=3600,
        SYNC_LEASE_SECONDS=300,
        SYNC_TOKEN_REFRESH_MARGIN_SECONDS=300,
        BULLHORN_WEBHOOK_SECRET="bullhorn-secret",
        HUBSPOT_CLIENT_SECRET="hubspot-secret",
    )


@pytest.fixture
def harness(settings: Settings) -> SyncHarness:
    queue = InMemoryQueue(settings.SYNC_DEFAULT_MAX_ATTEMPTS)
    mappings = InMemoryMappings()
    connections = InMemoryConnections()
    credentials = InMemoryCredentials()
    dead_letters = InMemoryDeadLetters()
    deliveries = InMemoryDeliveries(queue)
    local = FakeLocalSource()
    hubspot = FakeProviderClient(Provider.HUBSPOT)
    bullhorn = FakeProviderClient(
        Provider.BULLHORN,
        frozenset({EntityType.CONTACT, EntityType.DEAL, EntityType.TASK, EntityType.NOTE}),
    )
    providers = ProviderRegistry([hubspot, bullhorn])

    connection_service = ConnectionService(connections, credentials, queue, dead_letters)
    tokens = TokenRefresher(
        credentials,
        providers,
        connection_service,
        margin_seconds=settings.SYNC_TOKEN_REFRESH_MARGIN_SECONDS,
    )
    worker = SyncWorker(
        queue=queue,
        mappings=mappings,
        connections=connections,
        connection_service=connection_service,
        tokens=tokens,
        providers=providers,
        local=local,
        deliveries=deliveries,
        dead_letters=dead_letters,
        settings=settings,
    )
    return SyncHarness(
        settings=settings,
        queue=queue,
        mappings=mappings,
        connections=connections,
        credentials=credentials,
        dead_letters=dead_letters,
        deliveries=deliveries,
        local=local,
        hubspot=hubspot,
        bullhorn=bullhorn,
        providers=providers,
        connection_service=connection_service,
        tokens=tokens,
        detector=ChangeDetector(connections, mappings, queue, providers, settings),
        intake=WebhookIntake(deliveries, connections, providers, settings),
        worker=worker,
    )


# ── API ─────────────────────────────────────────────────────────────────────


@pytest.fixture
def app(harness: SyncHarness):
    """FastAPI app with the harness services installed (lifespan is not run)."""
    from src.crm_sync.main import create_app

    application = create_app()
    application.state.services = harness.services()
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Tenant header plus a service bearer token for TENANT_ID."""
    return {
        "X-Tenant-ID": TENANT_ID,
        "Authorization": f"Bearer {create_service_token(TENANT_ID)}",
    }
