"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization and the sync
engine services, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm_sync.api.middleware import LoggingMiddleware, TenantMiddleware
from src.crm_sync.api.middleware.logging import configure_structlog
from src.crm_sync.api.v1 import health
from src.crm_sync.api.v1.router import router as v1_router
from src.crm_sync.config import get_settings
from src.crm_sync.core.database import close_db, init_db
from src.crm_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm_sync.core.redis import close_redis, get_redis_pool
from src.crm_sync.integrations.scheduler import SyncScheduler
from src.crm_sync.integrations.wiring import build_services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync services; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    services = build_services(settings, redis=get_redis_pool())
    app.state.services = services
    log.info("sync_engine.services_initialized", providers=len(services.providers))

    # Maintenance jobs are optional for serving traffic
    scheduler = SyncScheduler(services.maintenance)
    try:
        scheduler.start()
        app.state.sync_scheduler = scheduler
    except Exception:
        log.warning("sync_engine.scheduler_start_failed", exc_info=True)
        app.state.sync_scheduler = None

    yield

    sync_scheduler = getattr(app.state, "sync_scheduler", None)
    if sync_scheduler is not None:
        sync_scheduler.shutdown()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync Engine",
        version="0.1.0",
        description="Bidirectional sync between the host CRM and external CRM/ATS providers",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from X-Tenant-ID)
    app.add_middleware(TenantMiddleware)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Probes at the root, everything else under /api/v1
    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
