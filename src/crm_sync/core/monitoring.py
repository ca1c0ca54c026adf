"""Prometheus metrics, Sentry integration, and sync job tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- track_sync_job(): Context manager for per-job outcome and duration metrics
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_jobs_enqueued_total = Counter(
    "sync_jobs_enqueued_total",
    "Sync jobs enqueued (including dedupe merges)",
    ["provider", "job_type"],
)

sync_jobs_claimed_total = Counter(
    "sync_jobs_claimed_total",
    "Sync jobs claimed by workers",
    ["provider"],
)

sync_job_outcomes_total = Counter(
    "sync_job_outcomes_total",
    "Terminal or retry state reached per sync job",
    ["provider", "job_type", "state"],
)

sync_job_duration_seconds = Histogram(
    "sync_job_duration_seconds",
    "Time spent executing one sync job",
    ["provider", "job_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

sync_dead_letters_total = Counter(
    "sync_dead_letters_total",
    "Jobs moved to the dead-letter store",
    ["provider", "reason"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook events by ingest status",
    ["provider", "status"],
)

token_refreshes_total = Counter(
    "token_refreshes_total",
    "OAuth token refresh attempts",
    ["provider", "result"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Extracts tenant_id from the request context (if available) and records
    request count and duration per method/endpoint/tenant.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        tenant_id = "unknown"
        try:
            from src.crm_sync.core.tenant import get_current_tenant

            tenant_id = get_current_tenant().tenant_id
        except (RuntimeError, LookupError):
            pass

        # Webhook paths embed the routing token; collapse them to keep cardinality bounded
        endpoint = request.url.path
        if endpoint.startswith("/api/v1/webhooks/"):
            endpoint = "/".join(endpoint.split("/")[:5]) + "/{routing_token}"

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Sync Job Helper ─────────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_job(
    provider: str,
    job_type: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync job execution.

    Usage:
        async with track_sync_job("hubspot", "sync-deal") as tracker:
            outcome = await worker.process(job)
            tracker["state"] = outcome.state.value

    Records duration and the final state. An exception escaping the block
    is counted as state "error" and re-raised.
    """
    tracker: dict[str, Any] = {"state": "unknown"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["state"] = "error"
        raise
    finally:
        sync_job_duration_seconds.labels(
            provider=provider,
            job_type=job_type,
        ).observe(time.perf_counter() - start_time)

        sync_job_outcomes_total.labels(
            provider=provider,
            job_type=job_type,
            state=tracker["state"],
        ).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add tenant context to Sentry events."""
        try:
            from src.crm_sync.core.tenant import get_current_tenant

            ctx = get_current_tenant()
            event.setdefault("tags", {})["tenant_id"] = ctx.tenant_id
        except (RuntimeError, LookupError):
            pass
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
