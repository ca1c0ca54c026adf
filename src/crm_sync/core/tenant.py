"""Tenant context propagation via Python contextvars.

The TenantContext is set by middleware at the start of each tenant-scoped
request and is accessible anywhere in the call stack via get_current_tenant().
Webhook and OAuth callback requests are not tenant-scoped by header: the
tenant is resolved from the routing token or the signed OAuth state instead.
"""

from __future__ import annotations

import contextvars
import uuid
from dataclasses import dataclass

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    _tenant_context.reset(token)


# ── Paths that skip tenant resolution ───────────────────────────────────────

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/health",
    "/api/v1/webhooks",
)


def _skips_tenant(path: str) -> bool:
    if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
        return True
    # OAuth callbacks carry the tenant inside the signed state parameter
    return path.startswith("/api/v1/oauth/") and path.endswith("/callback")


# ── Tenant Middleware ───────────────────────────────────────────────────────


class TenantMiddleware(BaseHTTPMiddleware):
    """Middleware that reads the tenant from the X-Tenant-ID header and sets context.

    Paths in SKIP_TENANT_PATHS (and OAuth callbacks) are excluded. The
    header must be a UUID; authorization of the caller against the tenant
    is done by the require_service_auth dependency.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _skips_tenant(request.url.path):
            return await call_next(request)

        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return JSONResponse(status_code=400, content={"detail": "Missing X-Tenant-ID header"})

        try:
            tenant_id = str(uuid.UUID(tenant_id))
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "Malformed X-Tenant-ID header"})

        token = set_tenant_context(TenantContext(tenant_id=tenant_id))
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)
