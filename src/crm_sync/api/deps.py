"""FastAPI dependency injection for the sync engine services and authentication."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.crm_sync.core.security import verify_service_token
from src.crm_sync.core.tenant import TenantContext, get_current_tenant
from src.crm_sync.integrations.wiring import SyncServices


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantMiddleware)."""
    return get_current_tenant()


async def get_services(request: Request) -> SyncServices:
    """The SyncServices graph built during application startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return services


async def require_service_auth(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> dict:
    """Validate the host CRM's service bearer token for the current tenant.

    Raises:
        HTTPException(401): Missing or invalid token.
        HTTPException(403): Token issued for a different tenant.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_service_token(auth_header[7:])
    if payload["tenant_id"] != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant does not match request tenant context",
        )
    return payload
