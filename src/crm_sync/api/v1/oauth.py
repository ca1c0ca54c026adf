"""OAuth connect flow endpoints.

GET /oauth/{provider}/authorize is tenant-scoped and returns the consent URL.
GET /oauth/{provider}/callback is hit by the user's browser coming back from
the provider; the tenant travels in the signed ``state`` parameter.
"""

from __future__ import annotations

from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from src.crm_sync.api.deps import get_services, get_tenant, require_service_auth
from src.crm_sync.config import get_settings
from src.crm_sync.core.tenant import TenantContext
from src.crm_sync.integrations.errors import SyncError
from src.crm_sync.integrations.schemas import Provider
from src.crm_sync.integrations.wiring import SyncServices

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


class AuthorizeResponse(BaseModel):
    provider: Provider
    authorize_url: str


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: Provider,
    tenant: TenantContext = Depends(get_tenant),
    _auth: dict = Depends(require_service_auth),
    services: SyncServices = Depends(get_services),
) -> AuthorizeResponse:
    return AuthorizeResponse(
        provider=provider,
        authorize_url=services.oauth.authorize_url(tenant.tenant_id, provider),
    )


def _app_redirect(provider: Provider, **params: str) -> RedirectResponse:
    settings = get_settings()
    query = urlencode({"provider": provider.value, **params})
    return RedirectResponse(
        url=f"{settings.APP_URL.rstrip('/')}/settings/integrations?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/{provider}/callback")
async def callback(
    provider: Provider,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    services: SyncServices = Depends(get_services),
) -> RedirectResponse:
    if error:
        logger.info("oauth.denied", provider=provider.value, error=error)
        return _app_redirect(provider, status="error", reason=error)
    if not code or not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or state")

    try:
        await services.oauth.complete(provider, code, state)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except SyncError as exc:
        logger.warning("oauth.exchange_failed", provider=provider.value, error=exc.message)
        return _app_redirect(provider, status="error", reason="exchange_failed")

    return _app_redirect(provider, status="connected")
