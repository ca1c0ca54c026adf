"""Tenant-scoped integration endpoints used by the host CRM.

Connection status, disconnect, the change-notification entry point,
mapping lookups for "synced" badges, and dead-letter operations. All
endpoints require X-Tenant-ID and a service bearer token for that tenant.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.crm_sync.api.deps import get_services, get_tenant, require_service_auth
from src.crm_sync.core.tenant import TenantContext
from src.crm_sync.integrations.schemas import (
    ChangeOperation,
    ConnectionOverview,
    DeadLetterRecord,
    EntityType,
    MappingRecord,
    Provider,
)
from src.crm_sync.integrations.wiring import SyncServices

router = APIRouter(
    prefix="/integrations",
    tags=["integrations"],
    dependencies=[Depends(require_service_auth)],
)


# ── Request / Response Schemas ───────────────────────────────────────────────


class ChangeNotification(BaseModel):
    """A host CRM record was created or updated."""

    entity_type: EntityType
    local_id: str
    operation: ChangeOperation
    changed_fields: list[str] | None = None
    origin: str | None = None


class ChangeResponse(BaseModel):
    job_ids: list[str] = Field(default_factory=list)


class DisconnectResponse(BaseModel):
    provider: Provider
    status: str
    disconnected_at: datetime | None = None


class RetryResponse(BaseModel):
    dead_letter_id: str
    job_id: str


# ── Connections ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[ConnectionOverview])
async def list_integrations(
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> list[ConnectionOverview]:
    return await services.connection_service.overview(tenant.tenant_id)


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(
    provider: Provider,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> DisconnectResponse:
    connection = await services.connection_service.disconnect(tenant.tenant_id, provider)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {provider.value} connection",
        )
    return DisconnectResponse(
        provider=provider,
        status=connection.status.value,
        disconnected_at=connection.disconnected_at,
    )


# ── Change Detection ─────────────────────────────────────────────────────────


@router.post("/changes", response_model=ChangeResponse, status_code=status.HTTP_202_ACCEPTED)
async def notify_change(
    body: ChangeNotification,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> ChangeResponse:
    job_ids = await services.detector.on_entity_changed(
        tenant.tenant_id,
        body.entity_type,
        body.local_id,
        body.operation,
        changed_fields=body.changed_fields,
        origin=body.origin,
    )
    return ChangeResponse(job_ids=job_ids)


# ── Mappings ─────────────────────────────────────────────────────────────────


@router.get("/mappings/{entity_type}/{local_id}", response_model=MappingRecord)
async def get_mapping(
    entity_type: EntityType,
    local_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> MappingRecord:
    mapping = await services.mappings.get_mapping(tenant.tenant_id, entity_type, local_id)
    if mapping is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record is not synced")
    return mapping


# ── Dead Letters ─────────────────────────────────────────────────────────────


@router.get("/dead-letters", response_model=list[DeadLetterRecord])
async def list_dead_letters(
    provider: Provider | None = None,
    include_retried: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> list[DeadLetterRecord]:
    return await services.dead_letters.list_for_tenant(
        tenant.tenant_id,
        provider=provider,
        include_retried=include_retried,
        limit=limit,
    )


@router.post("/dead-letters/{dead_letter_id}/retry", response_model=RetryResponse)
async def retry_dead_letter(
    dead_letter_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> RetryResponse:
    try:
        job_id = await services.dead_letter_service.retry(tenant.tenant_id, dead_letter_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return RetryResponse(dead_letter_id=dead_letter_id, job_id=job_id)
