"""Bidirectional CRM sync engine.

Keeps contacts, deals, tasks, notes and quotes consistent between the host
CRM and external providers (HubSpot, Bullhorn):
- Change Detector / Webhook Intake enqueue deduplicated sync jobs
- DequeueCoordinator claims ready jobs with FOR UPDATE SKIP LOCKED
- SyncWorker executes one job through the identity mapping store and the
  provider adapter, guarded by the TokenRefresher
- Terminal failures land in the dead-letter store for operator retry

Usage:
    from src.crm_sync.integrations.wiring import build_services

    services = build_services(settings)
    await services.detector.on_entity_changed(tenant_id, EntityType.DEAL, deal_id, ...)
"""

from __future__ import annotations

from src.crm_sync.integrations.errors import (
    AuthSyncError,
    SyncError,
    TransientSyncError,
    UnsupportedEntityError,
    ValidationSyncError,
)
from src.crm_sync.integrations.schemas import (
    EntityType,
    JobType,
    Provider,
    SyncDirection,
    SyncJob,
)

__all__ = [
    "AuthSyncError",
    "EntityType",
    "JobType",
    "Provider",
    "SyncDirection",
    "SyncError",
    "SyncJob",
    "TransientSyncError",
    "UnsupportedEntityError",
    "ValidationSyncError",
]
