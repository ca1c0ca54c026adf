"""Pydantic schemas for the sync engine -- jobs, mappings, credentials, webhooks.

Defines all structured types that cross module boundaries:
- Enums: Provider, EntityType, JobType, SyncDirection, ChangeOperation,
  ConnectionStatus, DeadLetterReason, WorkerState, IngestStatus
- Queue: SyncJob
- Identity mapping: MappingRecord
- Credentials: CredentialRecord, TokenGrant, AccessToken
- Provider I/O: InboundEvent, WebhookRequest, RemoteRecord, RemoteWriteResult
- Host CRM I/O: LocalRecord
- Results: IngestResult, JobOutcome, DeadLetterRecord, ConnectionRecord,
  ConnectionOverview

Repositories convert SQLAlchemy rows into these models so that nothing
above the persistence layer touches ORM objects.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class Provider(str, Enum):
    """External CRM/ATS systems the engine can connect to."""

    HUBSPOT = "hubspot"
    BULLHORN = "bullhorn"


class EntityType(str, Enum):
    """Host CRM entity types that participate in sync."""

    CONTACT = "contact"
    DEAL = "deal"
    TASK = "task"
    NOTE = "note"
    QUOTE = "quote"


class JobType(str, Enum):
    """Closed set of queue job types, each bound to a handler in handlers.py."""

    SYNC_CONTACT = "sync-contact"
    SYNC_DEAL = "sync-deal"
    SYNC_TASK = "sync-task"
    SYNC_NOTE = "sync-note"
    PUSH_NOTE = "push-note"
    PUSH_QUOTE = "push-quote"


class SyncDirection(str, Enum):
    """Direction a change travels relative to the host CRM."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"

    @property
    def opposite(self) -> SyncDirection:
        return SyncDirection.OUTBOUND if self is SyncDirection.INBOUND else SyncDirection.INBOUND


class ChangeOperation(str, Enum):
    """Local mutation kinds the Change Detector reacts to."""

    CREATE = "create"
    UPDATE = "update"


class ConnectionStatus(str, Enum):
    """Integration connection status.

    Only CONNECTED and DISCONNECTED are stored. ERROR is derived for display
    when a connection was deactivated by a rejected credential.
    """

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DeadLetterReason(str, Enum):
    """Why a job stopped being retried."""

    EXHAUSTED = "exhausted"
    NON_RETRYABLE = "non_retryable"
    AUTH = "auth"
    SKIPPED = "skipped"


class WorkerState(str, Enum):
    """States of the per-job worker state machine."""

    CLAIMED = "claimed"
    RESOLVING = "resolving"
    CALLING = "calling"
    UPDATING_MAPPING = "updating_mapping"
    DONE = "done"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


class IngestStatus(str, Enum):
    """Outcome of a single webhook event ingest."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


# ── Queue ───────────────────────────────────────────────────────────────────


class SyncJob(BaseModel):
    """One unit of sync work as stored in (and claimed from) the queue.

    ``revision`` increases every time an enqueue with the same dedupe key is
    merged into the row, which lets a worker tell whether the row it leased
    has since absorbed a newer change.
    """

    id: str
    tenant_id: str
    provider: Provider
    job_type: JobType
    priority: int = 0
    not_before: datetime
    attempts: int = 0
    max_attempts: int = 10
    last_error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def direction(self) -> SyncDirection:
        return SyncDirection(self.payload.get("direction", SyncDirection.OUTBOUND.value))

    @property
    def entity_type(self) -> EntityType:
        return EntityType(self.payload["entity_type"])


# ── Identity Mapping ────────────────────────────────────────────────────────


class MappingRecord(BaseModel):
    """Correspondence between a host CRM record and its remote counterpart."""

    id: str
    tenant_id: str
    provider: Provider
    entity_type: EntityType
    local_id: str
    remote_id: str
    last_synced_at: datetime | None = None
    last_seen_remote_modified_at: datetime | None = None
    last_sync_direction: SyncDirection | None = None
    last_sync_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Credentials ─────────────────────────────────────────────────────────────


class TokenGrant(BaseModel):
    """Token pair returned by a provider code exchange or refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    extra: dict[str, Any] = Field(default_factory=dict)


class CredentialRecord(BaseModel):
    """Stored credential for one (tenant, provider). Never leaves tokens.py."""

    tenant_id: str
    provider: Provider
    access_token: str
    refresh_token: str
    expires_at: datetime
    extra: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    updated_at: datetime | None = None


class AccessToken(BaseModel):
    """Valid access token handed to provider adapters for one call."""

    token: str
    expires_at: datetime
    extra: dict[str, Any] = Field(default_factory=dict)
    version: int = 1


# ── Provider I/O ────────────────────────────────────────────────────────────


class WebhookRequest(BaseModel):
    """Raw webhook request as received by the HTTP layer."""

    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class InboundEvent(BaseModel):
    """One provider event parsed out of a webhook body.

    ``entity_type`` is None when the event concerns an object the engine
    does not sync; such events are acknowledged but not queued.
    """

    delivery_id: str
    event_type: str
    occurred_at: datetime | None = None
    entity_type: EntityType | None = None
    remote_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class RemoteRecord(BaseModel):
    """Current state of a record in the external system."""

    remote_id: str
    entity_type: EntityType
    fields: dict[str, Any] = Field(default_factory=dict)
    modified_at: datetime | None = None


class RemoteWriteResult(BaseModel):
    """Result of a create/update against the external system."""

    remote_id: str
    modified_at: datetime | None = None


# ── Host CRM I/O ────────────────────────────────────────────────────────────


class LocalRecord(BaseModel):
    """Current state of a record in the host CRM, re-read at execution time."""

    local_id: str
    entity_type: EntityType
    fields: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None


# ── Results ─────────────────────────────────────────────────────────────────


class IngestResult(BaseModel):
    """Outcome of ingesting one webhook event."""

    status: IngestStatus
    delivery_id: str
    job_id: str | None = None
    reason: str | None = None


class JobOutcome(BaseModel):
    """Terminal (or retry) state reached by the worker for one job."""

    job_id: str
    job_type: JobType
    state: WorkerState
    local_id: str | None = None
    remote_id: str | None = None
    error: str | None = None
    not_before: datetime | None = None


class DeadLetterRecord(BaseModel):
    """Terminal record of a job kept for operator visibility and retry."""

    id: str
    tenant_id: str
    provider: Provider
    job_id: str
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 10
    reason: DeadLetterReason
    error: str | None = None
    provider_error_body: Any = None
    dead_lettered_at: datetime
    retried_at: datetime | None = None


class ConnectionRecord(BaseModel):
    """Integration connection between a tenant and a provider."""

    id: str
    tenant_id: str
    provider: Provider
    status: ConnectionStatus
    remote_account: dict[str, Any] = Field(default_factory=dict)
    webhook_token: str
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None
    disconnect_reason: str | None = None
    last_sync_at: datetime | None = None
    webhook_last_received_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def display_status(self) -> ConnectionStatus:
        """Status shown to users: revoked credentials surface as ERROR."""
        if self.status == ConnectionStatus.DISCONNECTED and self.disconnect_reason == "auth_revoked":
            return ConnectionStatus.ERROR
        return self.status


class ConnectionOverview(BaseModel):
    """Per-provider status row shown to users and operators."""

    provider: Provider
    status: ConnectionStatus
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None
    disconnect_reason: str | None = None
    last_sync_at: datetime | None = None
    webhook_last_received_at: datetime | None = None
    dead_letter_count: int = 0
