"""Create the sync engine tables.

Revision ID: 001_sync_engine
Revises:
Create Date: 2026-10-17

Creates six tables in the "integrations" schema:
- integration_credentials: versioned OAuth tokens per (tenant, provider)
- integration_connections: connection lifecycle and webhook routing token
- object_mappings: local id <-> remote id, unique in both directions
- webhook_deliveries: delivery idempotency records
- sync_jobs: the durable queue (partial unique index on dedupe_key)
- sync_dead_letters: terminal job records
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_sync_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = "integrations"


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _jsonb(name: str) -> sa.Column:
    return sa.Column(name, JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.execute(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"')

    # ── integration_credentials ─────────────────────────────────────────

    op.create_table(
        "integration_credentials",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        _jsonb("extra"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_credential_tenant_provider"),
        schema=SCHEMA,
    )

    # ── integration_connections ─────────────────────────────────────────

    op.create_table(
        "integration_connections",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'connected'"), nullable=False),
        _jsonb("remote_account"),
        sa.Column("webhook_token", sa.String(64), nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disconnect_reason", sa.String(50), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_last_received_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_connection_tenant_provider"),
        sa.UniqueConstraint("webhook_token", name="uq_connection_webhook_token"),
        schema=SCHEMA,
    )

    # ── object_mappings ─────────────────────────────────────────────────

    op.create_table(
        "object_mappings",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("local_id", sa.String(200), nullable=False),
        sa.Column("remote_id", sa.String(200), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_remote_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_direction", sa.String(10), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "provider", "entity_type", "local_id", name="uq_mapping_local"
        ),
        sa.UniqueConstraint(
            "tenant_id", "provider", "entity_type", "remote_id", name="uq_mapping_remote"
        ),
        schema=SCHEMA,
    )

    # ── webhook_deliveries ──────────────────────────────────────────────

    op.create_table(
        "webhook_deliveries",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("delivery_id", sa.String(200), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        _jsonb("payload"),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "provider", "delivery_id", name="uq_webhook_delivery"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_webhook_deliveries_received_at",
        "webhook_deliveries",
        ["received_at"],
        schema=SCHEMA,
    )

    # ── sync_jobs ───────────────────────────────────────────────────────

    op.create_table(
        "sync_jobs",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("not_before", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("10"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _jsonb("payload"),
        sa.Column("dedupe_key", sa.String(300), nullable=True),
        sa.Column("revision", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema=SCHEMA,
    )
    op.create_index(
        "uq_sync_jobs_tenant_dedupe",
        "sync_jobs",
        ["tenant_id", "dedupe_key"],
        unique=True,
        postgresql_where=sa.text("dedupe_key IS NOT NULL"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_sync_jobs_ready",
        "sync_jobs",
        [sa.text("priority DESC"), "not_before", "created_at"],
        schema=SCHEMA,
    )
    op.create_index(
        "ix_sync_jobs_tenant_provider",
        "sync_jobs",
        ["tenant_id", "provider"],
        schema=SCHEMA,
    )

    # ── sync_dead_letters ───────────────────────────────────────────────

    op.create_table(
        "sync_dead_letters",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _jsonb("payload"),
        sa.Column("dedupe_key", sa.String(300), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("10"), nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("provider_error_body", JSONB(), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("retried_at", sa.DateTime(timezone=True), nullable=True),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_sync_dead_letters_tenant_provider",
        "sync_dead_letters",
        ["tenant_id", "provider"],
        schema=SCHEMA,
    )


def downgrade() -> None:
    op.drop_table("sync_dead_letters", schema=SCHEMA)
    op.drop_table("sync_jobs", schema=SCHEMA)
    op.drop_table("webhook_deliveries", schema=SCHEMA)
    op.drop_table("object_mappings", schema=SCHEMA)
    op.drop_table("integration_connections", schema=SCHEMA)
    op.drop_table("integration_credentials", schema=SCHEMA)
