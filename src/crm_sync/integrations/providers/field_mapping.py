"""Field name mappings between host CRM records and provider payloads.

Defines:
- HUBSPOT_FIELD_MAP / BULLHORN_FIELD_MAP: internal field -> provider property
  per entity type.
- to_remote_fields(): Converts host CRM fields to provider property names.
- from_remote_fields(): Converts provider properties back to host CRM names.

Fields without an entry are passed through under their own name, so tenants
with custom properties do not need code changes.
"""

from __future__ import annotations

from typing import Any

from src.crm_sync.integrations.schemas import EntityType

FieldMap = dict[EntityType, dict[str, str]]


# ── HubSpot ────────────────────────────────────────────────────────────────

HUBSPOT_FIELD_MAP: FieldMap = {
    EntityType.CONTACT: {
        "first_name": "firstname",
        "last_name": "lastname",
        "email": "email",
        "phone": "phone",
        "company": "company",
        "job_title": "jobtitle",
    },
    EntityType.DEAL: {
        "name": "dealname",
        "amount": "amount",
        "stage": "dealstage",
        "close_date": "closedate",
        "pipeline": "pipeline",
    },
    EntityType.TASK: {
        "subject": "hs_task_subject",
        "body": "hs_task_body",
        "status": "hs_task_status",
        "due_date": "hs_timestamp",
    },
    EntityType.NOTE: {
        "body": "hs_note_body",
        "created_at": "hs_timestamp",
    },
    EntityType.QUOTE: {
        "title": "hs_title",
        "expiration_date": "hs_expiration_date",
        "status": "hs_status",
    },
}


# ── Bullhorn ───────────────────────────────────────────────────────────────

BULLHORN_FIELD_MAP: FieldMap = {
    EntityType.CONTACT: {
        "first_name": "firstName",
        "last_name": "lastName",
        "email": "email",
        "phone": "phone",
        "mobile": "mobile",
        "status": "status",
    },
    EntityType.DEAL: {
        "name": "title",
        "status": "status",
        "employment_type": "employmentType",
    },
    EntityType.TASK: {
        "subject": "subject",
        "body": "description",
        "status": "status",
        "is_completed": "isCompleted",
        "due_date": "dateEnd",
    },
    EntityType.NOTE: {
        "body": "comments",
        "action": "action",
    },
}


# ── Conversion Functions ───────────────────────────────────────────────────


def to_remote_fields(
    data: dict[str, Any],
    entity_type: EntityType,
    field_map: FieldMap,
) -> dict[str, Any]:
    """Rename host CRM fields to provider property names. None values are dropped."""
    mapping = field_map.get(entity_type, {})
    return {mapping.get(key, key): value for key, value in data.items() if value is not None}


def from_remote_fields(
    data: dict[str, Any],
    entity_type: EntityType,
    field_map: FieldMap,
) -> dict[str, Any]:
    """Rename provider properties back to host CRM field names."""
    reverse = {remote: local for local, remote in field_map.get(entity_type, {}).items()}
    return {reverse.get(key, key): value for key, value in data.items()}
