"""Job handler table.

Every JobType is bound to exactly one JobHandler describing which entity
it moves and in which directions. The worker dispatches through this table;
validate_handlers() runs at startup so an enum member without a handler
fails the boot rather than the first job.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.crm_sync.integrations.schemas import EntityType, JobType, SyncDirection


@dataclass(frozen=True)
class JobHandler:
    """What a job type does.

    Attributes:
        entity_type: Host CRM entity the job moves.
        directions: Directions the job may run in.
        create_only: Outbound pushes that never update an existing remote
            record (notes and quotes are append-only on the remote side).
    """

    entity_type: EntityType
    directions: frozenset[SyncDirection]
    create_only: bool = False

    def supports(self, direction: SyncDirection) -> bool:
        return direction in self.directions


_BOTH = frozenset({SyncDirection.INBOUND, SyncDirection.OUTBOUND})

HANDLERS: dict[JobType, JobHandler] = {
    JobType.SYNC_CONTACT: JobHandler(EntityType.CONTACT, _BOTH),
    JobType.SYNC_DEAL: JobHandler(EntityType.DEAL, _BOTH),
    JobType.SYNC_TASK: JobHandler(EntityType.TASK, _BOTH),
    JobType.SYNC_NOTE: JobHandler(EntityType.NOTE, frozenset({SyncDirection.INBOUND})),
    JobType.PUSH_NOTE: JobHandler(
        EntityType.NOTE, frozenset({SyncDirection.OUTBOUND}), create_only=True
    ),
    JobType.PUSH_QUOTE: JobHandler(
        EntityType.QUOTE, frozenset({SyncDirection.OUTBOUND}), create_only=True
    ),
}


def validate_handlers() -> None:
    """Fail fast if the handler table and the JobType enum disagree."""
    missing = [job_type.value for job_type in JobType if job_type not in HANDLERS]
    if missing:
        raise RuntimeError(f"Job types without a handler: {', '.join(missing)}")


def get_handler(job_type: JobType) -> JobHandler:
    return HANDLERS[job_type]


def job_type_for(entity_type: EntityType, direction: SyncDirection) -> JobType | None:
    """Job type that moves ``entity_type`` in ``direction``, or None if nothing does."""
    for job_type, handler in HANDLERS.items():
        if handler.entity_type == entity_type and handler.supports(direction):
            return job_type
    return None
