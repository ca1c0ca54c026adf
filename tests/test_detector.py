"""Change detector tests: relevance filtering, loop suppression, dedupe."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.crm_sync.integrations.detector import (
    ChangeDetector,
    outbound_dedupe_key,
    touches_watched_fields,
)
from src.crm_sync.integrations.local import applying_inbound, current_sync_origin
from src.crm_sync.integrations.mappings import is_echo
from src.crm_sync.integrations.schemas import (
    ChangeOperation,
    EntityType,
    JobType,
    MappingRecord,
    Provider,
    SyncDirection,
)

from tests.doubles import OTHER_TENANT_ID, TENANT_ID, utcnow

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _mapping(direction: SyncDirection | None, synced_ago: float | None) -> MappingRecord:
    return MappingRecord(
        id="m-1",
        tenant_id=TENANT_ID,
        provider=Provider.HUBSPOT,
        entity_type=EntityType.CONTACT,
        local_id="C1",
        remote_id="501",
        last_synced_at=NOW - timedelta(seconds=synced_ago) if synced_ago is not None else None,
        last_sync_direction=direction,
    )


# ── Pure Helpers ────────────────────────────────────────────────────────────


class TestIsEcho:
    def test_no_mapping(self):
        assert not is_echo(None, SyncDirection.OUTBOUND, NOW, 30)

    def test_opposite_direction_inside_window(self):
        assert is_echo(_mapping(SyncDirection.INBOUND, 10), SyncDirection.OUTBOUND, NOW, 30)
        assert is_echo(_mapping(SyncDirection.OUTBOUND, 30), SyncDirection.INBOUND, NOW, 30)

    def test_same_direction_is_never_an_echo(self):
        assert not is_echo(_mapping(SyncDirection.OUTBOUND, 1), SyncDirection.OUTBOUND, NOW, 30)

    def test_outside_window(self):
        assert not is_echo(_mapping(SyncDirection.INBOUND, 31), SyncDirection.OUTBOUND, NOW, 30)

    def test_never_synced(self):
        assert not is_echo(_mapping(None, None), SyncDirection.OUTBOUND, NOW, 30)


@pytest.mark.parametrize(
    ("entity_type", "operation", "fields", "expected"),
    [
        (EntityType.DEAL, ChangeOperation.CREATE, [], True),
        (EntityType.DEAL, ChangeOperation.UPDATE, None, True),
        (EntityType.DEAL, ChangeOperation.UPDATE, ["amount", "internal_score"], True),
        (EntityType.DEAL, ChangeOperation.UPDATE, ["internal_score"], False),
        (EntityType.CONTACT, ChangeOperation.UPDATE, ["email"], True),
        (EntityType.TASK, ChangeOperation.UPDATE, ["viewed_at"], False),
    ],
)
def test_touches_watched_fields(entity_type, operation, fields, expected):
    assert touches_watched_fields(entity_type, operation, fields) is expected


def test_outbound_dedupe_key():
    assert outbound_dedupe_key(Provider.HUBSPOT, EntityType.DEAL, "D1") == "hubspot:outbound:deal:D1"


def test_applying_inbound_scopes_origin():
    assert current_sync_origin() is None
    with applying_inbound("bullhorn"):
        assert current_sync_origin() == "inbound:bullhorn"
    assert current_sync_origin() is None


# ── Detector ────────────────────────────────────────────────────────────────


class TestChangeDetector:
    async def test_no_connection_no_jobs(self, harness):
        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.CONTACT, "C1", ChangeOperation.CREATE
        )

        assert job_ids == []
        assert harness.queue.jobs == {}

    async def test_one_job_per_connected_provider(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        harness.connect(Provider.HUBSPOT, tenant_id=OTHER_TENANT_ID)

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.CONTACT, "C1", ChangeOperation.CREATE
        )

        assert len(job_ids) == 2
        jobs = [harness.queue.jobs[j] for j in job_ids]
        assert {j.provider for j in jobs} == {Provider.HUBSPOT, Provider.BULLHORN}
        assert all(j.tenant_id == TENANT_ID for j in jobs)
        assert all(j.job_type == JobType.SYNC_CONTACT for j in jobs)
        assert all(j.priority == harness.settings.SYNC_OUTBOUND_PRIORITY for j in jobs)
        assert jobs[0].payload == {
            "direction": "outbound",
            "entity_type": "contact",
            "local_id": "C1",
            "operation": "create",
        }

    async def test_unwatched_update_is_ignored(self, harness):
        harness.connect(Provider.HUBSPOT)

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.DEAL, "D1", ChangeOperation.UPDATE, changed_fields=["viewed_at"]
        )

        assert job_ids == []

    async def test_inbound_origin_argument_suppresses(self, harness):
        harness.connect(Provider.HUBSPOT)

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.DEAL, "D1", ChangeOperation.UPDATE, origin="inbound"
        )

        assert job_ids == []

    async def test_inbound_context_suppresses(self, harness):
        harness.connect(Provider.HUBSPOT)

        with applying_inbound("hubspot"):
            job_ids = await harness.detector.on_entity_changed(
                TENANT_ID, EntityType.DEAL, "D1", ChangeOperation.UPDATE
            )

        assert job_ids == []

    async def test_echo_of_inbound_sync_is_suppressed_per_provider(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        harness.mappings.add(
            tenant_id=TENANT_ID,
            provider=Provider.HUBSPOT,
            entity_type=EntityType.DEAL,
            local_id="D1",
            remote_id="R9",
            last_synced_at=utcnow(),
            last_sync_direction=SyncDirection.INBOUND,
        )

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.DEAL, "D1", ChangeOperation.UPDATE, changed_fields=["stage"]
        )

        assert [harness.queue.jobs[j].provider for j in job_ids] == [Provider.BULLHORN]

    async def test_edit_after_echo_window_is_synced(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.mappings.add(
            tenant_id=TENANT_ID,
            provider=Provider.HUBSPOT,
            entity_type=EntityType.DEAL,
            local_id="D1",
            remote_id="R9",
            last_synced_at=utcnow() - timedelta(minutes=5),
            last_sync_direction=SyncDirection.INBOUND,
        )

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.DEAL, "D1", ChangeOperation.UPDATE, changed_fields=["stage"]
        )

        assert len(job_ids) == 1

    async def test_provider_without_entity_is_skipped(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)

        job_ids = await harness.detector.on_entity_changed(
            TENANT_ID, EntityType.QUOTE, "Q1", ChangeOperation.CREATE
        )

        [job] = [harness.queue.jobs[j] for j in job_ids]
        assert job.provider == Provider.HUBSPOT
        assert job.job_type == JobType.PUSH_QUOTE

    async def test_repeated_changes_collapse(self, harness):
        harness.connect(Provider.HUBSPOT)

        ids = [
            await harness.detector.on_entity_changed(
                TENANT_ID, EntityType.TASK, "T1", ChangeOperation.UPDATE, changed_fields=["status"]
            )
            for _ in range(3)
        ]

        assert ids[0] == ids[1] == ids[2]
        assert len(harness.queue.jobs) == 1
        assert harness.queue.jobs[ids[0][0]].revision == 2

    async def test_signal_published_when_enqueued(self, harness, settings):
        harness.connect(Provider.HUBSPOT)
        signal = AsyncMock()
        detector = ChangeDetector(
            harness.connections, harness.mappings, harness.queue, harness.providers, settings, signal
        )

        await detector.on_entity_changed(TENANT_ID, EntityType.NOTE, "N1", ChangeOperation.CREATE)

        signal.publish.assert_awaited_once_with(TENANT_ID, "hubspot")
